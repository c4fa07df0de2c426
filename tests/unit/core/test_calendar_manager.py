# SPDX-License-Identifier: Apache-2.0
"""
Unit tests for CalendarManager wiring and account management.
"""

import json

import httpx
import pytest

from config.app_config import ConfigManager
from core.calendar.exceptions import ConfigurationError
from core.calendar.manager import CalendarManager
from data.security.token_manager import TokenRecord


@pytest.fixture
def config(tmp_path, monkeypatch):
    for name in ("CALBRIDGE_RELAY_URL", "CALBRIDGE_GOOGLE_CLIENT_ID", "CALBRIDGE_OUTLOOK_CLIENT_ID"):
        monkeypatch.delenv(name, raising=False)
    return ConfigManager(str(tmp_path))


@pytest.fixture
def requests_seen():
    return []


@pytest.fixture
def manager_factory(config, store, http_client_factory, requests_seen):
    def factory(handler=None):
        def default_handler(request):
            requests_seen.append(request)
            return httpx.Response(200)

        return CalendarManager(config, store, http_client=http_client_factory(handler or default_handler))

    return factory


async def store_token(manager, provider):
    await manager.token_manager.store(TokenRecord(
        provider=provider,
        access_token=f"{provider}-access",
        refresh_token=f"{provider}-refresh",
        expires_at=None,
    ))


def test_components_follow_configuration(config, store, http_client_factory):
    config.set("calendar.throttle.max_concurrent", 5)
    config.set("calendar.relay_base_url", "https://relay.example.com/")

    manager = CalendarManager(config, store, http_client=http_client_factory(lambda r: httpx.Response(200)))

    assert manager.throttle.max_concurrent == 5
    assert manager.token_manager.relay_url("google") == "https://relay.example.com/api/auth/google"
    assert set(manager.adapters) == {"google", "outlook"}
    assert all(adapter.throttle is manager.throttle for adapter in manager.adapters.values())
    assert manager.flow.callback_timeout == 300.0


def test_missing_relay_url_is_a_configuration_error(config, store):
    config.set("calendar.relay_base_url", "")

    with pytest.raises(ConfigurationError):
        CalendarManager(config, store)


@pytest.mark.asyncio
async def test_disconnect_google_revokes_and_keeps_notes(manager_factory, requests_seen):
    manager = manager_factory()
    await store_token(manager, "google")
    await manager.link_notes("evt-1", "notes-1", "google")

    assert await manager.disconnect("google") is True

    assert len(requests_seen) == 1
    assert requests_seen[0].url.host == "oauth2.googleapis.com"
    assert await manager.token_manager.load("google") is None
    assert await manager.get_notes_for_event("evt-1") == "notes-1"
    assert await manager.connected_providers() == []


@pytest.mark.asyncio
async def test_disconnect_outlook_is_local_only(manager_factory, requests_seen):
    manager = manager_factory()
    await store_token(manager, "outlook")

    assert await manager.disconnect("outlook") is True

    assert requests_seen == []
    assert await manager.token_manager.load("outlook") is None


@pytest.mark.asyncio
async def test_failed_revocation_still_removes_token(manager_factory):
    manager = manager_factory(lambda request: httpx.Response(500))
    await store_token(manager, "google")

    assert await manager.disconnect("google") is True
    assert await manager.token_manager.load("google") is None


@pytest.mark.asyncio
async def test_disconnect_when_not_connected(manager_factory):
    manager = manager_factory()

    assert await manager.disconnect("google") is False
    with pytest.raises(ConfigurationError):
        await manager.disconnect("yahoo")


@pytest.mark.asyncio
async def test_notes_round_trip_through_manager(manager_factory, store):
    manager = manager_factory()

    await manager.link_notes("evt-9", "notes-9", "outlook")

    assert await manager.find_event_for_notes("notes-9") == "evt-9"
    assert (await manager.get_notes_link("evt-9")).provider == "outlook"
    assert "evt-9" in json.loads(await store.get("calendar_event_notes"))
    assert await manager.unlink_notes("evt-9") is True


@pytest.mark.asyncio
async def test_connect_without_client_id_fails(manager_factory):
    manager = manager_factory()

    with pytest.raises(ConfigurationError):
        await manager.connect("google")


@pytest.mark.asyncio
async def test_list_events_with_no_accounts(manager_factory):
    manager = manager_factory()

    result = await manager.list_today()

    assert result.events == []
    assert result.errors == []
