# SPDX-License-Identifier: Apache-2.0
"""
Unit tests for TokenLifecycleManager.

Covers staleness checks, single-flight refresh, retry classification and
token merging.
"""

import asyncio
import json

import httpx
import pytest

from config.constants import FETCH_TOKEN_BUFFER_MS, STORAGE_TOKEN_BUFFER_MS
from core.calendar.exceptions import RateLimitError, RefreshFailed
from data.security.token_manager import (
    RefreshKey,
    TokenRecord,
    extract_email_from_id_token,
    merge_refreshed_token,
    record_from_token_response,
)


def _stale_token(now_ms, refresh_token="refresh-1", provider="google"):
    return TokenRecord(
        provider=provider,
        access_token="old-access",
        refresh_token=refresh_token,
        expires_at=now_ms + 10_000,
        scope="calendar.readonly",
    )


def _ok(payload=None):
    body = {"access_token": "new-access", "expires_in": 3600}
    body.update(payload or {})
    return httpx.Response(200, json=body)


class TestStaleness:
    def test_token_without_expiry_is_never_stale(self, token_manager_factory):
        manager = token_manager_factory(lambda request: _ok())
        token = TokenRecord(provider="google", access_token="a", expires_at=None)

        assert not manager.is_stale(token, FETCH_TOKEN_BUFFER_MS)

    def test_buffer_boundary(self, token_manager_factory, now_ms):
        manager = token_manager_factory(lambda request: _ok())
        token = TokenRecord(provider="google", access_token="a", expires_at=now_ms + 60_000)

        assert manager.is_stale(token, 60_000)
        assert not manager.is_stale(token, 59_999)

    def test_storage_buffer_is_wider_than_fetch_buffer(self, token_manager_factory, now_ms):
        manager = token_manager_factory(lambda request: _ok())
        token = TokenRecord(provider="google", access_token="a", expires_at=now_ms + 4 * 60_000)

        assert not manager.is_stale(token, FETCH_TOKEN_BUFFER_MS)
        assert manager.is_stale(token, STORAGE_TOKEN_BUFFER_MS)


class TestEnsureFresh:
    @pytest.mark.asyncio
    async def test_fresh_token_is_returned_without_network(self, token_manager_factory, now_ms):
        def handler(request):
            raise AssertionError("no refresh expected")

        manager = token_manager_factory(handler)
        token = TokenRecord(provider="google", access_token="a", expires_at=now_ms + 3_600_000)

        assert await manager.ensure_fresh("google", token) is token

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, token_manager_factory, now_ms, store):
        calls = []

        async def handler(request):
            calls.append((request.url, json.loads(request.content)))
            await asyncio.sleep(0.01)
            return _ok()

        manager = token_manager_factory(handler)
        stale = _stale_token(now_ms)

        results = await asyncio.gather(*(manager.ensure_fresh("google", stale) for _ in range(10)))

        assert len(calls) == 1
        url, body = calls[0]
        assert str(url) == "https://relay.test/api/auth/google"
        assert body == {"grant_type": "refresh_token", "refresh_token": "refresh-1"}
        assert {result.access_token for result in results} == {"new-access"}
        assert manager._in_flight == {}

        stored = json.loads(await store.get("calendar_google_tokens"))
        assert stored["access_token"] == "new-access"

    @pytest.mark.asyncio
    async def test_distinct_refresh_tokens_refresh_separately(self, token_manager_factory, now_ms):
        seen = []

        async def handler(request):
            seen.append(json.loads(request.content)["refresh_token"])
            await asyncio.sleep(0.01)
            return _ok()

        manager = token_manager_factory(handler)

        await asyncio.gather(
            manager.ensure_fresh("google", _stale_token(now_ms, "refresh-a")),
            manager.ensure_fresh("google", _stale_token(now_ms, "refresh-b")),
        )

        assert sorted(seen) == ["refresh-a", "refresh-b"]

    @pytest.mark.asyncio
    async def test_shared_failure_reaches_every_caller(self, token_manager_factory, now_ms):
        calls = []

        async def handler(request):
            calls.append(request)
            await asyncio.sleep(0.01)
            return httpx.Response(400, text="invalid_grant")

        manager = token_manager_factory(handler)
        stale = _stale_token(now_ms)

        results = await asyncio.gather(
            *(manager.ensure_fresh("google", stale) for _ in range(3)),
            return_exceptions=True,
        )

        assert len(calls) == 1
        assert all(isinstance(result, RefreshFailed) for result in results)
        assert manager._in_flight == {}

    @pytest.mark.asyncio
    async def test_stale_token_without_refresh_token_fails(self, token_manager_factory, now_ms):
        manager = token_manager_factory(lambda request: _ok())
        token = _stale_token(now_ms, refresh_token=None)

        with pytest.raises(RefreshFailed):
            await manager.ensure_fresh("google", token)

    @pytest.mark.asyncio
    async def test_get_valid_token_uses_storage_buffer(self, token_manager_factory, now_ms):
        calls = []

        def handler(request):
            calls.append(request)
            return _ok()

        manager = token_manager_factory(handler)
        await manager.store(TokenRecord(
            provider="outlook",
            access_token="a",
            refresh_token="r",
            expires_at=now_ms + 4 * 60_000,
        ))

        token = await manager.get_valid_token("outlook")

        assert len(calls) == 1
        assert token.access_token == "new-access"

    @pytest.mark.asyncio
    async def test_get_valid_token_for_unknown_provider(self, token_manager_factory):
        manager = token_manager_factory(lambda request: _ok())

        assert await manager.get_valid_token("google") is None


class TestRefreshRetries:
    @pytest.mark.asyncio
    async def test_rate_limited_three_times_then_fails(self, token_manager_factory, now_ms, sleeps):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(429, text="Too many requests")

        manager = token_manager_factory(handler)

        with pytest.raises(RefreshFailed) as exc_info:
            await manager.refresh("google", _stale_token(now_ms))

        assert len(attempts) == 3
        assert sleeps.calls == [1.0, 2.0]
        assert isinstance(exc_info.value.__cause__, RateLimitError)

    @pytest.mark.asyncio
    async def test_bad_request_is_not_retried(self, token_manager_factory, now_ms, sleeps):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(400, text="Too many requests")

        manager = token_manager_factory(handler)

        with pytest.raises(RefreshFailed) as exc_info:
            await manager.refresh("google", _stale_token(now_ms))

        assert len(attempts) == 1
        assert sleeps.calls == []
        assert exc_info.value.status_code == 400
        assert "Too many requests" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, token_manager_factory, now_ms, sleeps):
        responses = [httpx.Response(503, text="unavailable"), _ok()]

        manager = token_manager_factory(lambda request: responses.pop(0))

        refreshed = await manager.refresh("google", _stale_token(now_ms))

        assert refreshed.access_token == "new-access"
        assert sleeps.calls == [1.0]

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, token_manager_factory, now_ms, sleeps):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                raise httpx.ConnectError("connection reset", request=request)
            return _ok()

        manager = token_manager_factory(handler)

        refreshed = await manager.refresh("google", _stale_token(now_ms))

        assert len(attempts) == 3
        assert refreshed.access_token == "new-access"
        assert len(sleeps.calls) == 2

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, token_manager_factory, now_ms, sleeps):
        manager = token_manager_factory(
            lambda request: httpx.Response(429), max_attempts=6, jitter=lambda: 0.999
        )

        with pytest.raises(RefreshFailed):
            await manager.refresh("google", _stale_token(now_ms))

        assert max(sleeps.calls) == 10.0
        assert sleeps.calls[0] == pytest.approx(1.999)

    @pytest.mark.asyncio
    async def test_response_without_access_token_fails(self, token_manager_factory, now_ms):
        manager = token_manager_factory(lambda request: httpx.Response(200, json={"error": "x"}))

        with pytest.raises(RefreshFailed):
            await manager.refresh("google", _stale_token(now_ms))


class TestTokenMerge:
    def test_rotated_refresh_token_replaces_old_one(self, now_ms):
        token = _stale_token(now_ms)

        merged = merge_refreshed_token(
            token, {"access_token": "a2", "refresh_token": "refresh-2", "expires_in": 60}, now_ms
        )

        assert merged.refresh_token == "refresh-2"
        assert merged.expires_at == now_ms + 60_000

    def test_missing_refresh_token_is_preserved(self, now_ms):
        token = _stale_token(now_ms)

        merged = merge_refreshed_token(token, {"access_token": "a2"}, now_ms)

        assert merged.refresh_token == "refresh-1"
        assert merged.expires_at == token.expires_at
        assert merged.scope == "calendar.readonly"

    def test_token_type_is_normalized(self, now_ms):
        merged = merge_refreshed_token(
            _stale_token(now_ms), {"access_token": "a2", "token_type": "bearer"}, now_ms
        )

        assert merged.token_type == "Bearer"

    @pytest.mark.asyncio
    async def test_refresh_persists_preserved_refresh_token(
        self, token_manager_factory, now_ms, store
    ):
        manager = token_manager_factory(lambda request: _ok())

        await manager.refresh("google", _stale_token(now_ms))
        stored = await manager.load("google")

        assert stored.refresh_token == "refresh-1"
        assert stored.expires_at == now_ms + 3_600_000


class TestPersistence:
    @pytest.mark.asyncio
    async def test_store_load_delete(self, token_manager_factory, store):
        manager = token_manager_factory(lambda request: _ok())
        record = TokenRecord(provider="google", access_token="a", refresh_token="r", expires_at=5)

        await manager.store(record)
        assert "calendar_google_tokens" in store.keys()
        assert await manager.load("google") == record
        assert await manager.connected_providers(["google", "outlook"]) == ["google"]

        await manager.delete("google")
        assert await manager.load("google") is None
        assert await manager.connected_providers(["google", "outlook"]) == []

    @pytest.mark.asyncio
    async def test_unreadable_record_loads_as_none(self, token_manager_factory, store):
        manager = token_manager_factory(lambda request: _ok())
        await store.set("calendar_google_tokens", "{not json")

        assert await manager.load("google") is None


def test_record_from_token_response_reads_email(now_ms, id_token_factory):
    payload = {
        "access_token": "a",
        "refresh_token": "r",
        "expires_in": 100,
        "scope": "s",
        "token_type": "bearer",
        "id_token": id_token_factory({"email": "user@example.com"}),
    }

    record = record_from_token_response("google", payload, now_ms)

    assert record.account_email == "user@example.com"
    assert record.expires_at == now_ms + 100_000
    assert record.token_type == "Bearer"


def test_extract_email_ignores_garbage():
    assert extract_email_from_id_token(None) is None
    assert extract_email_from_id_token("not-a-jwt") is None
    assert extract_email_from_id_token("a.!!!.c") is None


def test_refresh_key_does_not_hold_raw_token():
    key = RefreshKey.for_token("google", "secret-refresh")

    assert "secret-refresh" not in repr(key)
    assert key == RefreshKey.for_token("google", "secret-refresh")
    assert key != RefreshKey.for_token("outlook", "secret-refresh")
