# SPDX-License-Identifier: Apache-2.0
"""
Unit tests for CalendarAggregator.

Adapters are replaced with in-memory fakes; the token manager runs against a
MockTransport relay.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from core.calendar.aggregator import CalendarAggregator, sort_events
from core.calendar.exceptions import CalendarPermissionError
from core.calendar.models import CalendarEventRecord, CalendarInfo
from core.calendar.notes_mapping import EventNotesMapping
from core.calendar.throttle import RequestThrottle
from data.security.token_manager import TokenRecord
from engines.calendar_sync import GoogleCalendarAdapter

DAY_START = datetime(2024, 3, 1, tzinfo=timezone.utc)
DAY_END = DAY_START + timedelta(days=1)


def make_event(event_id, hour, provider="google", calendar_id="primary"):
    start = DAY_START + timedelta(hours=hour)
    return CalendarEventRecord(
        id=event_id,
        title=f"Event {event_id}",
        start=start,
        end=start + timedelta(minutes=30),
        provider=provider,
        calendar_id=calendar_id,
    )


class FakeAdapter:
    def __init__(self, name, events=None, delay=0.0, primary="primary", readonly=True):
        self.name = name
        self.primary_calendar_id = primary
        self.events = events or {}
        self.delay = delay
        self.readonly = readonly
        self.fetched = []

    async def fetch_events(self, token, calendar_id, start, end):
        self.fetched.append((token.access_token, calendar_id))
        await asyncio.sleep(self.delay)
        outcome = self.events.get(calendar_id, [])
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)

    async def list_calendars(self, token):
        return [
            CalendarInfo(id="primary", name="Me", provider=self.name, primary=True),
            CalendarInfo(id="ab12@group.v.calendar.google.com", name="Holidays", provider=self.name),
        ]

    def is_readonly_scope(self, scope):
        return self.readonly


@pytest.fixture
def relay_calls():
    return []


@pytest.fixture
def aggregator_factory(token_manager_factory, store, relay_calls):
    def factory(adapters, handler=None, visible=None):
        def default_handler(request):
            relay_calls.append(request)
            return httpx.Response(200, json={"access_token": "refreshed", "expires_in": 3600})

        manager = token_manager_factory(handler or default_handler)
        return CalendarAggregator(
            {adapter.name: adapter for adapter in adapters},
            manager,
            EventNotesMapping(store),
            visible_calendars=visible,
        )

    return factory


async def connect(aggregator, provider, now_ms, expires_in_ms=3_600_000, scope=None):
    await aggregator.token_manager.store(TokenRecord(
        provider=provider,
        access_token=f"{provider}-access",
        refresh_token=f"{provider}-refresh",
        expires_at=now_ms + expires_in_ms,
        scope=scope,
    ))


def test_sort_events_breaks_ties_by_id():
    events = [make_event("b", 9), make_event("a", 9), make_event("c", 8)]

    assert [event.id for event in sort_events(events)] == ["c", "a", "b"]


@pytest.mark.asyncio
async def test_events_are_merged_chronologically_regardless_of_completion(
    aggregator_factory, now_ms
):
    google = FakeAdapter("google", {"primary": [make_event("B", 10)]}, delay=0.0)
    outlook = FakeAdapter(
        "outlook", {"default": [make_event("A", 9, provider="outlook")]}, delay=0.02,
        primary="default",
    )
    aggregator = aggregator_factory([google, outlook])
    await connect(aggregator, "google", now_ms)
    await connect(aggregator, "outlook", now_ms)

    result = await aggregator.list_events(DAY_START, DAY_END)

    assert [event.id for event in result.events] == ["A", "B"]
    assert result.errors == []


@pytest.mark.asyncio
async def test_inaccessible_calendar_contributes_nothing(aggregator_factory, now_ms):
    google = FakeAdapter("google", {
        "primary": [make_event("ok", 9)],
        "shared@example.com": CalendarPermissionError("shared@example.com", 404),
    })
    aggregator = aggregator_factory(
        [google], visible={"google": ["primary", "shared@example.com"]}
    )
    await connect(aggregator, "google", now_ms)

    result = await aggregator.list_events(DAY_START, DAY_END)

    assert [event.id for event in result.events] == ["ok"]
    assert result.errors == []


@pytest.mark.asyncio
async def test_google_404_calendar_is_skipped_over_http(
    aggregator_factory, http_client_factory, now_ms
):
    requested = []

    def google_api(request):
        path = request.url.raw_path.split(b"?")[0]
        requested.append(path)
        if path == b"/calendar/v3/calendars/gone%40example.com/events":
            return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})
        return httpx.Response(200, json={"items": [{
            "id": "standup",
            "summary": "Standup",
            "start": {"dateTime": "2024-03-01T09:00:00Z"},
            "end": {"dateTime": "2024-03-01T09:15:00Z"},
        }]})

    google = GoogleCalendarAdapter(
        http_client_factory(google_api), throttle=RequestThrottle(inter_request_delay_ms=0)
    )
    aggregator = aggregator_factory(
        [google], visible={"google": ["primary", "gone@example.com"]}
    )
    await connect(aggregator, "google", now_ms)

    result = await aggregator.list_events(DAY_START, DAY_END)

    assert len(requested) == 2
    assert [(event.id, event.calendar_id) for event in result.events] == [("standup", "primary")]
    assert result.errors == []


@pytest.mark.asyncio
async def test_unexpected_fetch_error_is_contained(aggregator_factory, now_ms):
    google = FakeAdapter("google", {"primary": RuntimeError("boom")})
    outlook = FakeAdapter(
        "outlook", {"default": [make_event("A", 9, provider="outlook")]}, primary="default"
    )
    aggregator = aggregator_factory([google, outlook])
    await connect(aggregator, "google", now_ms)
    await connect(aggregator, "outlook", now_ms)

    result = await aggregator.list_events(DAY_START, DAY_END)

    assert [event.id for event in result.events] == ["A"]


@pytest.mark.asyncio
async def test_refresh_failure_becomes_provider_message(aggregator_factory, now_ms):
    google = FakeAdapter("google", {"primary": [make_event("G", 9)]})
    outlook = FakeAdapter(
        "outlook", {"default": [make_event("O", 10, provider="outlook")]}, primary="default"
    )

    def handler(request):
        return httpx.Response(400, text="invalid_grant")

    aggregator = aggregator_factory([google, outlook], handler=handler)
    await connect(aggregator, "google", now_ms, expires_in_ms=1000)
    await connect(aggregator, "outlook", now_ms)

    result = await aggregator.list_events(DAY_START, DAY_END)

    assert [event.id for event in result.events] == ["O"]
    assert result.errors == ["Google Calendar session expired. Please reconnect."]
    assert google.fetched == []


@pytest.mark.asyncio
@pytest.mark.parametrize("failure, message", [
    (
        lambda request: httpx.Response(429, text="slow down"),
        "Google Calendar: The calendar provider is rate limiting requests. Please try again shortly.",
    ),
    (
        lambda request: httpx.Response(503, text="unavailable"),
        "Google Calendar: Network connection failed. Please check your connection and retry.",
    ),
])
async def test_exhausted_refresh_retries_do_not_ask_to_reconnect(
    aggregator_factory, now_ms, failure, message
):
    google = FakeAdapter("google", {"primary": [make_event("G", 9)]})
    aggregator = aggregator_factory([google], handler=failure)
    await connect(aggregator, "google", now_ms, expires_in_ms=1000)

    result = await aggregator.list_events(DAY_START, DAY_END)

    assert result.events == []
    assert result.errors == [message]


@pytest.mark.asyncio
async def test_stale_token_is_refreshed_once_for_all_calendars(
    aggregator_factory, now_ms, relay_calls
):
    google = FakeAdapter("google", {"primary": [make_event("a", 9)], "work": [make_event("b", 10)]})
    aggregator = aggregator_factory([google], visible={"google": ["primary", "work"]})
    await connect(aggregator, "google", now_ms, expires_in_ms=30_000)

    result = await aggregator.list_events(DAY_START, DAY_END)

    assert len(relay_calls) == 1
    assert {token for token, _ in google.fetched} == {"refreshed"}
    assert len(result.events) == 2


@pytest.mark.asyncio
async def test_unconnected_provider_is_skipped(aggregator_factory, now_ms):
    google = FakeAdapter("google", {"primary": [make_event("a", 9)]})
    outlook = FakeAdapter("outlook", primary="default")
    aggregator = aggregator_factory([google, outlook])
    await connect(aggregator, "google", now_ms)

    result = await aggregator.list_events(DAY_START, DAY_END)

    assert outlook.fetched == []
    assert len(result.events) == 1


def test_calendar_selection(aggregator_factory):
    google = FakeAdapter("google")
    aggregator = aggregator_factory([google], visible={
        "google": ["work", "ab12@group.v.calendar.google.com", "work"],
    })

    assert aggregator.calendars_for("google") == ["work"]


def test_primary_calendar_is_default(aggregator_factory):
    outlook = FakeAdapter("outlook", primary="default")
    aggregator = aggregator_factory([outlook], visible={"outlook": []})

    assert aggregator.calendars_for("outlook") == ["default"]


@pytest.mark.asyncio
async def test_list_calendars_hides_pseudo_calendars(aggregator_factory, now_ms):
    google = FakeAdapter("google")
    aggregator = aggregator_factory([google])
    await connect(aggregator, "google", now_ms)

    calendars = await aggregator.list_calendars("google")

    assert [calendar.id for calendar in calendars] == ["primary"]


@pytest.mark.asyncio
@pytest.mark.parametrize("readonly, scope", [(True, "calendar.readonly"), (False, "calendar")])
async def test_write_back_never_touches_the_provider(
    aggregator_factory, relay_calls, now_ms, readonly, scope
):
    google = FakeAdapter("google", readonly=readonly)
    aggregator = aggregator_factory([google])
    await connect(aggregator, "google", now_ms, expires_in_ms=0, scope=scope)

    assert await aggregator.write_back_link(make_event("a", 9), "notes-1") is False
    assert google.fetched == []
    assert relay_calls == []


@pytest.mark.asyncio
async def test_write_back_for_unconnected_provider(aggregator_factory):
    aggregator = aggregator_factory([FakeAdapter("google")])

    assert await aggregator.write_back_link(make_event("a", 9), "notes-1") is False


@pytest.mark.asyncio
async def test_notes_pass_through(aggregator_factory):
    aggregator = aggregator_factory([FakeAdapter("google")])

    await aggregator.link("evt", "notes", "google")

    assert await aggregator.get("evt") == "notes"
    assert (await aggregator.get_link("evt")).provider == "google"
    assert await aggregator.reverse_lookup("notes") == "evt"
    assert await aggregator.unlink("evt") is True
