# SPDX-License-Identifier: Apache-2.0
"""
Multi-provider event aggregation.

Fetches every visible calendar of every connected provider in parallel,
drops what cannot be fetched and returns one chronologically ordered list.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from config.constants import PSEUDO_CALENDAR_ID_MARKER
from core.calendar.exceptions import (
    CalendarPermissionError,
    RefreshFailed,
    user_message,
)
from core.calendar.models import CalendarEventRecord, CalendarInfo, CalendarListResult
from core.calendar.notes_mapping import EventNotesLink, EventNotesMapping
from data.security.token_manager import TokenLifecycleManager, TokenRecord
from engines.calendar_sync.base import CalendarProviderAdapter
from utils.time_utils import local_day_bounds

logger = logging.getLogger("calbridge.calendar.aggregator")


def sort_events(events: Iterable[CalendarEventRecord]) -> List[CalendarEventRecord]:
    """Order events by (start, id)."""
    return sorted(events, key=lambda event: event.sort_key)


class CalendarAggregator:
    """
    Merges events across providers and calendars.

    Every fetch uses a token checked by the TokenLifecycleManager just
    before the call. Adapters throttle their own HTTP attempts.
    """

    def __init__(
        self,
        adapters: Mapping[str, CalendarProviderAdapter],
        token_manager: TokenLifecycleManager,
        notes_mapping: EventNotesMapping,
        visible_calendars: Optional[Mapping[str, List[str]]] = None,
    ):
        """
        Initialize the aggregator.

        Args:
            adapters: Provider adapters keyed by provider name
            token_manager: Source of fresh tokens
            notes_mapping: Event-to-notes link store
            visible_calendars: Explicit calendar selection per provider
        """
        self.adapters = dict(adapters)
        self.token_manager = token_manager
        self.notes_mapping = notes_mapping
        self.visible_calendars = {
            provider: list(ids) for provider, ids in (visible_calendars or {}).items()
        }

    def calendars_for(self, provider: str) -> List[str]:
        """
        Calendar ids to fetch for a provider.

        The explicit selection wins when non-empty; otherwise the account's
        primary calendar. Pseudo-calendars are never fetched.
        """
        selected = self.visible_calendars.get(provider) or []
        if not selected:
            selected = [self.adapters[provider].primary_calendar_id]

        calendars = []
        for calendar_id in selected:
            if PSEUDO_CALENDAR_ID_MARKER in calendar_id:
                logger.debug("Skipping pseudo-calendar %s", calendar_id)
                continue
            if calendar_id not in calendars:
                calendars.append(calendar_id)
        return calendars

    async def list_events(
        self,
        start: datetime,
        end: datetime,
        providers: Optional[Iterable[str]] = None,
    ) -> CalendarListResult:
        """
        Fetch and merge events in [start, end].

        Args:
            start: Window start (aware datetime)
            end: Window end (aware datetime)
            providers: Providers to query, defaults to every connected one

        Returns:
            CalendarListResult with sorted events and per-provider error notes
        """
        if providers is None:
            providers = await self.token_manager.connected_providers(self.adapters.keys())

        errors: Dict[str, str] = {}
        jobs = []

        for provider in providers:
            if provider not in self.adapters:
                logger.warning(f"No adapter registered for provider: {provider}")
                continue

            try:
                token = await self.token_manager.get_valid_token(provider)
            except RefreshFailed as e:
                logger.error(f"Token unavailable for {provider}: {e}")
                errors[provider] = user_message(e)
                continue

            if token is None:
                logger.debug("Provider %s is not connected", provider)
                continue

            for calendar_id in self.calendars_for(provider):
                jobs.append(
                    self._fetch_calendar(provider, token, calendar_id, start, end, errors)
                )

        results = await asyncio.gather(*jobs)

        events = sort_events(event for batch in results for event in batch)
        logger.info(
            f"Aggregated {len(events)} events from {len(jobs)} calendar(s)"
            + (f" with {len(errors)} provider error(s)" if errors else "")
        )
        return CalendarListResult(events=events, errors=list(errors.values()))

    async def list_today(self, providers: Optional[Iterable[str]] = None) -> CalendarListResult:
        """Events between local midnight and 23:59:59 today."""
        start, end = local_day_bounds()
        return await self.list_events(start, end, providers)

    async def _fetch_calendar(
        self,
        provider: str,
        token: TokenRecord,
        calendar_id: str,
        start: datetime,
        end: datetime,
        errors: Dict[str, str],
    ) -> List[CalendarEventRecord]:
        adapter = self.adapters[provider]

        try:
            fresh = await self.token_manager.ensure_fresh(provider, token)
        except RefreshFailed as e:
            logger.error(f"Token refresh for {provider} failed: {e}")
            errors.setdefault(provider, user_message(e))
            return []

        try:
            return await adapter.fetch_events(fresh, calendar_id, start, end)
        except CalendarPermissionError as e:
            logger.warning(f"Skipping {provider} calendar {calendar_id}: {e}")
        except Exception as e:
            logger.error(
                f"Failed to fetch {provider} calendar {calendar_id}: {e}", exc_info=True
            )
        return []

    async def list_calendars(self, provider: str) -> List[CalendarInfo]:
        """List the provider's calendars, without pseudo-calendars."""
        adapter = self.adapters[provider]
        token = await self.token_manager.get_valid_token(provider)
        if token is None:
            return []

        calendars = await adapter.list_calendars(token)
        return [cal for cal in calendars if PSEUDO_CALENDAR_ID_MARKER not in cal.id]

    # ------------------------------------------------------------------
    # Notes mapping
    # ------------------------------------------------------------------

    async def link(self, event_id: str, notes_id: str, provider: str) -> EventNotesLink:
        return await self.notes_mapping.link(event_id, notes_id, provider)

    async def get(self, event_id: str) -> Optional[str]:
        return await self.notes_mapping.get(event_id)

    async def get_link(self, event_id: str) -> Optional[EventNotesLink]:
        return await self.notes_mapping.get_link(event_id)

    async def reverse_lookup(self, notes_id: str) -> Optional[str]:
        return await self.notes_mapping.reverse_lookup(notes_id)

    async def unlink(self, event_id: str) -> bool:
        return await self.notes_mapping.unlink(event_id)

    async def write_back_link(self, event: CalendarEventRecord, notes_id: str) -> bool:
        """
        Report whether a notes reference was written to the provider-side event.

        Provider-side write-back is not performed: the local mapping is the
        source of truth. No network call is made; read-only grants are logged
        as the reason. Always returns False.
        """
        adapter = self.adapters.get(event.provider)
        token = await self.token_manager.load(event.provider) if adapter else None
        if token is None:
            logger.debug("Write-back skipped for %s event %s: not connected", event.provider, event.id)
        elif adapter.is_readonly_scope(token.scope):
            logger.debug("Write-back skipped for %s event %s: read-only scope", event.provider, event.id)
        else:
            logger.info("Notes link for %s event %s kept locally only", event.provider, event.id)
        return False
