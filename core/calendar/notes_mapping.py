# SPDX-License-Identifier: Apache-2.0
"""
Durable mapping between calendar events and meeting notes.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from typing import Dict, Optional

from config.constants import EVENT_NOTES_STORAGE_KEY
from data.storage.secure_store import KeyValueStore
from utils.time_utils import current_iso_timestamp

logger = logging.getLogger("calbridge.calendar.notes_mapping")


@dataclass
class EventNotesLink:
    """Association of one calendar event with one notes document."""

    calendar_event_id: str
    notes_id: str
    provider: str
    linked_at: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "EventNotesLink":
        return cls(
            calendar_event_id=data["calendar_event_id"],
            notes_id=data["notes_id"],
            provider=data["provider"],
            linked_at=data["linked_at"],
        )


class EventNotesMapping:
    """
    Event-to-notes links persisted as one JSON object.

    Links are keyed by the provider-native event id and are only removed
    through an explicit unlink.
    """

    def __init__(self, storage: KeyValueStore, storage_key: str = EVENT_NOTES_STORAGE_KEY):
        self.storage = storage
        self.storage_key = storage_key
        self._lock = asyncio.Lock()

    async def _read_all(self) -> Dict[str, EventNotesLink]:
        raw = await self.storage.get(self.storage_key)
        if not raw:
            return {}

        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.error(f"Event notes mapping is unreadable: {e}")
            raise

        links = {}
        for event_id, entry in data.items():
            try:
                links[event_id] = EventNotesLink.from_dict(entry)
            except (KeyError, TypeError):
                logger.warning("Skipping malformed notes link for event %s", event_id)
        return links

    async def _write_all(self, links: Dict[str, EventNotesLink]) -> None:
        payload = {event_id: link.to_dict() for event_id, link in links.items()}
        await self.storage.set(self.storage_key, json.dumps(payload))

    async def link(self, event_id: str, notes_id: str, provider: str) -> EventNotesLink:
        """
        Create or replace the link for an event.

        Args:
            event_id: Provider-native calendar event id
            notes_id: Identifier of the notes document
            provider: Provider that owns the event

        Returns:
            The stored link
        """
        if not event_id or not notes_id:
            raise ValueError("event_id and notes_id are required")

        async with self._lock:
            links = await self._read_all()
            link = EventNotesLink(
                calendar_event_id=event_id,
                notes_id=notes_id,
                provider=provider,
                linked_at=current_iso_timestamp(),
            )
            # Re-insert so stored order is link order
            links.pop(event_id, None)
            links[event_id] = link
            await self._write_all(links)

        logger.info(f"Linked notes {notes_id} to {provider} event {event_id}")
        return link

    async def get(self, event_id: str) -> Optional[str]:
        """Notes id linked to an event, or None."""
        link = await self.get_link(event_id)
        return link.notes_id if link else None

    async def get_link(self, event_id: str) -> Optional[EventNotesLink]:
        links = await self._read_all()
        return links.get(event_id)

    async def reverse_lookup(self, notes_id: str) -> Optional[str]:
        """
        Event id linked to a notes document, or None.

        When several events point at the same notes, the most recently
        linked one wins.
        """
        links = await self._read_all()
        for link in reversed(list(links.values())):
            if link.notes_id == notes_id:
                return link.calendar_event_id
        return None

    async def unlink(self, event_id: str) -> bool:
        """Remove the link for an event. Returns False if none existed."""
        async with self._lock:
            links = await self._read_all()
            if event_id not in links:
                return False
            del links[event_id]
            await self._write_all(links)

        logger.info(f"Unlinked notes from event {event_id}")
        return True

    async def all_links(self) -> Dict[str, EventNotesLink]:
        return await self._read_all()
