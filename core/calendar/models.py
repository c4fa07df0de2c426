# SPDX-License-Identifier: Apache-2.0
"""
Normalized calendar data shared by adapters, aggregation and the CLI.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from utils.time_utils import to_utc_iso


@dataclass
class CalendarEventRecord:
    """Provider-independent view of one calendar event."""

    id: str
    title: str
    start: datetime
    end: datetime
    provider: str
    calendar_id: str
    attendees: List[str] = field(default_factory=list)
    meeting_link: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None

    @property
    def sort_key(self):
        return (self.start, self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'start': to_utc_iso(self.start),
            'end': to_utc_iso(self.end),
            'provider': self.provider,
            'calendar_id': self.calendar_id,
            'attendees': list(self.attendees),
            'meeting_link': self.meeting_link,
            'location': self.location,
            'description': self.description,
        }


@dataclass
class CalendarInfo:
    id: str
    name: str
    provider: str
    primary: bool = False


@dataclass
class CalendarListResult:
    """Merged events plus user-facing notes about providers that failed."""

    events: List[CalendarEventRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)
