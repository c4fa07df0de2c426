"""Google Calendar adapter."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from config.constants import GOOGLE_CALENDAR_MAX_RESULTS, PSEUDO_CALENDAR_ID_MARKER
from core.calendar.models import CalendarEventRecord, CalendarInfo
from core.calendar.throttle import RequestThrottle
from data.security.token_manager import TokenRecord
from engines.calendar_sync.base import CalendarProviderAdapter, ProviderConfig, find_url
from utils.http_client import AsyncRetryableHttpClient
from utils.time_utils import parse_datetime, to_utc_iso


logger = logging.getLogger('calbridge.calendar_sync.google')

# Event types that are status markers rather than meetings
NON_MEETING_EVENT_TYPES = frozenset({'outOfOffice', 'workingLocation', 'focusTime'})


class GoogleCalendarAdapter(CalendarProviderAdapter):
    """Google Calendar v3 adapter."""

    provider_config = ProviderConfig(
        name='google',
        auth_url="https://accounts.google.com/o/oauth2/v2/auth",
        api_base_url="https://www.googleapis.com/calendar/v3",
        scopes=(
            "openid",
            "email",
            "https://www.googleapis.com/auth/calendar.readonly",
            "https://www.googleapis.com/auth/calendar.events.readonly",
        ),
        write_scopes=frozenset({
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/calendar.events",
        }),
        authorization_extras={
            'access_type': 'offline',
            'prompt': 'consent',
        },
        revoke_url="https://oauth2.googleapis.com/revoke",
    )
    primary_calendar_id = 'primary'

    def __init__(self, http_client: AsyncRetryableHttpClient, throttle: Optional[RequestThrottle] = None):
        super().__init__(http_client, logger=logger, throttle=throttle)

    def _calendar_url(self, calendar_id: str) -> str:
        return f"{self.api_base_url}/calendars/{quote(calendar_id, safe='')}"

    async def list_calendars(self, token: TokenRecord) -> List[CalendarInfo]:
        calendars = []
        page_token = None

        while True:
            params: Dict[str, Any] = {}
            if page_token:
                params['pageToken'] = page_token

            response = await self.api_request(
                token, 'GET', f"{self.api_base_url}/users/me/calendarList", params=params
            )
            data = response.json()

            for item in data.get('items', []):
                calendar_id = item.get('id')
                if not calendar_id or PSEUDO_CALENDAR_ID_MARKER in calendar_id:
                    continue
                calendars.append(CalendarInfo(
                    id=calendar_id,
                    name=item.get('summaryOverride') or item.get('summary') or calendar_id,
                    provider=self.name,
                    primary=bool(item.get('primary')),
                ))

            page_token = data.get('nextPageToken')
            if not page_token:
                break

        self.logger.info("Listed %s Google calendars", len(calendars))
        return calendars

    async def fetch_events(
        self,
        token: TokenRecord,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> List[CalendarEventRecord]:
        """
        Fetch events from one Google calendar.

        Recurring events are expanded (singleEvents) and pages are followed
        through nextPageToken.
        """
        events = []
        page_token = None

        while True:
            params: Dict[str, Any] = {
                'timeMin': to_utc_iso(start),
                'timeMax': to_utc_iso(end),
                'maxResults': GOOGLE_CALENDAR_MAX_RESULTS,
                'singleEvents': 'true',
                'orderBy': 'startTime',
            }
            if page_token:
                params['pageToken'] = page_token

            response = await self.api_request(
                token,
                'GET',
                f"{self._calendar_url(calendar_id)}/events",
                calendar_id=calendar_id,
                params=params,
            )
            data = response.json()

            for item in data.get('items', []):
                event = self.normalize_event(item, calendar_id)
                if event is not None:
                    events.append(event)

            page_token = data.get('nextPageToken')
            if not page_token:
                break

        self.logger.info("Fetched %s events from Google calendar %s", len(events), calendar_id)
        return events

    def normalize_event(
        self, raw: Dict[str, Any], calendar_id: str
    ) -> Optional[CalendarEventRecord]:
        """
        Convert a Google Calendar event to a CalendarEventRecord.

        Args:
            raw: Google event data
            calendar_id: Calendar the event was fetched from

        Returns:
            Normalized record, or None for cancelled, non-meeting or
            pseudo-calendar events and unparseable payloads
        """
        event_id = raw.get('id')
        if not event_id:
            return None

        status_value = raw.get('status')
        if isinstance(status_value, str) and status_value.lower() == 'cancelled':
            return None

        if raw.get('eventType') in NON_MEETING_EVENT_TYPES:
            return None

        for party in ('organizer', 'creator'):
            email = (raw.get(party) or {}).get('email') or ''
            if PSEUDO_CALENDAR_ID_MARKER in email:
                return None

        start_info = raw.get('start') or {}
        end_info = raw.get('end') or {}
        start = parse_datetime(start_info.get('dateTime') or start_info.get('date'))
        end = parse_datetime(end_info.get('dateTime') or end_info.get('date'))
        if start is None or end is None:
            self.logger.warning("Dropping Google event %s with unparseable times", event_id)
            return None

        attendees = [
            att['email']
            for att in raw.get('attendees', [])
            if isinstance(att, dict) and att.get('email')
        ]

        location = raw.get('location')

        return CalendarEventRecord(
            id=event_id,
            title=raw.get('summary') or 'Untitled Event',
            start=start,
            end=end,
            provider=self.name,
            calendar_id=calendar_id,
            attendees=attendees,
            meeting_link=self._meeting_link(raw) or find_url(location),
            location=location,
            description=raw.get('description'),
        )

    @staticmethod
    def _meeting_link(raw: Dict[str, Any]) -> Optional[str]:
        if raw.get('hangoutLink'):
            return raw['hangoutLink']

        conference = raw.get('conferenceData') or {}
        for entry_point in conference.get('entryPoints', []):
            if entry_point.get('entryPointType') == 'video' and entry_point.get('uri'):
                return entry_point['uri']
        return None
