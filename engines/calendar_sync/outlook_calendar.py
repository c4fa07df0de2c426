"""Outlook (Microsoft Graph) calendar adapter."""

import logging
import re
from datetime import datetime
from html import unescape
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from config.constants import OUTLOOK_CALENDAR_MAX_PAGE_SIZE
from core.calendar.models import CalendarEventRecord, CalendarInfo
from core.calendar.throttle import RequestThrottle
from data.security.token_manager import TokenRecord
from engines.calendar_sync.base import CalendarProviderAdapter, ProviderConfig, find_url
from utils.http_client import AsyncRetryableHttpClient
from utils.time_utils import parse_datetime, to_utc_iso


logger = logging.getLogger('calbridge.calendar_sync.outlook')

# showAs values that mark availability rather than a meeting
NON_MEETING_SHOW_AS = frozenset({'oof', 'workingelsewhere'})


def _html_to_text(content: str) -> str:
    text = re.sub(
        r'<(script|style)[^>]*?>.*?</\1>', '', content, flags=re.IGNORECASE | re.DOTALL
    )
    text = re.sub(r'<br\s*/?>', '\n', text, flags=re.IGNORECASE)
    text = re.sub(r'</p\s*>', '\n', text, flags=re.IGNORECASE)
    text = re.sub(r'<[^>]+>', '', text)
    return unescape(text)


def _normalise_plain_text(value: str) -> str:
    text_value = value.replace('\r\n', '\n').replace('\r', '\n')
    text_value = text_value.replace('\xa0', ' ')
    text_value = re.sub(r'\s+\n', '\n', text_value)
    text_value = re.sub(r'\n{3,}', '\n\n', text_value)
    return text_value.strip()


class OutlookCalendarAdapter(CalendarProviderAdapter):
    """Microsoft Graph calendar adapter."""

    provider_config = ProviderConfig(
        name='outlook',
        auth_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",  # noqa: E501
        api_base_url="https://graph.microsoft.com/v1.0",
        scopes=(
            "Calendars.Read",
            "Calendars.Read.Shared",
            "User.Read",
            "offline_access",
            "openid",
            "email",
        ),
        write_scopes=frozenset({"Calendars.ReadWrite", "Calendars.ReadWrite.Shared"}),
        authorization_extras={'response_mode': 'query'},
        revoke_url=None,
    )
    primary_calendar_id = 'default'

    # Graph returns naive date-times in the requested zone
    PREFER_HEADERS = {
        'Prefer': (
            f'outlook.timezone="UTC", odata.maxpagesize={OUTLOOK_CALENDAR_MAX_PAGE_SIZE}'
        ),
    }

    def __init__(self, http_client: AsyncRetryableHttpClient, throttle: Optional[RequestThrottle] = None):
        super().__init__(http_client, logger=logger, throttle=throttle)

    def _calendar_view_url(self, calendar_id: str) -> str:
        if calendar_id == self.primary_calendar_id:
            return f"{self.api_base_url}/me/calendarView"
        return f"{self.api_base_url}/me/calendars/{quote(calendar_id, safe='')}/calendarView"

    async def list_calendars(self, token: TokenRecord) -> List[CalendarInfo]:
        calendars = []
        current_url: Optional[str] = f"{self.api_base_url}/me/calendars"

        while current_url:
            response = await self.api_request(token, 'GET', current_url)
            data = response.json()

            for item in data.get('value', []):
                if not item.get('id'):
                    continue
                calendars.append(CalendarInfo(
                    id=item['id'],
                    name=item.get('name') or item['id'],
                    provider=self.name,
                    primary=bool(item.get('isDefaultCalendar')),
                ))

            current_url = data.get('@odata.nextLink')

        self.logger.info("Listed %s Outlook calendars", len(calendars))
        return calendars

    async def fetch_events(
        self,
        token: TokenRecord,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> List[CalendarEventRecord]:
        """
        Fetch events from one Outlook calendar via calendarView.

        Pages are followed through @odata.nextLink, which already carries
        the query parameters.
        """
        events = []
        current_url: Optional[str] = self._calendar_view_url(calendar_id)
        params: Optional[Dict[str, Any]] = {
            'startDateTime': to_utc_iso(start),
            'endDateTime': to_utc_iso(end),
            '$orderby': 'start/dateTime',
        }

        while current_url:
            request_kwargs: Dict[str, Any] = {'headers': dict(self.PREFER_HEADERS)}
            if params is not None:
                request_kwargs['params'] = params

            response = await self.api_request(
                token, 'GET', current_url, calendar_id=calendar_id, **request_kwargs
            )
            data = response.json()

            for item in data.get('value', []):
                event = self.normalize_event(item, calendar_id)
                if event is not None:
                    events.append(event)

            current_url = data.get('@odata.nextLink')
            params = None

        self.logger.info("Fetched %s events from Outlook calendar %s", len(events), calendar_id)
        return events

    def normalize_event(
        self, raw: Dict[str, Any], calendar_id: str
    ) -> Optional[CalendarEventRecord]:
        """
        Convert a Graph event to a CalendarEventRecord.

        Cancelled events and out-of-office or working-elsewhere blocks are
        dropped. Naive date-times are read as UTC.
        """
        event_id = raw.get('id')
        if not event_id or raw.get('@removed') is not None:
            return None

        if raw.get('isCancelled'):
            return None

        show_as = str(raw.get('showAs') or '').lower()
        if show_as == 'cancelled' or show_as in NON_MEETING_SHOW_AS:
            return None

        start = parse_datetime((raw.get('start') or {}).get('dateTime'), assume_utc=True)
        end = parse_datetime((raw.get('end') or {}).get('dateTime'), assume_utc=True)
        if start is None or end is None:
            self.logger.warning("Dropping Outlook event %s with unparseable times", event_id)
            return None

        attendees = [
            att['emailAddress']['address']
            for att in raw.get('attendees', [])
            if isinstance(att.get('emailAddress'), dict) and att['emailAddress'].get('address')
        ]

        location = (raw.get('location') or {}).get('displayName') or None
        online_meeting = raw.get('onlineMeeting') or {}

        return CalendarEventRecord(
            id=event_id,
            title=raw.get('subject') or 'Untitled Event',
            start=start,
            end=end,
            provider=self.name,
            calendar_id=calendar_id,
            attendees=attendees,
            meeting_link=(
                online_meeting.get('joinUrl')
                or raw.get('onlineMeetingUrl')
                or find_url(location)
            ),
            location=location,
            description=self._extract_description(raw),
        )

    @staticmethod
    def _extract_description(raw: Dict[str, Any]) -> Optional[str]:
        body_payload = raw.get('body')
        if isinstance(body_payload, dict) and isinstance(body_payload.get('content'), str):
            content = body_payload['content']
            if str(body_payload.get('contentType') or '').lower() == 'html':
                content = _html_to_text(content)
            else:
                content = unescape(content)
            cleaned = _normalise_plain_text(content)
            if cleaned:
                return cleaned

        preview = raw.get('bodyPreview')
        if isinstance(preview, str):
            cleaned_preview = _normalise_plain_text(unescape(preview))
            if cleaned_preview:
                return cleaned_preview

        return None
