"""Calendar provider adapters."""

from typing import Dict, Optional, Type

from core.calendar.throttle import RequestThrottle
from engines.calendar_sync.base import (
    CalendarProviderAdapter,
    ProviderConfig,
    derive_code_challenge,
    generate_state_and_pkce,
)
from engines.calendar_sync.google_calendar import GoogleCalendarAdapter
from engines.calendar_sync.outlook_calendar import OutlookCalendarAdapter
from utils.http_client import AsyncRetryableHttpClient

ADAPTERS: Dict[str, Type[CalendarProviderAdapter]] = {
    'google': GoogleCalendarAdapter,
    'outlook': OutlookCalendarAdapter,
}


def create_adapter(
    provider: str,
    http_client: AsyncRetryableHttpClient,
    throttle: Optional[RequestThrottle] = None,
) -> CalendarProviderAdapter:
    """Instantiate the adapter registered for a provider name."""
    try:
        adapter_cls = ADAPTERS[provider]
    except KeyError:
        raise ValueError(f"Unsupported calendar provider: {provider}") from None
    return adapter_cls(http_client, throttle=throttle)


__all__ = [
    'ADAPTERS',
    'CalendarProviderAdapter',
    'GoogleCalendarAdapter',
    'OutlookCalendarAdapter',
    'ProviderConfig',
    'create_adapter',
    'derive_code_challenge',
    'generate_state_and_pkce',
]
