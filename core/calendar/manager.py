# SPDX-License-Identifier: Apache-2.0
"""
Calendar Manager for CalBridge.

Wires authorization, token lifecycle, throttling and aggregation from the
application configuration and exposes them as one facade.
"""

import logging
import webbrowser
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from config.app_config import ConfigManager
from config.constants import (
    CALENDAR_API_MAX_RETRIES,
    CALENDAR_API_TIMEOUT_SECONDS,
    DEFAULT_INTER_REQUEST_DELAY_MS,
    DEFAULT_MAX_CONCURRENT_REQUESTS,
    OAUTH_CALLBACK_TIMEOUT_SECONDS,
)
from core.auth.flow import AuthorizationFlowCoordinator, ProviderOAuthSettings
from core.auth.transports import SchemeCallbackRouter
from core.calendar.aggregator import CalendarAggregator
from core.calendar.constants import CalendarSource
from core.calendar.exceptions import ConfigurationError
from core.calendar.models import CalendarEventRecord, CalendarInfo, CalendarListResult
from core.calendar.notes_mapping import EventNotesLink, EventNotesMapping
from core.calendar.throttle import RequestThrottle
from data.security.token_manager import TokenLifecycleManager, TokenRecord
from data.storage.secure_store import KeyValueStore
from engines.calendar_sync import CalendarProviderAdapter, create_adapter
from utils.http_client import AsyncRetryableHttpClient


logger = logging.getLogger('calbridge.calendar.manager')


class CalendarManager:
    """
    Entry point for calendar operations.

    Responsibilities:
    - Connecting and disconnecting provider accounts
    - Listing merged events across connected providers
    - Linking events to notes documents
    """

    def __init__(
        self,
        config: ConfigManager,
        storage: KeyValueStore,
        *,
        http_client: Optional[AsyncRetryableHttpClient] = None,
        adapters: Optional[Mapping[str, CalendarProviderAdapter]] = None,
        scheme_router: Optional[SchemeCallbackRouter] = None,
        open_browser: Callable[[str], Any] = webbrowser.open,
    ):
        """
        Initialize the calendar manager.

        Args:
            config: Application configuration
            storage: Key-value store for tokens and notes links
            http_client: Shared HTTP client, created from config when omitted
            adapters: Provider adapters, one per supported provider by default
            scheme_router: Router receiving custom-scheme redirects
            open_browser: Opens authorization URLs
        """
        self.config = config
        self.storage = storage

        relay_base_url = config.get('calendar.relay_base_url')
        if not relay_base_url:
            raise ConfigurationError("calendar.relay_base_url is not configured")

        self._owns_http_client = http_client is None
        self.http_client = http_client or AsyncRetryableHttpClient(
            max_retries=CALENDAR_API_MAX_RETRIES,
            timeout=CALENDAR_API_TIMEOUT_SECONDS,
        )

        self.throttle = RequestThrottle(
            max_concurrent=config.get(
                'calendar.throttle.max_concurrent', DEFAULT_MAX_CONCURRENT_REQUESTS
            ),
            inter_request_delay_ms=config.get(
                'calendar.throttle.inter_request_delay_ms', DEFAULT_INTER_REQUEST_DELAY_MS
            ),
        )

        if adapters is None:
            adapters = {
                provider: create_adapter(provider, self.http_client, self.throttle)
                for provider in CalendarSource.list_external()
            }
        self.adapters: Dict[str, CalendarProviderAdapter] = dict(adapters)

        self.token_manager = TokenLifecycleManager(storage, self.http_client, relay_base_url)
        self.notes_mapping = EventNotesMapping(storage)
        self.aggregator = CalendarAggregator(
            self.adapters,
            self.token_manager,
            self.notes_mapping,
            visible_calendars=config.get('calendar.visible_calendars', {}),
        )
        self.scheme_router = scheme_router or SchemeCallbackRouter()
        self.flow = AuthorizationFlowCoordinator(
            self.adapters,
            self._provider_settings(),
            self.token_manager,
            self.http_client,
            self.scheme_router,
            callback_timeout=float(
                config.get(
                    'calendar.oauth.callback_timeout_seconds', OAUTH_CALLBACK_TIMEOUT_SECONDS
                )
            ),
            open_browser=open_browser,
        )

        logger.info("CalendarManager initialized")

    def _provider_settings(self) -> Dict[str, ProviderOAuthSettings]:
        settings = {}
        for provider in self.adapters:
            oauth_config = self.config.get(f'calendar.oauth.{provider}', {}) or {}
            settings[provider] = ProviderOAuthSettings(
                client_id=oauth_config.get('client_id') or '',
                redirect_uri=oauth_config.get('redirect_uri') or '',
            )
        return settings

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def connect(self, provider: str) -> TokenRecord:
        """Authorize a provider account and store its token."""
        return await self.flow.authorize(provider)

    async def disconnect(self, provider: str) -> bool:
        """
        Disconnect a provider.

        Revokes the token at the provider where revocation is supported and
        deletes the stored token. Notes links are left untouched.

        Returns:
            True if a stored token was removed
        """
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ConfigurationError(f"Unsupported calendar provider: {provider}")

        token = await self.token_manager.load(provider)
        if token is None:
            logger.info(f"{provider} is not connected")
            return False

        try:
            await adapter.revoke(token)
        except httpx.HTTPError as e:
            logger.warning(f"Revocation at {provider} failed, removing local token anyway: {e}")

        await self.token_manager.delete(provider)
        logger.info(f"Disconnected {provider}")
        return True

    async def connected_providers(self) -> List[str]:
        return await self.token_manager.connected_providers(self.adapters.keys())

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def list_events(self, start: datetime, end: datetime) -> CalendarListResult:
        return await self.aggregator.list_events(start, end)

    async def list_today(self) -> CalendarListResult:
        return await self.aggregator.list_today()

    async def list_calendars(self, provider: str) -> List[CalendarInfo]:
        if provider not in self.adapters:
            raise ConfigurationError(f"Unsupported calendar provider: {provider}")
        return await self.aggregator.list_calendars(provider)

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    async def link_notes(self, event_id: str, notes_id: str, provider: str) -> EventNotesLink:
        return await self.aggregator.link(event_id, notes_id, provider)

    async def unlink_notes(self, event_id: str) -> bool:
        return await self.aggregator.unlink(event_id)

    async def get_notes_for_event(self, event_id: str) -> Optional[str]:
        return await self.aggregator.get(event_id)

    async def get_notes_link(self, event_id: str) -> Optional[EventNotesLink]:
        return await self.aggregator.get_link(event_id)

    async def find_event_for_notes(self, notes_id: str) -> Optional[str]:
        return await self.aggregator.reverse_lookup(notes_id)

    async def write_back_link(self, event: CalendarEventRecord, notes_id: str) -> bool:
        return await self.aggregator.write_back_link(event, notes_id)

    async def close(self) -> None:
        """Release the HTTP client if this manager created it."""
        if self._owns_http_client:
            await self.http_client.close()
