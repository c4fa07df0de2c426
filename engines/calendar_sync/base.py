"""
Base class for calendar provider adapters.

Adapters build authorization URLs, call provider REST APIs with a bearer
token and normalize provider payloads into CalendarEventRecord objects.
"""

import base64
import hashlib
import logging
import re
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import httpx

from config.constants import (
    CALENDAR_API_TIMEOUT_SECONDS,
    OAUTH_CODE_VERIFIER_LENGTH,
    OAUTH_CODE_VERIFIER_MAX_LENGTH,
    OAUTH_CODE_VERIFIER_MIN_LENGTH,
    OAUTH_CODE_VERIFIER_PADDING_LENGTH,
    OAUTH_STATE_TOKEN_LENGTH,
)
from core.calendar.exceptions import CalendarPermissionError
from core.calendar.models import CalendarEventRecord, CalendarInfo
from core.calendar.throttle import RequestThrottle
from data.security.token_manager import TokenRecord
from utils.http_client import AsyncRetryableHttpClient
from utils.retry import to_calendar_error

URL_PATTERN = re.compile(r"https?://[^\s<>\"']+")


def derive_code_challenge(code_verifier: str) -> str:
    """S256 PKCE challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode('ascii')).digest()
    return base64.urlsafe_b64encode(digest).decode('ascii').rstrip('=')


def generate_state_and_pkce() -> Dict[str, str]:
    """Generate OAuth state and PKCE parameters."""

    state = secrets.token_urlsafe(OAUTH_STATE_TOKEN_LENGTH)
    code_verifier = secrets.token_urlsafe(OAUTH_CODE_VERIFIER_LENGTH)

    while len(code_verifier) < OAUTH_CODE_VERIFIER_MIN_LENGTH:
        code_verifier += secrets.token_urlsafe(OAUTH_CODE_VERIFIER_PADDING_LENGTH)

    code_verifier = code_verifier[:OAUTH_CODE_VERIFIER_MAX_LENGTH]

    return {
        'state': state,
        'code_verifier': code_verifier,
        'code_challenge': derive_code_challenge(code_verifier),
    }


def find_url(text: Optional[str]) -> Optional[str]:
    """First http(s) URL in free text, if any."""
    if not text:
        return None
    match = URL_PATTERN.search(text)
    return match.group(0).rstrip('.,;)') if match else None


@dataclass(frozen=True)
class ProviderConfig:
    """Static OAuth and API description of a calendar provider."""

    name: str
    auth_url: str
    api_base_url: str
    scopes: Tuple[str, ...]
    write_scopes: FrozenSet[str] = frozenset()
    authorization_extras: Mapping[str, str] = field(default_factory=dict)
    revoke_url: Optional[str] = None


class CalendarProviderAdapter(ABC):
    """
    Abstract base class for calendar provider adapters.

    Concrete adapters (Google, Outlook) describe their provider through
    provider_config and implement calendar listing, event fetching and
    event normalization.
    """

    provider_config: ProviderConfig
    primary_calendar_id: str = 'primary'

    def __init__(
        self,
        http_client: AsyncRetryableHttpClient,
        logger: Optional[logging.Logger] = None,
        throttle: Optional[RequestThrottle] = None,
    ):
        self.http_client = http_client
        self.throttle = throttle
        self.logger = logger or logging.getLogger(
            f"calbridge.calendar_sync.{self.name}"
        )

    @property
    def name(self) -> str:
        return self.provider_config.name

    @property
    def api_base_url(self) -> str:
        return self.provider_config.api_base_url

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def build_authorization_params(
        self,
        client_id: str,
        redirect_uri: str,
        state: str,
        code_challenge: str,
    ) -> Dict[str, Any]:
        """Base authorization parameters plus provider extras."""

        params = {
            'client_id': client_id,
            'redirect_uri': redirect_uri,
            'response_type': 'code',
            'scope': ' '.join(self.provider_config.scopes),
            'state': state,
            'code_challenge': code_challenge,
            'code_challenge_method': 'S256',
        }
        params.update(self.provider_config.authorization_extras)
        return params

    def get_authorization_url(
        self,
        client_id: str,
        redirect_uri: str,
        state: str,
        code_challenge: str,
    ) -> str:
        params = self.build_authorization_params(
            client_id, redirect_uri, state, code_challenge
        )
        auth_url = f"{self.provider_config.auth_url}?{urlencode(params)}"
        self.logger.debug("Built authorization URL for %s", self.name)
        return auth_url

    def is_readonly_scope(self, scope: Optional[str]) -> bool:
        """
        Whether a granted scope string allows no calendar writes.

        A missing scope is treated as the configured (read-only) request.
        """
        granted = set((scope or ' '.join(self.provider_config.scopes)).split())
        return not (granted & self.provider_config.write_scopes)

    async def revoke(self, token: TokenRecord) -> bool:
        """
        Revoke a token at the provider.

        Returns:
            True if the provider accepted the revocation, False when the
            provider has no revocation endpoint
        """
        if not self.provider_config.revoke_url:
            self.logger.info("No revoke endpoint defined; clearing local tokens only")
            return False

        try:
            await self.http_client.post(
                self.provider_config.revoke_url,
                params={'token': token.access_token},
                timeout=CALENDAR_API_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as exc:
            self.logger.error("Failed to revoke access: %s", exc)
            raise

        self.logger.info("Successfully revoked access")
        return True

    # ------------------------------------------------------------------
    # API access
    # ------------------------------------------------------------------

    async def api_request(
        self,
        token: TokenRecord,
        method: str,
        url: str,
        *,
        calendar_id: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> httpx.Response:
        """
        Call the provider API with the token's bearer header.

        When the adapter has a throttle, each attempt holds one slot; retry
        waits do not.

        Raises:
            CalendarPermissionError: The calendar answered 403 or 404
            TransientNetworkError: Retries for a transient failure ran out
            httpx.HTTPStatusError: Any other HTTP failure
        """
        auth_headers = {
            'Authorization': f'{token.token_type or "Bearer"} {token.access_token}',
            'Accept': 'application/json',
        }
        if headers:
            auth_headers.update(headers)

        kwargs.setdefault('timeout', CALENDAR_API_TIMEOUT_SECONDS)

        try:
            return await self.http_client.request(
                method,
                url,
                headers=auth_headers,
                gate=self.throttle.slot if self.throttle else None,
                **kwargs,
            )
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if calendar_id is not None and status in (403, 404):
                raise CalendarPermissionError(calendar_id, status) from exc
            wrapped = to_calendar_error(exc)
            if wrapped is not None:
                raise wrapped from exc
            raise
        except httpx.HTTPError as exc:
            wrapped = to_calendar_error(exc)
            if wrapped is not None:
                raise wrapped from exc
            raise

    @abstractmethod
    async def list_calendars(self, token: TokenRecord) -> List[CalendarInfo]:
        """List the calendars visible to the account."""

    @abstractmethod
    async def fetch_events(
        self,
        token: TokenRecord,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> List[CalendarEventRecord]:
        """
        Fetch normalized events of one calendar within [start, end].

        Events that normalize to None (cancelled, out-of-office, ...) are
        omitted.
        """

    @abstractmethod
    def normalize_event(
        self, raw: Dict[str, Any], calendar_id: str
    ) -> Optional[CalendarEventRecord]:
        """Convert a provider event payload, or return None to drop it."""
