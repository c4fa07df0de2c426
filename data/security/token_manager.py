# SPDX-License-Identifier: Apache-2.0
#
# Copyright (c) 2024-2025 EchoNote Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
OAuth token lifecycle management.

Handles persistence, staleness detection and single-flight refresh of
provider tokens through the backend relay.
"""

import asyncio
import base64
import hashlib
import json
import logging
import random
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from config.constants import (
    DEFAULT_TOKEN_EXPIRES_IN_SECONDS,
    FETCH_TOKEN_BUFFER_MS,
    MILLISECONDS_PER_SECOND,
    REFRESH_MAX_ATTEMPTS,
    RELAY_AUTH_PATH_TEMPLATE,
    RELAY_TIMEOUT_SECONDS,
    STORAGE_TOKEN_BUFFER_MS,
    TOKEN_STORAGE_KEY_TEMPLATE,
)
from core.calendar.exceptions import (
    CalendarError,
    RateLimitError,
    RefreshFailed,
    TransientNetworkError,
)
from data.storage.secure_store import KeyValueStore
from utils.http_client import AsyncRetryableHttpClient
from utils.retry import (
    RetryDecision,
    classify_error,
    classify_status,
    compute_backoff_ms,
    to_calendar_error,
)
from utils.time_utils import now_ms

logger = logging.getLogger("calbridge.security.tokens")


@dataclass
class TokenRecord:
    """OAuth token set for one provider account."""

    provider: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None  # epoch milliseconds
    scope: Optional[str] = None
    token_type: str = "Bearer"
    account_email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        expires_at = data.get("expires_at")
        return cls(
            provider=data["provider"],
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=int(expires_at) if expires_at is not None else None,
            scope=data.get("scope"),
            token_type=normalize_token_type(data.get("token_type")),
            account_email=data.get("account_email"),
        )


@dataclass(frozen=True)
class RefreshKey:
    """Identity of a refresh operation: provider plus a digest of the refresh token."""

    provider: str
    refresh_token_hash: str

    @classmethod
    def for_token(cls, provider: str, refresh_token: str) -> "RefreshKey":
        digest = hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()
        return cls(provider=provider, refresh_token_hash=digest)


def normalize_token_type(token_type: Optional[str]) -> str:
    if not token_type:
        return "Bearer"
    normalized = token_type.strip()
    if normalized.lower() == "bearer":
        return "Bearer"
    return normalized


def extract_email_from_id_token(id_token: Optional[str]) -> Optional[str]:
    """
    Read the email claim from an OpenID Connect id_token.

    The signature is not verified; the value is only used as a display label.
    """
    if not id_token or id_token.count(".") < 2:
        return None

    payload_segment = id_token.split(".")[1]
    padded = payload_segment + "=" * (-len(payload_segment) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, UnicodeDecodeError):
        logger.debug("Could not decode id_token payload")
        return None

    if not isinstance(claims, dict):
        return None
    email = claims.get("email") or claims.get("preferred_username")
    return email if isinstance(email, str) else None


def record_from_token_response(
    provider: str,
    payload: Dict[str, Any],
    issued_at_ms: int,
) -> TokenRecord:
    """Build a TokenRecord from a relay code-exchange payload."""
    expires_in = payload.get("expires_in")
    if expires_in is None:
        expires_in = DEFAULT_TOKEN_EXPIRES_IN_SECONDS

    return TokenRecord(
        provider=provider,
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token"),
        expires_at=issued_at_ms + int(expires_in) * MILLISECONDS_PER_SECOND,
        scope=payload.get("scope"),
        token_type=normalize_token_type(payload.get("token_type")),
        account_email=extract_email_from_id_token(payload.get("id_token")),
    )


def merge_refreshed_token(
    token: TokenRecord,
    payload: Dict[str, Any],
    issued_at_ms: int,
) -> TokenRecord:
    """
    Merge a refresh response into an existing record.

    The access token is always replaced. Expiry, scope and token type are
    replaced only when present. A rotated refresh token replaces the old one;
    when the response carries none, the existing refresh token is preserved.
    """
    expires_at = token.expires_at
    expires_in = payload.get("expires_in")
    if expires_in is not None:
        expires_at = issued_at_ms + int(expires_in) * MILLISECONDS_PER_SECOND

    rotated = payload.get("refresh_token")

    return replace(
        token,
        access_token=payload["access_token"],
        expires_at=expires_at,
        scope=payload.get("scope") or token.scope,
        token_type=(
            normalize_token_type(payload["token_type"])
            if payload.get("token_type")
            else token.token_type
        ),
        refresh_token=rotated if rotated else token.refresh_token,
    )


class TokenLifecycleManager:
    """
    Owns provider tokens: storage, staleness checks and refresh.

    Concurrent refreshes of the same (provider, refresh token) pair are
    collapsed into a single relay call whose result every caller shares.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        http_client: AsyncRetryableHttpClient,
        relay_base_url: str,
        *,
        max_attempts: int = REFRESH_MAX_ATTEMPTS,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Any] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        """
        Initialize the token manager.

        Args:
            storage: Key-value store for token blobs
            http_client: HTTP client used for relay calls
            relay_base_url: Base URL of the backend auth relay
            max_attempts: Total refresh attempts for retryable failures
            clock: Returns current time in epoch milliseconds
            sleep: Coroutine used for backoff waits
            jitter: Uniform [0, 1) source for backoff jitter
        """
        self.storage = storage
        self.http_client = http_client
        self.relay_base_url = relay_base_url.rstrip("/")
        self.max_attempts = max_attempts
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter
        self._in_flight: Dict[RefreshKey, "asyncio.Task[TokenRecord]"] = {}

        logger.info("Token lifecycle manager initialized")

    def relay_url(self, provider: str) -> str:
        return self.relay_base_url + RELAY_AUTH_PATH_TEMPLATE.format(provider=provider)

    @staticmethod
    def storage_key(provider: str) -> str:
        return TOKEN_STORAGE_KEY_TEMPLATE.format(provider=provider)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def store(self, record: TokenRecord) -> None:
        """Persist a token record for its provider."""
        await self.storage.set(self.storage_key(record.provider), json.dumps(record.to_dict()))
        logger.info(f"Stored OAuth token for provider: {record.provider}")
        logger.debug(
            "Provider %s token persisted (expires_at=%s)",
            record.provider,
            record.expires_at,
        )

    async def load(self, provider: str) -> Optional[TokenRecord]:
        """Load the stored record for a provider, or None."""
        raw = await self.storage.get(self.storage_key(provider))
        if not raw:
            logger.debug(f"No OAuth token found for provider: {provider}")
            return None

        try:
            return TokenRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Stored token for {provider} is unreadable: {e}")
            return None

    async def delete(self, provider: str) -> None:
        await self.storage.delete(self.storage_key(provider))
        logger.info(f"Deleted OAuth token for provider: {provider}")

    async def connected_providers(self, candidates: Iterable[str]) -> List[str]:
        """Return the subset of providers that have a stored token."""
        connected = []
        for provider in candidates:
            if await self.storage.get(self.storage_key(provider)):
                connected.append(provider)
        return connected

    # ------------------------------------------------------------------
    # Freshness
    # ------------------------------------------------------------------

    def is_stale(self, token: TokenRecord, buffer_ms: int) -> bool:
        """
        Check whether a token is expired or about to expire.

        Args:
            token: Token record to check
            buffer_ms: Treat the token as stale this many ms before expiry

        Returns:
            True when expires_at is set and now >= expires_at - buffer_ms
        """
        if token.expires_at is None:
            return False
        return self._clock() >= token.expires_at - buffer_ms

    async def get_valid_token(self, provider: str) -> Optional[TokenRecord]:
        """Load a stored token and refresh it using the storage-level buffer."""
        token = await self.load(provider)
        if token is None:
            return None
        return await self.ensure_fresh(provider, token, buffer_ms=STORAGE_TOKEN_BUFFER_MS)

    async def ensure_fresh(
        self,
        provider: str,
        token: TokenRecord,
        buffer_ms: int = FETCH_TOKEN_BUFFER_MS,
    ) -> TokenRecord:
        """
        Return a token that is not stale, refreshing it if needed.

        Any number of concurrent callers holding the same stale token share
        one refresh.

        Raises:
            RefreshFailed: No refresh token, permanent failure, or retries exhausted
        """
        if not self.is_stale(token, buffer_ms):
            return token

        if not token.refresh_token:
            raise RefreshFailed(provider, f"No refresh token available for {provider}")

        key = RefreshKey.for_token(provider, token.refresh_token)
        task = self._in_flight.get(key)
        if task is None:
            logger.info(f"Refreshing token for {provider}")
            task = asyncio.ensure_future(self._run_refresh(key, provider, token))
            self._in_flight[key] = task
        else:
            logger.debug("Joining in-flight refresh for %s", provider)

        return await asyncio.shield(task)

    async def _run_refresh(
        self, key: RefreshKey, provider: str, token: TokenRecord
    ) -> TokenRecord:
        try:
            return await self.refresh(provider, token)
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, provider: str, token: TokenRecord) -> TokenRecord:
        """
        Refresh a token through the relay, retrying transient failures.

        Args:
            provider: Provider name
            token: Current token record (must carry a refresh token)

        Returns:
            Merged and persisted token record
        """
        if not token.refresh_token:
            raise RefreshFailed(provider, f"No refresh token available for {provider}")

        last_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                payload = await self._request_refresh(provider, token.refresh_token)
            except CalendarError as exc:
                last_error = exc
                decision = classify_error(exc)

                if not decision.retryable:
                    logger.error(f"Failed to refresh token for {provider}: {exc}")
                    raise

                if attempt + 1 >= self.max_attempts:
                    break

                delay_ms = compute_backoff_ms(attempt, self._jitter)
                logger.warning(
                    "Token refresh for %s failed (%s), retrying in %.0fms (attempt %d/%d)",
                    provider,
                    decision.value,
                    delay_ms,
                    attempt + 1,
                    self.max_attempts,
                )
                await self._sleep(delay_ms / MILLISECONDS_PER_SECOND)
                continue

            refreshed = merge_refreshed_token(token, payload, self._clock())
            await self.store(refreshed)
            logger.info(f"Successfully refreshed token for {provider}")
            return refreshed

        logger.error(
            "Token refresh for %s failed after %d attempts", provider, self.max_attempts
        )
        status_code = 429 if isinstance(last_error, RateLimitError) else None
        raise RefreshFailed(
            provider,
            f"token refresh failed after {self.max_attempts} attempts: {last_error}",
            status_code=status_code,
        ) from last_error

    async def _request_refresh(self, provider: str, refresh_token: str) -> Dict[str, Any]:
        """Issue one refresh call and translate failures into typed errors."""
        try:
            response = await self.http_client.send_once(
                "POST",
                self.relay_url(provider),
                json={"grant_type": "refresh_token", "refresh_token": refresh_token},
                timeout=RELAY_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as exc:
            wrapped = to_calendar_error(exc)
            if wrapped is not None:
                raise wrapped from exc
            raise RefreshFailed(provider, f"token refresh failed: {exc}") from exc

        if response.status_code >= 400:
            body = response.text
            decision = classify_status(response.status_code)
            if decision is RetryDecision.RATE_LIMITED:
                raise RateLimitError(f"token refresh rate limited: {body}")
            if decision is RetryDecision.TRANSIENT:
                raise TransientNetworkError(
                    f"token refresh failed with HTTP {response.status_code}: {body}"
                )
            raise RefreshFailed(
                provider,
                f"token refresh failed: {body}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise RefreshFailed(provider, "token refresh returned invalid JSON") from exc

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise RefreshFailed(provider, "token refresh response missing access_token")

        return payload
