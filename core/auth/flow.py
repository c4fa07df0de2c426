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
OAuth2 + PKCE authorization flow.

Drives one authorization per call: open a redirect transport, send the user
to the provider, validate the single callback, exchange the code through the
backend relay and hand the resulting token to the token manager.
"""

import asyncio
import logging
import secrets
import webbrowser
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from config.constants import OAUTH_CALLBACK_TIMEOUT_SECONDS, RELAY_TIMEOUT_SECONDS
from core.auth.transports import (
    CallbackParams,
    CallbackTransport,
    LoopbackCallbackTransport,
    SchemeCallbackRouter,
    SchemeCallbackTransport,
    custom_redirect_scheme,
)
from core.calendar.exceptions import AuthorizationError, ConfigurationError, ExchangeFailed
from data.security.token_manager import (
    TokenLifecycleManager,
    TokenRecord,
    record_from_token_response,
)
from engines.calendar_sync.base import CalendarProviderAdapter, generate_state_and_pkce
from utils.http_client import AsyncRetryableHttpClient
from utils.time_utils import now_ms

logger = logging.getLogger("calbridge.auth.flow")


class FlowState(Enum):
    """Authorization flow states."""

    INIT = "init"
    AWAITING_BROWSER = "awaiting_browser"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (FlowState.COMPLETE, FlowState.FAILED)


@dataclass
class ProviderOAuthSettings:
    client_id: str
    redirect_uri: str


@dataclass
class OAuthSession:
    """
    State of one in-progress authorization.

    The state nonce can be matched at most once; after a match attempt or
    a failure it is discarded.
    """

    provider: str
    state: str
    code_verifier: str
    code_challenge: str
    transport: str = "loopback"
    redirect_uri: Optional[str] = None
    flow_state: FlowState = FlowState.INIT
    error: Optional[str] = None
    _nonce_consumed: bool = False

    def consume_state(self, received: Optional[str]) -> bool:
        """Compare the callback state to the nonce and discard the nonce."""
        if self._nonce_consumed:
            return False
        self._nonce_consumed = True
        if not received:
            return False
        return secrets.compare_digest(received.encode("utf-8"), self.state.encode("utf-8"))

    @property
    def nonce_consumed(self) -> bool:
        return self._nonce_consumed


class AuthorizationFlowCoordinator:
    """
    Runs OAuth2 + PKCE authorizations against the configured providers.

    The relay performs the code exchange, so no client secret ever leaves
    the backend.
    """

    def __init__(
        self,
        adapters: Mapping[str, CalendarProviderAdapter],
        provider_settings: Mapping[str, ProviderOAuthSettings],
        token_manager: TokenLifecycleManager,
        http_client: AsyncRetryableHttpClient,
        scheme_router: Optional[SchemeCallbackRouter] = None,
        *,
        callback_timeout: float = OAUTH_CALLBACK_TIMEOUT_SECONDS,
        open_browser: Callable[[str], Any] = webbrowser.open,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize the coordinator.

        Args:
            adapters: Provider adapters keyed by provider name
            provider_settings: Client id and redirect URI per provider
            token_manager: Receives the token of a completed flow
            http_client: HTTP client used for the relay exchange
            scheme_router: Router for custom-scheme redirects
            callback_timeout: Seconds to wait for the redirect
            open_browser: Opens the authorization URL for the user
            clock: Returns current time in epoch milliseconds
        """
        self.adapters = dict(adapters)
        self.provider_settings = dict(provider_settings)
        self.token_manager = token_manager
        self.http_client = http_client
        self.scheme_router = scheme_router or SchemeCallbackRouter()
        self.callback_timeout = callback_timeout
        self._open_browser = open_browser
        self._clock = clock
        self.sessions: Dict[str, OAuthSession] = {}

    def _transition(self, session: OAuthSession, new_state: FlowState) -> None:
        logger.debug(
            "Authorization for %s: %s -> %s",
            session.provider,
            session.flow_state.value,
            new_state.value,
        )
        session.flow_state = new_state

    def _fail(self, session: OAuthSession, error: BaseException) -> None:
        session.error = str(error) or type(error).__name__
        session._nonce_consumed = True
        self._transition(session, FlowState.FAILED)
        logger.error(f"Authorization for {session.provider} failed: {session.error}")

    def _resolve(self, provider: str):
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ConfigurationError(f"Unsupported calendar provider: {provider}")

        settings = self.provider_settings.get(provider)
        if settings is None or not settings.client_id:
            raise ConfigurationError(f"No OAuth client id configured for {provider}")

        return adapter, settings

    def _create_transport(
        self, provider: str, settings: ProviderOAuthSettings
    ) -> CallbackTransport:
        if custom_redirect_scheme(settings.redirect_uri):
            return SchemeCallbackTransport(self.scheme_router, settings.redirect_uri)
        return LoopbackCallbackTransport(provider)

    async def authorize(self, provider: str) -> TokenRecord:
        """
        Run a complete authorization for a provider.

        Args:
            provider: Provider name ("google" or "outlook")

        Returns:
            The stored TokenRecord

        Raises:
            ConfigurationError: Unknown provider or missing client id
            AuthorizationError: Provider error, state mismatch, missing code or timeout
            ExchangeFailed: The relay rejected the code exchange
        """
        adapter, settings = self._resolve(provider)

        pkce = generate_state_and_pkce()
        transport = self._create_transport(provider, settings)
        session = OAuthSession(
            provider=provider,
            state=pkce['state'],
            code_verifier=pkce['code_verifier'],
            code_challenge=pkce['code_challenge'],
            transport=transport.kind,
        )
        self.sessions[provider] = session
        logger.info(f"Starting OAuth flow for {provider} via {transport.kind} redirect")

        try:
            session.redirect_uri = await transport.start()

            auth_url = adapter.get_authorization_url(
                settings.client_id,
                session.redirect_uri,
                session.state,
                session.code_challenge,
            )
            self._transition(session, FlowState.AWAITING_BROWSER)
            if not self._open_browser(auth_url):
                logger.warning("Could not open a browser; visit this URL to continue: %s", auth_url)

            self._transition(session, FlowState.AWAITING_CALLBACK)
            try:
                params = await asyncio.wait_for(
                    transport.wait_for_callback(), timeout=self.callback_timeout
                )
            except asyncio.TimeoutError:
                raise AuthorizationError("authorization timed out") from None

            code = self._validate_callback(session, params)

            self._transition(session, FlowState.EXCHANGING)
            payload = await self._exchange(provider, code, session)

            record = record_from_token_response(provider, payload, self._clock())
            await self.token_manager.store(record)

            self._transition(session, FlowState.COMPLETE)
            logger.info(f"Authorization for {provider} completed")
            return record
        except (Exception, asyncio.CancelledError) as exc:
            self._fail(session, exc)
            raise
        finally:
            await transport.close()

    def _validate_callback(self, session: OAuthSession, params: CallbackParams) -> str:
        matched = session.consume_state(params.state)

        if params.error:
            detail = params.error_description or params.error
            raise AuthorizationError(f"provider returned an error: {detail}")

        if not matched:
            raise AuthorizationError("state mismatch")

        if not params.code:
            raise AuthorizationError("missing authorization code")

        return params.code

    async def _exchange(
        self, provider: str, code: str, session: OAuthSession
    ) -> Dict[str, Any]:
        """Exchange the authorization code through the relay."""
        try:
            response = await self.http_client.send_once(
                "POST",
                self.token_manager.relay_url(provider),
                json={
                    "code": code,
                    "redirect_uri": session.redirect_uri,
                    "code_verifier": session.code_verifier,
                },
                timeout=RELAY_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as exc:
            raise ExchangeFailed(f"token exchange failed: {exc}") from exc

        if not response.is_success:
            body = response.text
            raise ExchangeFailed(
                f"token exchange failed: {body}",
                status_code=response.status_code,
                body=body,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExchangeFailed("token exchange failed: invalid JSON response") from exc

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise ExchangeFailed("token exchange failed: response missing access_token")

        return payload
