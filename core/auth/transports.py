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
OAuth redirect transports.

Two ways for the provider's redirect to reach the running flow:

- LoopbackCallbackTransport: an ephemeral HTTP listener on 127.0.0.1
- SchemeCallbackTransport: a single-shot channel fed by the OS-level
  handler of a custom URI scheme through SchemeCallbackRouter
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from html import escape
from typing import Dict, Optional
from urllib.parse import parse_qs, urlsplit

from config.constants import (
    OAUTH_LOOPBACK_HOST,
    OAUTH_LOOPBACK_PATH_PREFIX,
)
from core.calendar.exceptions import AuthorizationError

logger = logging.getLogger("calbridge.auth.transports")

HTML_TEMPLATE = (
    "<html>"
    "<head><title>{title}</title></head>"
    "<body>"
    "    <h1>{heading}</h1>"
    "    {content}"
    "</body>"
    "</html>"
)


def custom_redirect_scheme(redirect_uri: Optional[str]) -> Optional[str]:
    """Return the redirect URI's scheme when it is an app scheme rather than http(s)."""
    scheme = urlsplit(redirect_uri or "").scheme.lower()
    if scheme and scheme not in ("http", "https"):
        return scheme
    return None


@dataclass(frozen=True)
class CallbackParams:
    """Query parameters delivered by the provider redirect."""

    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

    @classmethod
    def from_query(cls, query: str) -> "CallbackParams":
        values = parse_qs(query, keep_blank_values=False)

        def first(name: str) -> Optional[str]:
            items = values.get(name)
            return items[0] if items else None

        return cls(
            code=first("code"),
            state=first("state"),
            error=first("error"),
            error_description=first("error_description"),
        )

    @classmethod
    def from_url(cls, url: str) -> "CallbackParams":
        return cls.from_query(urlsplit(url).query)


class CallbackTransport(ABC):
    """A channel that yields exactly one redirect callback."""

    kind = "abstract"

    def __init__(self):
        self._result: Optional[asyncio.Future] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    async def start(self) -> str:
        """Open the channel and return the redirect URI to advertise."""

    async def wait_for_callback(self) -> CallbackParams:
        if self._result is None:
            raise RuntimeError("Transport has not been started")
        return await asyncio.shield(self._result)

    def _deliver(self, params: CallbackParams) -> bool:
        if self._result is None or self._result.done():
            logger.debug("Ignoring callback on a %s transport that already fired", self.kind)
            return False
        self._result.set_result(params)
        return True

    async def close(self) -> None:
        """Tear the channel down. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._result is not None and not self._result.done():
            self._result.cancel()
        await self._teardown()
        logger.debug("Closed %s callback transport", self.kind)

    async def _teardown(self) -> None:
        return None


class LoopbackCallbackTransport(CallbackTransport):
    """
    Ephemeral HTTP listener for loopback redirects.

    Binds to an OS-assigned port and accepts a GET on
    /oauth/callback/<provider>; every other path gets a 404.
    """

    kind = "loopback"

    def __init__(self, provider: str, host: str = OAUTH_LOOPBACK_HOST, port: int = 0):
        super().__init__()
        self.provider = provider
        self.host = host
        self.port = port
        self.path = f"{OAUTH_LOOPBACK_PATH_PREFIX}/{provider}"
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    async def start(self) -> str:
        self._result = asyncio.get_running_loop().create_future()
        self._server = await asyncio.start_server(self._handle_connection, self.host, self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"OAuth callback listener started on {self.host}:{self.port}")
        return self.redirect_uri

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            request_line = await reader.readline()
            # Drain headers
            while True:
                line = await reader.readline()
                if not line or line in (b"\r\n", b"\n"):
                    break

            parts = request_line.decode("latin-1").split()
            if len(parts) < 2 or parts[0].upper() != "GET":
                await self._respond(writer, 405, "Method Not Allowed", "<p>Unsupported request.</p>")
                return

            target = urlsplit(parts[1])
            if target.path != self.path:
                await self._respond(writer, 404, "Not Found", "<p>Not found.</p>")
                return

            params = CallbackParams.from_query(target.query)
            if params.code and not params.error:
                await self._respond(
                    writer,
                    200,
                    "Authorization Successful!",
                    "<p>You can close this window and return to CalBridge.</p>",
                )
            else:
                error_message = params.error_description or params.error or "Unknown error"
                await self._respond(
                    writer,
                    400,
                    "Authorization Failed",
                    f"<p>Error: {escape(error_message)}</p>"
                    "<p>You can close this window and try again.</p>",
                )
            self._deliver(params)
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.warning(f"OAuth callback connection failed: {e}")
        finally:
            writer.close()

    @staticmethod
    async def _respond(
        writer: asyncio.StreamWriter, status: int, heading: str, content: str
    ) -> None:
        reasons = {200: "OK", 400: "Bad Request", 404: "Not Found", 405: "Method Not Allowed"}
        body = HTML_TEMPLATE.format(title=heading, heading=heading, content=content).encode("utf-8")
        head = (
            f"HTTP/1.1 {status} {reasons.get(status, 'OK')}\r\n"
            "Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Connection: close\r\n"
            "\r\n"
        ).encode("latin-1")
        writer.write(head + body)
        await writer.drain()

    async def _teardown(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("OAuth callback listener stopped")


class SchemeCallbackRouter:
    """
    Routes custom-scheme URLs (e.g. calbridge://auth?code=...) to the
    transport currently waiting on that scheme.

    dispatch() must be called on the event loop thread.
    """

    def __init__(self):
        self._routes: Dict[str, "SchemeCallbackTransport"] = {}

    def register(self, scheme: str, transport: "SchemeCallbackTransport") -> None:
        scheme = scheme.lower()
        current = self._routes.get(scheme)
        if current is not None and current is not transport:
            raise AuthorizationError(
                f"Another authorization is already waiting on {scheme}://"
            )
        self._routes[scheme] = transport
        logger.debug("Registered callback route for %s://", scheme)

    def unregister(self, scheme: str, transport: "SchemeCallbackTransport") -> None:
        scheme = scheme.lower()
        if self._routes.get(scheme) is transport:
            del self._routes[scheme]
            logger.debug("Unregistered callback route for %s://", scheme)

    def is_registered(self, scheme: str) -> bool:
        return scheme.lower() in self._routes

    def dispatch(self, url: str) -> bool:
        """
        Deliver a redirect URL to the waiting transport.

        Returns:
            True if a transport accepted the callback
        """
        scheme = urlsplit(url).scheme.lower()
        transport = self._routes.get(scheme)
        if transport is None:
            logger.warning(f"No authorization waiting for {scheme}:// callback")
            return False
        return transport.deliver(url)


class SchemeCallbackTransport(CallbackTransport):
    """Single-shot channel for a custom URI scheme redirect."""

    kind = "scheme"

    def __init__(self, router: SchemeCallbackRouter, redirect_uri: str):
        super().__init__()
        self.router = router
        self.redirect_uri = redirect_uri
        self.scheme = urlsplit(redirect_uri).scheme.lower()

    async def start(self) -> str:
        self._result = asyncio.get_running_loop().create_future()
        self.router.register(self.scheme, self)
        logger.info(f"Waiting for {self.scheme}:// authorization callback")
        return self.redirect_uri

    def deliver(self, url: str) -> bool:
        accepted = self._deliver(CallbackParams.from_url(url))
        # Single delivery: stop routing as soon as one callback arrived
        self.router.unregister(self.scheme, self)
        return accepted

    async def _teardown(self) -> None:
        self.router.unregister(self.scheme, self)
