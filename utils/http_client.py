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
Retrying async HTTP client.

Wraps httpx.AsyncClient with exponential backoff and rate-limit handling.
Calendar API calls go through request(); relay calls, which apply their own
retry policy, use send_once().
"""

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import AsyncContextManager, Callable, Iterable, Optional, Set

import httpx

logger = logging.getLogger("calbridge.utils.http_client")

NETWORK_ERRORS = (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError)


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    """
    Read a Retry-After header as seconds.

    Accepts both the delta-seconds and the HTTP-date form.
    """
    header = response.headers.get("Retry-After")
    if not header:
        return None

    try:
        return max(0.0, float(header))
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(header)
    except (TypeError, ValueError) as e:
        logger.warning("Ignoring unparseable Retry-After header %r: %s", header, e)
        return None

    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


class AsyncRetryableHttpClient:
    """
    Async HTTP client with bounded retries.

    Retries network errors and the retryable status codes (408, 429, 5xx)
    with exponential backoff. A 429 carrying Retry-After waits for that long
    instead, unless it exceeds max_retry_after.
    """

    RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

    def __init__(
        self,
        max_retries: int = 3,
        timeout: float = 30.0,
        base_delay: float = 1.0,
        max_retry_after: Optional[float] = 60.0,
        retryable_status_codes: Optional[Iterable[int]] = None,
        **client_kwargs
    ):
        """
        Initialize the client.

        Args:
            max_retries: Retries after the first attempt (default 3)
            timeout: Default request timeout in seconds
            base_delay: First backoff delay in seconds, doubled per retry
            max_retry_after: Longest Retry-After to honour; None for no limit
            retryable_status_codes: Replaces the default retryable statuses
            **client_kwargs: Passed to httpx.AsyncClient (e.g. transport)
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_retry_after = max_retry_after
        self.retryable_status_codes: Set[int] = set(
            self.RETRYABLE_STATUS_CODES
            if retryable_status_codes is None
            else retryable_status_codes
        )

        client_kwargs.setdefault("timeout", timeout)
        self.client = httpx.AsyncClient(**client_kwargs)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.client.aclose()

    def _backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    def _retry_delay(self, error: httpx.HTTPError, attempt: int) -> Optional[float]:
        """
        Seconds to wait before retrying after an error, or None to give up.
        """
        if attempt >= self.max_retries:
            return None

        if isinstance(error, NETWORK_ERRORS):
            return self._backoff(attempt)

        if not isinstance(error, httpx.HTTPStatusError):
            return None

        status = error.response.status_code
        if status not in self.retryable_status_codes:
            return None

        if status == 429:
            retry_after = parse_retry_after(error.response)
            if retry_after:
                if self.max_retry_after is not None and retry_after > self.max_retry_after:
                    logger.error(
                        "Retry-After of %ss exceeds the %ss limit, giving up",
                        retry_after,
                        self.max_retry_after,
                    )
                    return None
                return retry_after

        return self._backoff(attempt)

    async def send_once(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send a single request without retries or status checks.
        """
        return await self.client.request(method, url, **kwargs)

    async def _attempt(self, method: str, url: str, gate, **kwargs) -> httpx.Response:
        if gate is None:
            return await self.client.request(method, url, **kwargs)
        async with gate():
            return await self.client.request(method, url, **kwargs)

    async def request(
        self,
        method: str,
        url: str,
        *,
        gate: Optional[Callable[[], AsyncContextManager]] = None,
        **kwargs
    ) -> httpx.Response:
        """
        Send a request, retrying retryable failures.

        gate, when given, is entered around each attempt on its own; backoff
        sleeps happen outside it.

        Returns:
            A successful (2xx/3xx) response

        Raises:
            httpx.HTTPStatusError: Non-retryable status or retries exhausted
            httpx.HTTPError: Network failure after the last retry
        """
        attempt = 0
        while True:
            try:
                response = await self._attempt(method, url, gate, **kwargs)
                response.raise_for_status()
            except (httpx.HTTPStatusError, *NETWORK_ERRORS) as e:
                delay = self._retry_delay(e, attempt)
                if delay is None:
                    logger.debug("Giving up on %s %s after %d attempt(s): %s", method, url, attempt + 1, e)
                    raise
                logger.warning(
                    "%s %s failed (%s), retry %d/%d in %.1fs",
                    method,
                    url,
                    type(e).__name__,
                    attempt + 1,
                    self.max_retries,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            if attempt:
                logger.info("%s %s succeeded after %d retries", method, url, attempt)
            return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request('GET', url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request('POST', url, **kwargs)
