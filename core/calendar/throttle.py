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
Request throttle for outbound provider calls.

Bounds concurrency and paces queued requests so bursts of calendar fetches
stay under provider rate limits.
"""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque

from config.constants import (
    DEFAULT_INTER_REQUEST_DELAY_MS,
    DEFAULT_MAX_CONCURRENT_REQUESTS,
    MILLISECONDS_PER_SECOND,
)

logger = logging.getLogger("calbridge.calendar.throttle")


class RequestThrottle:
    """
    Counting gate with a FIFO wait queue.

    Callers below the ceiling proceed immediately. Others wait in arrival
    order; a released slot is handed directly to the next waiter after the
    inter-request delay, so the active count never exceeds the ceiling.
    """

    def __init__(
        self,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT_REQUESTS,
        inter_request_delay_ms: int = DEFAULT_INTER_REQUEST_DELAY_MS,
    ):
        """
        Initialize the throttle.

        Args:
            max_concurrent: Maximum number of in-flight requests (default: 3)
            inter_request_delay_ms: Delay before a queued request starts (default: 200)
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if inter_request_delay_ms < 0:
            raise ValueError("inter_request_delay_ms must be non-negative")

        self.max_concurrent = max_concurrent
        self.inter_request_delay = inter_request_delay_ms / MILLISECONDS_PER_SECOND
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()

        logger.info(
            f"Request throttle initialized with max_concurrent={max_concurrent}, "
            f"inter_request_delay_ms={inter_request_delay_ms}"
        )

    @property
    def active(self) -> int:
        """Number of slots currently held (including ones being handed over)."""
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        """Wait for a slot."""
        if self._active < self.max_concurrent:
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug("Request queued, %d waiting", len(self._waiters))

        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was already handed to us; pass it on.
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Return a slot, handing it to the oldest live waiter if any."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            asyncio.get_running_loop().call_later(
                self.inter_request_delay, self._hand_over, waiter
            )
            return

        if self._active > 0:
            self._active -= 1

    def _hand_over(self, waiter: asyncio.Future) -> None:
        if waiter.done():
            # Cancelled during the delay
            self.release()
            return
        waiter.set_result(None)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold a slot for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()
