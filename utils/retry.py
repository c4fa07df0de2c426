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
Retry classification and backoff helpers.

Maps transport and HTTP errors onto a closed set of retry decisions.
Message matching is only used when an error carries no structured code.
"""

import logging
import random
import socket
from enum import Enum
from typing import Callable, Optional

import httpx

from config.constants import (
    REFRESH_BACKOFF_BASE_MS,
    REFRESH_BACKOFF_CAP_MS,
    REFRESH_BACKOFF_JITTER_MS,
)
from core.calendar.exceptions import (
    CalendarError,
    RateLimitError,
    RefreshFailed,
    TransientNetworkError,
)

logger = logging.getLogger("calbridge.utils.retry")


class RetryDecision(Enum):
    """Outcome of classifying a failed call."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self is not RetryDecision.FATAL


RATE_LIMIT_PHRASES = (
    "too many requests",
    "rate limit",
    "rate-limit",
    "ratelimit",
    "quota exceeded",
    "429",
)

TRANSIENT_SIGNATURES = (
    "econnreset",
    "connection reset",
    "etimedout",
    "timed out",
    "timeout",
    "enotfound",
    "eai_again",
    "getaddrinfo",
    "name or service not known",
    "temporary failure in name resolution",
    "nodename nor servname",
)

TRANSIENT_HTTPX_ERRORS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)

TRANSIENT_OS_ERRORS = (
    ConnectionResetError,
    ConnectionAbortedError,
    TimeoutError,
    socket.gaierror,
)


def classify_status(status_code: int) -> RetryDecision:
    """Classify an HTTP status code."""
    if status_code == 429:
        return RetryDecision.RATE_LIMITED
    if status_code in (408, 500, 502, 503, 504):
        return RetryDecision.TRANSIENT
    return RetryDecision.FATAL


def classify_message(message: str) -> RetryDecision:
    """Fallback classification by error text."""
    lowered = (message or "").lower()
    if any(phrase in lowered for phrase in RATE_LIMIT_PHRASES):
        return RetryDecision.RATE_LIMITED
    if any(signature in lowered for signature in TRANSIENT_SIGNATURES):
        return RetryDecision.TRANSIENT
    return RetryDecision.FATAL


def classify_error(error: BaseException) -> RetryDecision:
    """
    Map an exception to a retry decision.

    Args:
        error: Exception raised by an outbound call

    Returns:
        RetryDecision for the error
    """
    if isinstance(error, RateLimitError):
        return RetryDecision.RATE_LIMITED
    if isinstance(error, TransientNetworkError):
        return RetryDecision.TRANSIENT
    if isinstance(error, RefreshFailed) and error.status_code is not None:
        return classify_status(error.status_code)
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(error.response.status_code)
    if isinstance(error, TRANSIENT_HTTPX_ERRORS):
        return RetryDecision.TRANSIENT
    if isinstance(error, TRANSIENT_OS_ERRORS):
        return RetryDecision.TRANSIENT
    if isinstance(error, CalendarError) and not isinstance(error, RefreshFailed):
        return RetryDecision.FATAL

    decision = classify_message(str(error))
    logger.debug(
        "Classified %s by message heuristics as %s",
        type(error).__name__,
        decision.value,
    )
    return decision


def to_calendar_error(error: BaseException) -> Optional[CalendarError]:
    """Wrap a retryable low-level error in the matching CalendarError type."""
    decision = classify_error(error)
    if decision is RetryDecision.RATE_LIMITED:
        return RateLimitError(str(error) or "rate limited")
    if decision is RetryDecision.TRANSIENT:
        return TransientNetworkError(str(error) or type(error).__name__)
    return None


def compute_backoff_ms(
    attempt: int,
    jitter: Callable[[], float] = random.random,
) -> float:
    """
    Exponential backoff with jitter, capped.

    Args:
        attempt: Zero-based attempt index that just failed
        jitter: Source of uniform values in [0, 1)

    Returns:
        Delay in milliseconds: min(base * 2^attempt + rand(0, jitter), cap)
    """
    delay = REFRESH_BACKOFF_BASE_MS * (2 ** attempt) + jitter() * REFRESH_BACKOFF_JITTER_MS
    return min(delay, REFRESH_BACKOFF_CAP_MS)
