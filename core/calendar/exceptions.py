# SPDX-License-Identifier: Apache-2.0
"""
Exceptions for calendar authorization and synchronization.
"""

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """Coarse error categories used for user-facing messages."""

    CONFIGURATION = "configuration"
    AUTHORIZATION = "authorization"
    NETWORK = "network"
    API_LIMIT = "api_limit"
    PERMISSION = "permission"
    UNKNOWN = "unknown"


class CalendarError(Exception):
    """Base exception for calendar operations."""

    category = ErrorCategory.UNKNOWN


class ConfigurationError(CalendarError):
    """Raised when a provider is missing required configuration (e.g. client id)."""

    category = ErrorCategory.CONFIGURATION


class AuthorizationError(CalendarError):
    """Raised when the OAuth callback is invalid (state mismatch, missing code, timeout)."""

    category = ErrorCategory.AUTHORIZATION


class ExchangeFailed(CalendarError):
    """Raised when the relay rejects the authorization-code exchange."""

    category = ErrorCategory.AUTHORIZATION

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RefreshFailed(CalendarError):
    """Raised when a token refresh fails permanently or retries are exhausted."""

    category = ErrorCategory.AUTHORIZATION

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class TransientNetworkError(CalendarError):
    """Connection reset, timeout, DNS failure or 5xx response."""

    category = ErrorCategory.NETWORK


class RateLimitError(TransientNetworkError):
    """HTTP 429 or provider rate-limit phrasing."""

    category = ErrorCategory.API_LIMIT

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class CalendarPermissionError(CalendarError):
    """A calendar or account answered 403/404."""

    category = ErrorCategory.PERMISSION

    def __init__(self, calendar_id: str, status_code: int):
        super().__init__(
            f"Calendar {calendar_id} is not accessible (HTTP {status_code})"
        )
        self.calendar_id = calendar_id
        self.status_code = status_code


def user_message(error: BaseException) -> str:
    """
    Return a human-readable message for an error surfaced to the user.

    Args:
        error: Exception raised by a calendar operation

    Returns:
        Message suitable for display
    """
    if isinstance(error, ConfigurationError):
        return f"Calendar is not configured: {error}"
    if isinstance(error, ExchangeFailed):
        return str(error)
    if isinstance(error, AuthorizationError):
        return f"Authorization failed: {error}"
    if isinstance(error, RefreshFailed):
        label = f"{error.provider.capitalize()} Calendar"
        if isinstance(error.__cause__, TransientNetworkError):
            return f"{label}: {user_message(error.__cause__)}"
        return f"{label} session expired. Please reconnect."
    if isinstance(error, RateLimitError):
        return "The calendar provider is rate limiting requests. Please try again shortly."
    if isinstance(error, TransientNetworkError):
        return "Network connection failed. Please check your connection and retry."
    if isinstance(error, CalendarPermissionError):
        return str(error)
    return f"Unexpected error: {error}"
