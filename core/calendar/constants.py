# SPDX-License-Identifier: Apache-2.0
"""
Constants for calendar providers and sync runs.

Defines provider names and sync status to avoid hardcoded strings.
"""


class CalendarSource:
    """Enumeration of calendar providers."""

    GOOGLE = "google"
    OUTLOOK = "outlook"

    @classmethod
    def list_external(cls):
        """Return list of external providers."""
        return [cls.GOOGLE, cls.OUTLOOK]

    @classmethod
    def display_name(cls, provider: str) -> str:
        return {cls.GOOGLE: "Google Calendar", cls.OUTLOOK: "Outlook Calendar"}.get(
            provider, provider
        )


class SyncStatus:
    """Enumeration of synchronization statuses."""

    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"
