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
"""Time utilities for CalBridge."""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from config.constants import (
    ISO_DATE_ONLY_LENGTH,
    MILLISECONDS_PER_SECOND,
    UTC_TIMEZONE_OFFSET,
    UTC_TIMEZONE_SUFFIX,
)

logger = logging.getLogger("calbridge.utils.time_utils")


def now_utc() -> datetime:
    """Get current datetime with UTC timezone."""
    return datetime.now(timezone.utc)


def now_local() -> datetime:
    """Get current datetime in system local timezone (aware)."""
    return now_utc().astimezone()


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * MILLISECONDS_PER_SECOND)


def current_iso_timestamp() -> str:
    """Get current UTC timestamp as ISO 8601 string with 'Z' suffix."""
    return to_utc_iso(now_utc())


def to_utc_iso(value: datetime) -> str:
    """Format a datetime as UTC ISO 8601 with a 'Z' suffix."""
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).isoformat().replace(
        UTC_TIMEZONE_OFFSET, UTC_TIMEZONE_SUFFIX
    )


def parse_datetime(value: Any, assume_utc: bool = False) -> Optional[datetime]:
    """
    Parse a provider timestamp into an aware datetime.

    Args:
        value: ISO 8601 date-time, bare date (all-day events) or datetime
        assume_utc: Treat naive values as UTC instead of local time

    Returns:
        Timezone-aware datetime, or None if the value cannot be parsed
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(UTC_TIMEZONE_SUFFIX):
            text = f"{text[:-1]}{UTC_TIMEZONE_OFFSET}"

        # Graph returns seven fractional digits; fromisoformat accepts six
        if "." in text:
            main, _, remainder = text.partition(".")
            digits = ""
            while remainder and remainder[0].isdigit():
                digits += remainder[0]
                remainder = remainder[1:]
            text = f"{main}.{digits[:6].ljust(6, '0')}{remainder}"

        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            logger.warning("Failed to parse datetime value: %s", value)
            return None

        if len(value.strip()) == ISO_DATE_ONLY_LENGTH:
            # All-day events carry a bare date in the calendar's local day
            return dt.astimezone() if not assume_utc else dt.replace(tzinfo=timezone.utc)
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc) if assume_utc else dt.astimezone()
    return dt


def local_day_bounds(day: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Return local midnight and 23:59:59 for the given (or current) day."""
    reference = (day or now_local()).astimezone()
    start = reference.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(hours=23, minutes=59, seconds=59)
    return start, end
