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
Background polling of connected calendars.

A single APScheduler interval job fetches today's merged events and keeps
the latest result and outcome for status reporting.
"""

import logging
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config.constants import DEFAULT_SYNC_INTERVAL_MINUTES
from core.calendar.constants import SyncStatus
from core.calendar.models import CalendarListResult
from utils.time_utils import current_iso_timestamp

logger = logging.getLogger("calbridge.calendar.sync_scheduler")

SYNC_JOB_ID = "calendar_sync"


class SyncScheduler:
    """
    Polls CalendarManager.list_today() on a fixed interval.

    start() must be called with an asyncio loop running. A failing poll is
    logged and recorded as FAILED; the previous result is kept.
    """

    def __init__(
        self,
        calendar_manager,
        interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.calendar_manager = calendar_manager
        self.interval_minutes = interval_minutes
        self.scheduler = scheduler or AsyncIOScheduler()

        self.last_result: Optional[CalendarListResult] = None
        self.last_status: Optional[str] = None
        self.last_sync_time: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        if self.is_running:
            logger.warning("Sync scheduler already running")
            return

        self.scheduler.add_job(
            self._poll,
            IntervalTrigger(minutes=self.interval_minutes),
            id=SYNC_JOB_ID,
            name="Calendar poll",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"Polling calendars every {self.interval_minutes} min")

    def stop(self) -> None:
        if not self.is_running:
            logger.debug("Sync scheduler not running")
            return

        self.scheduler.remove_all_jobs()
        self.scheduler.shutdown(wait=False)
        logger.info("Calendar polling stopped")

    async def sync_now(self) -> Optional[CalendarListResult]:
        """
        Poll immediately, outside the schedule.

        Returns:
            The new result, or None when the poll failed
        """
        await self._poll()
        if self.last_status == SyncStatus.FAILED:
            return None
        return self.last_result

    async def _poll(self) -> None:
        self.last_sync_time = current_iso_timestamp()

        try:
            result = await self.calendar_manager.list_today()
        except Exception as e:
            # The job must keep firing; the failure is surfaced via get_status()
            logger.error(f"Calendar poll failed: {e}", exc_info=True)
            self.last_status = SyncStatus.FAILED
            return

        self.last_result = result
        self.last_status = SyncStatus.PARTIAL if result.errors else SyncStatus.SUCCESS
        logger.info(
            f"Calendar poll {self.last_status}: {len(result.events)} events, "
            f"{len(result.errors)} error(s)"
        )

    def get_next_sync_time(self) -> Optional[str]:
        """ISO timestamp of the next scheduled poll, or None."""
        job = self.scheduler.get_job(SYNC_JOB_ID) if self.is_running else None
        next_run = getattr(job, "next_run_time", None)
        return next_run.isoformat() if next_run else None

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "interval_minutes": self.interval_minutes,
            "next_sync_time": self.get_next_sync_time(),
            "last_sync_time": self.last_sync_time,
            "last_status": self.last_status,
            "last_event_count": len(self.last_result.events) if self.last_result else 0,
        }
