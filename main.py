#!/usr/bin/env python3
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
CalBridge - calendar synchronization engine

Command-line entry point.
"""

import argparse
import asyncio
import json
import sys
import threading
import webbrowser
from datetime import timedelta
from urllib.parse import urlsplit

from config.__version__ import get_display_version
from config.app_config import ConfigManager
from core.auth.transports import SchemeCallbackRouter, custom_redirect_scheme
from core.calendar.constants import CalendarSource
from core.calendar.exceptions import CalendarError, user_message
from core.calendar.manager import CalendarManager
from core.calendar.models import CalendarListResult
from core.calendar.sync_scheduler import SyncScheduler
from data.security.encryption import SecurityManager
from data.storage.secure_store import EncryptedKeyValueStore
from utils.logger import get_log_file_path, get_logger, setup_logging
from utils.time_utils import local_day_bounds

logger = get_logger("main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="calbridge",
        description="Connect calendar accounts and list merged events",
    )
    parser.add_argument("--version", action="version", version=get_display_version())
    parser.add_argument("--config-dir", help="Directory holding app_config.json and stored tokens")
    parser.add_argument("--verbose", action="store_true", help="Also log to the console")

    providers = CalendarSource.list_external()
    subparsers = parser.add_subparsers(dest="command", required=True)

    connect = subparsers.add_parser("connect", help="Authorize a calendar account")
    connect.add_argument("provider", choices=providers)

    disconnect = subparsers.add_parser("disconnect", help="Remove a calendar account")
    disconnect.add_argument("provider", choices=providers)

    subparsers.add_parser("status", help="Show connected providers")

    calendars = subparsers.add_parser("calendars", help="List an account's calendars")
    calendars.add_argument("provider", choices=providers)

    events = subparsers.add_parser("events", help="List merged events")
    events.add_argument("--days", type=int, default=1, help="Number of days from today (default: 1)")
    events.add_argument("--json", action="store_true", help="Print events as JSON")

    link = subparsers.add_parser("link", help="Link notes to a calendar event")
    link.add_argument("event_id")
    link.add_argument("notes_id")
    link.add_argument("--provider", choices=providers, required=True)

    unlink = subparsers.add_parser("unlink", help="Remove the notes link of an event")
    unlink.add_argument("event_id")

    notes = subparsers.add_parser("notes", help="Show the notes linked to an event")
    notes.add_argument("event_id")

    find_event = subparsers.add_parser("find-event", help="Show the event linked to notes")
    find_event.add_argument("notes_id")

    subparsers.add_parser("watch", help="Poll calendars on the configured interval")

    return parser


def print_events(result: CalendarListResult, as_json: bool) -> None:
    if as_json:
        print(json.dumps({
            "events": [event.to_dict() for event in result.events],
            "errors": result.errors,
        }, indent=2))
        return

    if not result.events:
        print("No events.")
    for event in result.events:
        start = event.start.astimezone().strftime("%Y-%m-%d %H:%M")
        end = event.end.astimezone().strftime("%H:%M")
        line = f"{start}-{end}  {event.title}  [{event.provider}]"
        if event.meeting_link:
            line += f"  {event.meeting_link}"
        print(line)
    for error in result.errors:
        print(f"! {error}", file=sys.stderr)


def open_authorization_url(url: str) -> bool:
    print(f"Opening your browser to authorize. If it does not open, visit:\n{url}")
    return webbrowser.open(url)


def forward_pasted_callback(router: SchemeCallbackRouter, loop, scheme: str, stream=None) -> None:
    """
    Read lines from stdin until one is a scheme redirect, then dispatch it.

    Runs in a daemon thread; the dispatch itself happens on the event loop.
    """
    stream = stream or sys.stdin
    for line in iter(stream.readline, ""):
        url = line.strip()
        if urlsplit(url).scheme.lower() != scheme:
            if url:
                print(f"Expected an address starting with {scheme}://", file=sys.stderr)
            continue
        try:
            loop.call_soon_threadsafe(router.dispatch, url)
        except RuntimeError:
            logger.warning("Authorization already finished; ignoring pasted callback")
        return


async def run_command(args, manager: CalendarManager, config: ConfigManager) -> int:
    if args.command == "connect":
        scheme = custom_redirect_scheme(config.get(f"calendar.oauth.{args.provider}.redirect_uri"))
        if scheme:
            print(f"After approving access, paste the {scheme}:// address your browser was sent to and press Enter.")
            threading.Thread(
                target=forward_pasted_callback,
                args=(manager.scheme_router, asyncio.get_running_loop(), scheme),
                daemon=True,
            ).start()
        record = await manager.connect(args.provider)
        account = f" as {record.account_email}" if record.account_email else ""
        print(f"Connected {CalendarSource.display_name(args.provider)}{account}.")

    elif args.command == "disconnect":
        if await manager.disconnect(args.provider):
            print(f"Disconnected {CalendarSource.display_name(args.provider)}.")
        else:
            print(f"{CalendarSource.display_name(args.provider)} was not connected.")

    elif args.command == "status":
        connected = await manager.connected_providers()
        for provider in CalendarSource.list_external():
            state = "connected" if provider in connected else "not connected"
            print(f"{CalendarSource.display_name(provider)}: {state}")
        print(f"Log file: {get_log_file_path()}")

    elif args.command == "calendars":
        for calendar in await manager.list_calendars(args.provider):
            marker = " (primary)" if calendar.primary else ""
            print(f"{calendar.id}  {calendar.name}{marker}")

    elif args.command == "events":
        if args.days < 1:
            print("--days must be at least 1", file=sys.stderr)
            return 2
        start, end = local_day_bounds()
        end = end + timedelta(days=args.days - 1)
        print_events(await manager.list_events(start, end), args.json)

    elif args.command == "link":
        link = await manager.link_notes(args.event_id, args.notes_id, args.provider)
        print(f"Linked notes {link.notes_id} to event {link.calendar_event_id}.")

    elif args.command == "unlink":
        removed = await manager.unlink_notes(args.event_id)
        print("Link removed." if removed else "No link for that event.")

    elif args.command == "notes":
        notes_id = await manager.get_notes_for_event(args.event_id)
        print(notes_id or "No notes linked.")

    elif args.command == "find-event":
        event_id = await manager.find_event_for_notes(args.notes_id)
        link = await manager.get_notes_link(event_id) if event_id else None
        print(f"{event_id} [{link.provider}]" if link else "No event linked.")

    elif args.command == "watch":
        scheduler = SyncScheduler(manager, config.get("calendar.sync_interval_minutes"))
        scheduler.start()
        try:
            result = await scheduler.sync_now()
            if result is not None:
                print_events(result, as_json=False)
            await asyncio.Event().wait()
        finally:
            scheduler.stop()

    return 0


async def async_main(args, config: ConfigManager) -> int:
    security_manager = SecurityManager(args.config_dir)
    storage = EncryptedKeyValueStore(
        security_manager,
        args.config_dir,
        filename=config.get("security.store_filename", "store.enc"),
    )
    manager = CalendarManager(config, storage, open_browser=open_authorization_url)
    try:
        return await run_command(args, manager, config)
    finally:
        await manager.close()


def main(argv=None) -> int:
    """Application entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    config = ConfigManager(args.config_dir)
    setup_logging(level=config.get("logging.level"), console_output=args.verbose)
    logger.info(f"CalBridge {get_display_version()} starting: {args.command}")

    try:
        return asyncio.run(async_main(args, config))
    except CalendarError as e:
        logger.error(f"Command {args.command} failed: {e}")
        print(f"Error: {user_message(e)}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
