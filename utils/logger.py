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
Logging setup.

All CalBridge loggers live under the "calbridge" namespace. setup_logging()
attaches a rotating file handler and, optionally, a console handler; both
mask credentials before anything is written.
"""

import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from config.app_config import get_app_dir
from config.constants import LOG_FILE_BACKUP_COUNT, LOG_FILE_MAX_BYTES

ROOT_LOGGER_NAME = "calbridge"
LOG_FILENAME = "calbridge.log"

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class SensitiveDataFilter(logging.Filter):
    """Rewrites records so OAuth codes, tokens, verifiers and secrets never reach a handler."""

    _MASKS = [
        re.compile(r"(token\s*[=:]\s*)[^\s,&\)]+", re.IGNORECASE),
        re.compile(r"(code_verifier\s*[=:]\s*)[^\s,&\)]+", re.IGNORECASE),
        re.compile(r"([?&]code=)[^\s,&\)]+", re.IGNORECASE),
        re.compile(r"(secret\s*[=:]\s*)[^\s,&\)]+", re.IGNORECASE),
        re.compile(r"(password\s*[=:]\s*)[^\s,&\)]+", re.IGNORECASE),
        re.compile(r"(bearer\s+)[^\s,\)]+", re.IGNORECASE),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = message
        for pattern in self._MASKS:
            masked = pattern.sub(r"\1***", masked)

        if masked != message:
            record.msg = masked
            record.args = None
        return True


def _default_level() -> str:
    env = os.environ.get("CALBRIDGE_ENV", "production").lower()
    return "DEBUG" if env == "development" else "INFO"


def _make_handler(handler: logging.Handler, level: int, fmt: str, datefmt=None) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    handler.addFilter(SensitiveDataFilter())
    return handler


def setup_logging(
    log_dir: Optional[str] = None,
    level: Optional[str] = None,
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure the application logging system.

    Args:
        log_dir: Log file directory, defaults to ~/.calbridge/logs
        level: Level name; when omitted, DEBUG if CALBRIDGE_ENV=development
               and INFO otherwise. Unknown names fall back to INFO.
        console_output: Whether to also log to stdout

    Returns:
        The configured "calbridge" logger
    """
    log_path = get_app_dir() / "logs" if log_dir is None else Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    level = (level or _default_level()).upper()
    log_level = logging.getLevelName(level)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(logging.DEBUG)
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()

    log_file = log_path / LOG_FILENAME
    root.addHandler(_make_handler(
        RotatingFileHandler(
            log_file,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUP_COUNT,
            encoding="utf-8",
        ),
        log_level,
        FILE_FORMAT,
        DATE_FORMAT,
    ))
    if console_output:
        root.addHandler(_make_handler(logging.StreamHandler(sys.stdout), log_level, CONSOLE_FORMAT))

    root.info("Logging initialized")
    root.debug(f"Log file: {log_file}, level: {level}")
    return root


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger under the application namespace.

    Example:
        logger = get_logger("calendar")  # -> "calbridge.calendar"
    """
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def get_log_file_path() -> Path:
    """Return the path of the active rotating log file."""
    for handler in logging.getLogger(ROOT_LOGGER_NAME).handlers:
        if isinstance(handler, RotatingFileHandler):
            return Path(handler.baseFilename)
    return get_app_dir() / "logs" / LOG_FILENAME
