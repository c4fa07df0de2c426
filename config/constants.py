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
Application-wide constants for CalBridge.

This module contains constants used across multiple modules to avoid
hardcoded values throughout the codebase.
"""

# Default Configuration Values
DEFAULT_SYNC_INTERVAL_MINUTES = 15

# ============================================================================
# Network and API Constants
# ============================================================================

# HTTP Timeouts (seconds)
CALENDAR_API_TIMEOUT_SECONDS = 30.0
RELAY_TIMEOUT_SECONDS = 20.0

# Calendar API retries (in addition to the first attempt)
CALENDAR_API_MAX_RETRIES = 2

# API Pagination
GOOGLE_CALENDAR_MAX_RESULTS = 250
OUTLOOK_CALENDAR_MAX_PAGE_SIZE = 250

# Backend relay
RELAY_AUTH_PATH_TEMPLATE = "/api/auth/{provider}"

# ============================================================================
# OAuth and Security
# ============================================================================

OAUTH_STATE_TOKEN_LENGTH = 32  # bytes for secrets.token_urlsafe()
OAUTH_CODE_VERIFIER_LENGTH = 64  # bytes for secrets.token_urlsafe()
OAUTH_CODE_VERIFIER_MIN_LENGTH = 43  # PKCE minimum
OAUTH_CODE_VERIFIER_MAX_LENGTH = 128  # PKCE maximum
OAUTH_CODE_VERIFIER_PADDING_LENGTH = 32  # bytes for padding

# Authorization callback
OAUTH_CALLBACK_TIMEOUT_SECONDS = 300.0  # 5 minutes
OAUTH_LOOPBACK_HOST = "127.0.0.1"
OAUTH_LOOPBACK_PATH_PREFIX = "/oauth/callback"

# Token Expiration
DEFAULT_TOKEN_EXPIRES_IN_SECONDS = 3600  # 1 hour
STORAGE_TOKEN_BUFFER_MS = 5 * 60 * 1000  # storage-level staleness checks
FETCH_TOKEN_BUFFER_MS = 60 * 1000  # just-in-time checks on the fetch path

# Token refresh retry policy
REFRESH_MAX_ATTEMPTS = 3
REFRESH_BACKOFF_BASE_MS = 1000
REFRESH_BACKOFF_JITTER_MS = 1000
REFRESH_BACKOFF_CAP_MS = 10000

# ============================================================================
# Request Throttling
# ============================================================================

DEFAULT_MAX_CONCURRENT_REQUESTS = 3
MAX_CONCURRENT_REQUESTS_LIMIT = 10
DEFAULT_INTER_REQUEST_DELAY_MS = 200

# ============================================================================
# Calendar Aggregation
# ============================================================================

# Auto-generated contacts/birthdays/holidays feeds share this id suffix
PSEUDO_CALENDAR_ID_MARKER = "@group.v.calendar.google.com"

# ============================================================================
# Storage Keys
# ============================================================================

TOKEN_STORAGE_KEY_TEMPLATE = "calendar_{provider}_tokens"
EVENT_NOTES_STORAGE_KEY = "calendar_event_notes"

# ============================================================================
# Time Constants
# ============================================================================

MILLISECONDS_PER_SECOND = 1000

# ISO 8601 Date Handling
ISO_DATE_ONLY_LENGTH = 10  # YYYY-MM-DD
UTC_TIMEZONE_SUFFIX = "Z"
UTC_TIMEZONE_OFFSET = "+00:00"

# ============================================================================
# File System and Logging
# ============================================================================

FILE_PERMISSION_OWNER_RW = 0o600  # Owner read/write only

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024  # 10 MB log file size
LOG_FILE_BACKUP_COUNT = 5  # Number of backup log files

# Cryptographic Constants
SALT_SIZE_BYTES = 32  # 256-bit salt for key derivation
ENCRYPTION_KEY_SIZE_BYTES = 32  # 256-bit key for AES-256
KEY_DERIVATION_ITERATIONS = 100_000
GCM_NONCE_SIZE_BYTES = 12
