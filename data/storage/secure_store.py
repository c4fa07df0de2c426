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
Key-value persistence used for tokens and event-to-notes links.

Callers only rely on async get/set/delete; values are opaque strings.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol

from config.app_config import get_app_dir
from config.constants import FILE_PERMISSION_OWNER_RW
from data.security.encryption import SecurityManager

logger = logging.getLogger("calbridge.storage")


class KeyValueStore(Protocol):
    """Storage contract consumed by the token manager and notes mapping."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class InMemoryKeyValueStore:
    """Process-local store, used for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data.keys())


class EncryptedKeyValueStore:
    """
    File-backed store with per-value AES-GCM encryption.

    Values are encrypted by SecurityManager and kept in a single JSON file
    readable only by the owner. Cache loads and writes are serialized with an asyncio lock
    and file I/O runs in a worker thread.
    """

    def __init__(
        self,
        security_manager: SecurityManager,
        config_dir: Optional[str] = None,
        filename: str = "store.enc",
    ):
        """
        Initialize the store.

        Args:
            security_manager: SecurityManager used for value encryption
            config_dir: Directory for the store file, defaults to ~/.calbridge
            filename: Name of the store file
        """
        self.security_manager = security_manager

        if config_dir is None:
            self.config_dir = get_app_dir()
        else:
            self.config_dir = Path(config_dir).expanduser()

        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.store_file = self.config_dir / filename

        self._cache: Optional[Dict[str, str]] = None
        self._lock = asyncio.Lock()

    def _read_file(self) -> Dict[str, str]:
        if not self.store_file.exists():
            logger.debug("No existing store file at %s", self.store_file)
            return {}

        with open(self.store_file, "r", encoding="utf-8") as f:
            data = json.load(f)

        if not isinstance(data, dict):
            logger.warning("Ignoring malformed store file %s", self.store_file)
            return {}

        return {str(key): str(value) for key, value in data.items()}

    def _write_file(self, data: Dict[str, str]) -> None:
        tmp_file = self.store_file.with_suffix(".tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.chmod(tmp_file, FILE_PERMISSION_OWNER_RW)
        os.replace(tmp_file, self.store_file)

    async def _load(self) -> Dict[str, str]:
        async with self._lock:
            return await self._load_locked()

    async def _load_locked(self) -> Dict[str, str]:
        if self._cache is None:
            self._cache = await asyncio.to_thread(self._read_file)
            logger.info("Loaded %d stored value(s)", len(self._cache))
        return self._cache

    async def get(self, key: str) -> Optional[str]:
        data = await self._load()
        encrypted = data.get(key)
        if encrypted is None:
            return None
        return self.security_manager.decrypt(encrypted)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            updated = dict(await self._load_locked())
            updated[key] = self.security_manager.encrypt(value)
            await asyncio.to_thread(self._write_file, updated)
            self._cache = updated
        logger.debug("Stored value for key %s", key)

    async def delete(self, key: str) -> None:
        async with self._lock:
            current = await self._load_locked()
            if key not in current:
                logger.debug("No stored value to delete for key %s", key)
                return
            updated = {k: v for k, v in current.items() if k != key}
            await asyncio.to_thread(self._write_file, updated)
            self._cache = updated
        logger.info("Deleted stored value for key %s", key)
