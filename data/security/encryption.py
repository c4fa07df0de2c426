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
Encryption for data at rest.

Values are sealed with AES-256-GCM. The key is derived with PBKDF2 from a
machine identifier and a random per-installation salt, so an encrypted store
copied to another machine or installation cannot be opened there.
"""

import base64
import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config.app_config import get_app_dir
from config.constants import (
    ENCRYPTION_KEY_SIZE_BYTES,
    FILE_PERMISSION_OWNER_RW,
    GCM_NONCE_SIZE_BYTES,
    KEY_DERIVATION_ITERATIONS,
    SALT_SIZE_BYTES,
)

logger = logging.getLogger('calbridge.security')

MACHINE_ID_FILES = ('/etc/machine-id', '/var/lib/dbus/machine-id')
SALT_FILENAME = ".salt"


def read_machine_id() -> str:
    """Return the systemd machine id, or the MAC address where there is none."""
    for candidate in MACHINE_ID_FILES:
        try:
            value = Path(candidate).read_text().strip()
        except OSError:
            continue
        if value:
            return value
    return str(uuid.getnode())


def load_or_create_salt(path: Path) -> bytes:
    """Read the salt at path; write a fresh one if it is missing or truncated."""
    try:
        salt = path.read_bytes()
    except FileNotFoundError:
        salt = b""
    except OSError as e:
        logger.warning(f"Could not read salt file: {e}")
        salt = b""

    if len(salt) == SALT_SIZE_BYTES:
        return salt

    salt = os.urandom(SALT_SIZE_BYTES)
    path.write_bytes(salt)
    os.chmod(path, FILE_PERMISSION_OWNER_RW)
    logger.info("Created new salt")
    return salt


def derive_key(secret: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=ENCRYPTION_KEY_SIZE_BYTES,
        salt=salt,
        iterations=KEY_DERIVATION_ITERATIONS,
    )
    return kdf.derive(secret.encode('utf-8'))


class SecurityManager:
    """Encrypts and decrypts string values with an installation-bound key."""

    def __init__(self, config_dir: Optional[str] = None):
        """
        Args:
            config_dir: Directory holding the salt file. Defaults to ~/.calbridge
        """
        self.config_dir = get_app_dir() if config_dir is None else Path(config_dir).expanduser()
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.salt_file = self.config_dir / SALT_FILENAME
        self.salt = load_or_create_salt(self.salt_file)
        self._aead = AESGCM(derive_key(read_machine_id(), self.salt))

        logger.info("Security manager initialized")

    def encrypt(self, plaintext: str) -> str:
        """
        Seal plaintext.

        Returns:
            Base64 of nonce followed by ciphertext and tag; "" for empty input
        """
        if not plaintext:
            return ""

        nonce = os.urandom(GCM_NONCE_SIZE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode('utf-8'), None)
        return base64.b64encode(nonce + sealed).decode('ascii')

    def decrypt(self, encrypted_data: str) -> str:
        """
        Open a value produced by encrypt().

        Raises:
            cryptography.exceptions.InvalidTag: If the data was tampered with
                or sealed under another key
        """
        if not encrypted_data:
            return ""

        raw = base64.b64decode(encrypted_data)
        nonce, sealed = raw[:GCM_NONCE_SIZE_BYTES], raw[GCM_NONCE_SIZE_BYTES:]
        try:
            return self._aead.decrypt(nonce, sealed, None).decode('utf-8')
        except Exception as e:
            logger.error(f"Decryption failed: {type(e).__name__}")
            raise
