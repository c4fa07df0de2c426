# SPDX-License-Identifier: Apache-2.0
"""
Shared pytest fixtures for CalBridge tests.
"""

import base64
import json

import httpx
import pytest

from data.security.token_manager import TokenLifecycleManager
from data.storage.secure_store import InMemoryKeyValueStore
from utils.http_client import AsyncRetryableHttpClient

RELAY_URL = "https://relay.test"
NOW_MS = 1_700_000_000_000


@pytest.fixture
def now_ms():
    return NOW_MS


@pytest.fixture
def relay_url():
    return RELAY_URL


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def http_client_factory():
    """Build AsyncRetryableHttpClient instances backed by a MockTransport handler."""

    def factory(handler, **kwargs) -> AsyncRetryableHttpClient:
        kwargs.setdefault("max_retries", 0)
        return AsyncRetryableHttpClient(transport=httpx.MockTransport(handler), **kwargs)

    return factory


@pytest.fixture
def sleeps():
    """Records backoff sleeps instead of waiting."""
    recorded = []

    async def fake_sleep(seconds):
        recorded.append(seconds)

    fake_sleep.calls = recorded
    return fake_sleep


@pytest.fixture
def token_manager_factory(store, sleeps, http_client_factory):
    def factory(handler, **kwargs) -> TokenLifecycleManager:
        kwargs.setdefault("clock", lambda: NOW_MS)
        kwargs.setdefault("sleep", sleeps)
        kwargs.setdefault("jitter", lambda: 0.0)
        return TokenLifecycleManager(store, http_client_factory(handler), RELAY_URL, **kwargs)

    return factory


@pytest.fixture
def id_token_factory():
    def factory(claims: dict) -> str:
        def segment(payload: dict) -> str:
            raw = json.dumps(payload).encode("utf-8")
            return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

        return f"{segment({'alg': 'none'})}.{segment(claims)}.signature"

    return factory
