"""
E2E test fixtures for immustreams.

These tests require a running immudb server (REST gateway on
IMMUSTREAMS_STORE_ADDRESS, default 127.0.0.1:3323).
"""

import os
import socket
import time
import uuid

import pytest

from sdk.immustreams.config import Settings

# Skip E2E tests if not in E2E mode
E2E_ENABLED = os.environ.get("IMMUSTREAMS_E2E_TESTS", "0") == "1"

pytestmark = pytest.mark.skipif(
    not E2E_ENABLED,
    reason="E2E tests disabled. Set IMMUSTREAMS_E2E_TESTS=1 to enable.",
)


def wait_for_service(host: str, port: int, timeout: int = 60) -> bool:
    """Wait for a service to become available."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except OSError:
            time.sleep(1)
    return False


@pytest.fixture(scope="session")
def immudb_settings() -> Settings:
    """Settings for the live server, after it accepts connections."""
    settings = Settings(retry_delay_ms=200)
    host, _, port = settings.store_address.rpartition(":")
    assert wait_for_service(host or settings.store_address, int(port or 3323)), "immudb not ready"
    return settings


@pytest.fixture
def unique_seeds() -> tuple:
    """Author and subscriber seeds giving a fresh channel per test."""
    suffix = uuid.uuid4().hex[:8]
    return f"e2e author {suffix}", f"e2e subscriber {suffix}"
