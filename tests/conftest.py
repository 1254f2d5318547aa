"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Test environment setup
"""

import os
import sys
from pathlib import Path

import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config and builds the key pool at import time.
os.environ.setdefault("AUTH_TOKEN", "key1,key2,key3")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/cody_proxy_test.log")
os.environ.setdefault("LOG_COLOR", "false")
os.environ.setdefault("REMOTE_MODELS", "false")

from config import AppConfig  # noqa: E402


class FakeClock:
    """Manually advanced clock for cooldown tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_config():
    """Create test configuration."""
    return AppConfig(
        auth_tokens=("key1", "key2", "key3"),
        proxy_api_key="",
        sourcegraph_base_url="https://sourcegraph.test/.api/",
        gateway_base_url="https://gateway.test/",
        client_version="1.84.0",
        user_agent="test-agent",
        allow_system_message=False,
        debug=True,
        remote_models=False,
        refresh_models_s=1800,
        connect_timeout_s=5.0,
        https_proxy="",
        http_proxy="",
        port=9090,
        log_level="DEBUG",
        log_path="/tmp/cody_proxy_test.log",
    )


@pytest.fixture(autouse=True)
def reset_key_pool():
    """Give every test a fresh shared key pool (the service module keeps one per process)."""
    import cody_proxy_service
    from key_pool import RateLimitLedger

    pool = cody_proxy_service.key_pool
    pool._ledger = RateLimitLedger()
    pool._cursor = 0
    yield
    pool._ledger = RateLimitLedger()
    pool._cursor = 0
