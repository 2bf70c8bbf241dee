"""
Global test configuration and fixtures for the session store

This module provides shared fixtures for the test suite: stores opened on
temporary SQLite files, a controllable clock, cookie helpers for inspecting
responses, and a FastAPI test client backed by its own store.
"""

import threading
import time
from datetime import datetime, timedelta
from http.cookies import SimpleCookie
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from starlette.responses import Response

from sqlite_sessions.core.config import Settings, StoreOptions
from sqlite_sessions.core.limiter import limiter
from sqlite_sessions.core.utils.session_store import SessionStore
from sqlite_sessions.db.models import SessionRecord
from sqlite_sessions.main import create_app

TEST_SECRET_KEY = "test-secret-key-for-testing-only-0123456789"
# Lowest accepted work factor, keeps key derivation quick in tests
TEST_KDF_ITERATIONS = 100_000
TEST_ADMIN_TOKEN = "test-admin-token-for-testing-only"


# ============================================================================
# Clock
# ============================================================================

class FakeClock:
    """Naive UTC clock that only moves when told to"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, 12, 0, 0)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
def make_options(tmp_path):
    """Factory for store options on a per-test database file"""

    def _make(**overrides) -> StoreOptions:
        values = {
            "storage_location": str(tmp_path / "sessions.sqlite"),
            "secret_key": TEST_SECRET_KEY,
            "kdf_iterations": TEST_KDF_ITERATIONS,
            # Tests sweep explicitly unless they start the reclaimer themselves
            "cleanup_interval": timedelta(hours=1),
        }
        values.update(overrides)
        return StoreOptions(**values)

    return _make


@pytest.fixture
def store_options(make_options):
    return make_options()


@pytest.fixture
def store(store_options, clock):
    """Open store driven by the fake clock, without a background reclaimer"""
    session_store = SessionStore.open(store_options, clock=clock, start_reclaimer=False)
    yield session_store
    session_store.close()


@pytest.fixture
def row_count():
    """Count the rows currently in a store's sessions table"""

    def _count(session_store: SessionStore) -> int:
        with session_store.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(SessionRecord)).scalar_one()

    return _count


# ============================================================================
# Cookie Helpers
# ============================================================================

@pytest.fixture
def set_cookie_header():
    """Raw Set-Cookie header for the named cookie, or None"""

    def _header(response: Response, name: str = "session-id") -> Optional[str]:
        for header in response.headers.getlist("set-cookie"):
            if header.startswith(f"{name}="):
                return header
        return None

    return _header


@pytest.fixture
def cookie_value(set_cookie_header):
    """Value of the named cookie as set on a response, or None"""

    def _value(response: Response, name: str = "session-id") -> Optional[str]:
        header = set_cookie_header(response, name)
        if header is None:
            return None
        cookie = SimpleCookie()
        cookie.load(header)
        return cookie[name].value

    return _value


# ============================================================================
# Timing
# ============================================================================

@pytest.fixture
def wait_for():
    """Poll a condition until it holds or the timeout expires"""

    def _wait(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.05) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if condition():
                return True
            time.sleep(interval)
        return condition()

    return _wait


# ============================================================================
# Application Fixtures
# ============================================================================

@pytest.fixture
def app_settings(tmp_path):
    return Settings(
        storage_location=str(tmp_path / "api_sessions.sqlite"),
        secret_key=TEST_SECRET_KEY,
        kdf_iterations=TEST_KDF_ITERATIONS,
        admin_token=TEST_ADMIN_TOKEN,
        json_logging=False,
    )


@pytest.fixture
def app(app_settings):
    return create_app(app_settings=app_settings)


@pytest.fixture
def client(app):
    """Test client; entering it runs the lifespan that opens and closes the store"""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": TEST_ADMIN_TOKEN}


@pytest.fixture(autouse=True)
def reset_limiter():
    """Clear rate limit counters so tests do not affect each other"""
    limiter.reset()
    yield
    limiter.reset()


# ============================================================================
# Test Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "unit: fast tests of a single component")
    config.addinivalue_line("markers", "integration: tests that exercise the HTTP application")
    config.addinivalue_line("markers", "security: tests of cookie and payload integrity")
    config.addinivalue_line("markers", "critical: mark test as critical path functionality")
    config.addinivalue_line("markers", "slow: tests that wait on the real reclaimer thread")


def pytest_collection_modifyitems(config, items):
    """Add markers based on file location"""
    for item in items:
        path = str(item.path)
        if "/unit/" in path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in path:
            item.add_marker(pytest.mark.integration)
        elif "/security/" in path:
            item.add_marker(pytest.mark.security)
