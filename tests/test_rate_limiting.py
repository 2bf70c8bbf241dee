"""
Tests for rate limiting of the administrative session endpoint.

The limit is read from settings on every request, so tests lower it instead of
sending dozens of requests.
"""

import pytest

from sqlite_sessions.core.config import settings
from sqlite_sessions.core.limiter import create_limiter, get_limiter_storage


@pytest.fixture
def low_admin_limit(monkeypatch):
    monkeypatch.setattr(settings, "admin_rate_limit", "3/minute")


class TestAdminRateLimit:
    """Exceeding the administrative limit returns HTTP 429."""

    def test_admin_endpoint_returns_429_after_limit(self, client, admin_headers, low_admin_limit):
        status_codes = [
            client.delete(f"/api/sessions/missing-{i}", headers=admin_headers).status_code
            for i in range(5)
        ]

        assert status_codes[:3] == [404, 404, 404]
        assert status_codes[3:] == [429, 429]

    def test_rejected_tokens_do_not_consume_limit(self, client, admin_headers, low_admin_limit):
        for _ in range(5):
            response = client.delete("/api/sessions/missing", headers={"X-Admin-Token": "wrong"})
            assert response.status_code == 401

        response = client.delete("/api/sessions/missing", headers=admin_headers)
        assert response.status_code == 404

    def test_session_endpoints_are_not_limited(self, client, low_admin_limit):
        for _ in range(10):
            assert client.get("/api/session").status_code == 200


class TestLimiterStorage:
    def test_no_redis_url_uses_memory(self):
        assert get_limiter_storage(None) is None

    def test_malformed_redis_url_falls_back_to_memory(self):
        assert get_limiter_storage("http://localhost:6379") is None

    def test_redis_url_is_used(self):
        assert get_limiter_storage("redis://localhost:6379/0") == "redis://localhost:6379/0"

    def test_create_in_memory_limiter(self):
        assert create_limiter(None).enabled
