"""
Integration tests for the session API endpoints

Each test runs against an application with its own store on a temporary
SQLite file; the test client keeps the session cookie between requests.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from sqlite_sessions.core.config import Settings
from sqlite_sessions.main import create_app
from sqlite_sessions.manager import SessionsManager

pytestmark = pytest.mark.integration


def _session_id(client):
    return client.cookies["session-id"].rpartition(":")[0]


class TestSessionEndpoints:
    def test_read_without_cookie(self, client):
        response = client.get("/api/session")

        assert response.status_code == 200
        data = response.json()
        assert data["is_new"] is True
        assert data["values"] == {}
        assert "set-cookie" not in response.headers

    def test_update_sets_cookie_and_persists(self, client):
        response = client.put("/api/session", json={"values": {"user": "alice", "theme": "dark"}})

        assert response.status_code == 200
        assert response.json()["is_new"] is False
        assert "session-id" in client.cookies

        data = client.get("/api/session").json()
        assert data["is_new"] is False
        assert data["values"] == {"user": "alice", "theme": "dark"}
        assert data["expires_at"] is not None

    def test_update_merges_and_removes(self, client):
        client.put("/api/session", json={"values": {"user": "alice", "theme": "dark"}})
        client.put("/api/session", json={"values": {"lang": "en"}, "remove": ["theme"]})

        data = client.get("/api/session").json()
        assert data["values"] == {"user": "alice", "lang": "en"}

    def test_update_keeps_session_id(self, client):
        client.put("/api/session", json={"values": {"n": 1}})
        first_id = _session_id(client)

        client.put("/api/session", json={"values": {"n": 2}})

        assert _session_id(client) == first_id

    def test_empty_update_on_new_session_sets_no_cookie(self, client):
        response = client.put("/api/session", json={})

        assert response.status_code == 200
        assert response.json()["is_new"] is True
        assert "set-cookie" not in response.headers

    def test_zero_max_age_ends_session(self, client):
        client.put("/api/session", json={"values": {"user": "alice"}})

        response = client.put("/api/session", json={"max_age": 0})

        assert response.status_code == 200
        assert response.json() == {"is_new": True, "values": {}, "expires_at": None}
        assert client.get("/api/session").json()["is_new"] is True

    def test_end_session(self, client):
        client.put("/api/session", json={"values": {"user": "alice"}})
        cookie = client.cookies["session-id"]

        response = client.delete("/api/session")

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert "session-id" not in client.cookies

        # Replaying the old cookie does not bring the session back
        client.cookies.set("session-id", cookie)
        assert client.get("/api/session").json()["is_new"] is True

    def test_end_session_without_cookie(self, client):
        response = client.delete("/api/session")

        assert response.status_code == 200
        assert response.json() == {"success": True}

    def test_forged_cookie_gives_new_session(self, client):
        client.cookies.set("session-id", "forged-session-id:" + "a" * 64)

        data = client.get("/api/session").json()

        assert data["is_new"] is True

    def test_invalid_body_rejected(self, client):
        response = client.put("/api/session", json={"values": ["not", "a", "mapping"]})
        assert response.status_code == 422


class TestAdminEndpoints:
    def test_delete_by_id(self, client, admin_headers):
        client.put("/api/session", json={"values": {"user": "alice"}})
        session_id = _session_id(client)

        response = client.delete(f"/api/sessions/{session_id}", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert client.get("/api/session").json()["is_new"] is True

    def test_delete_unknown_id(self, client, admin_headers):
        response = client.delete("/api/sessions/no-such-session", headers=admin_headers)

        assert response.status_code == 404
        assert response.json() == {"detail": "Session not found"}

    def test_admin_routes_absent_without_token(self, tmp_path):
        app_settings = Settings(
            storage_location=str(tmp_path / "no_admin.sqlite"),
            secret_key="test-secret-key-for-testing-only-0123456789",
            kdf_iterations=100_000,
            admin_token=None,
        )
        with TestClient(create_app(app_settings=app_settings)) as client:
            response = client.delete(
                "/api/sessions/anything",
                headers={"X-Admin-Token": "anything"},
            )

        assert response.status_code == 404
        assert response.json() == {"detail": "Not Found"}


class TestApplicationLifecycle:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"]["status"] == "healthy"
        assert data["reclaimer"]["state"] == "idle"
        assert data["reclaimer"]["sweeps_failed"] == 0

    def test_correlation_id_echoed(self, client):
        response = client.get("/api/session", headers={"X-Correlation-ID": "req-123"})
        assert response.headers["X-Correlation-ID"] == "req-123"

    def test_correlation_id_generated(self, client):
        response = client.get("/api/session")
        assert response.headers["X-Correlation-ID"]

    def test_store_closed_on_shutdown(self, app):
        manager = app.state.sessions_manager
        with TestClient(app):
            assert manager.initialized
            store = manager.store

        assert not manager.initialized
        assert store.closed

    def test_preinitialized_manager_is_used(self, app_settings):
        manager = SessionsManager()
        store = manager.initialize_with_options(app_settings.to_store_options())

        with TestClient(create_app(manager=manager, app_settings=app_settings)) as client:
            client.put("/api/session", json={"values": {"user": "alice"}})
            assert manager.store is store

        assert store.closed

    def test_storage_failure_returns_503(self, client, app):
        client.put("/api/session", json={"values": {"user": "alice"}})
        store = app.state.sessions_manager.store

        def broken_factory():
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        store._session_factory = broken_factory

        response = client.get("/api/session")

        assert response.status_code == 503
        assert response.json() == {"detail": "Session storage unavailable"}
