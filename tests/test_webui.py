"""Tests for the HTTP status API (webui.py).

Covers: status endpoints, task control, CSRF protection and authentication.
"""

import base64
import json
import threading
from unittest.mock import MagicMock

import pytest

from scheduler import Scheduler
from webui import create_app
from tests.conftest import wait_until

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

XHR_HEADER = {"X-Requested-With": "XMLHttpRequest"}


def _auth_header(user="admin", password="secret"):
    """Return a Basic auth header dict."""
    cred = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {cred}"}


def _service(username=None, password=None):
    service = MagicMock()
    service.config = {"web": {"username": username, "password": password}}
    service.status.return_value = {"version": "1.0.0", "last_check": None, "channels": ["ntfy"]}
    service.health.return_value = (True, {"scheduler": "healthy", "docker": "healthy"})
    service.updates.return_value = {
        "last_check": "2024-05-01T08:30:00+00:00",
        "updates": [{"repository": "library/nginx", "latest_tag": "1.26.0"}],
        "history": [{"repository": f"org/app{i}"} for i in range(5)],
    }
    service.scheduler = Scheduler(run_timeout=5)
    return service


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def service():
    return _service()


@pytest.fixture()
def client(service):
    app = create_app(service)
    app.config["TESTING"] = True
    return app.test_client()


# ---------------------------------------------------------------------------
# Status endpoints
# ---------------------------------------------------------------------------

class TestStatusEndpoints:
    """Read-only endpoints."""

    def test_version(self, client):
        resp = client.get("/api/version")
        assert resp.status_code == 200
        assert resp.get_json() == {"version": "1.0.0"}

    def test_status(self, client):
        data = client.get("/api/status").get_json()
        assert data["channels"] == ["ntfy"]

    def test_health_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "healthy"

    def test_health_unhealthy(self, client, service):
        service.health.return_value = (False, {"scheduler": "unhealthy: no tasks scheduled"})
        resp = client.get("/api/health")
        assert resp.status_code == 503
        assert resp.get_json()["components"]["scheduler"].startswith("unhealthy")

    def test_updates_limit(self, client):
        data = client.get("/api/updates?limit=2").get_json()
        assert data["updates"][0]["latest_tag"] == "1.26.0"
        assert data["history"] == [{"repository": "org/app3"}, {"repository": "org/app4"}]

    def test_updates_zero_limit(self, client):
        assert client.get("/api/updates?limit=0").get_json()["history"] == []


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class TestTaskEndpoints:
    """Listing, triggering and rescheduling tasks."""

    def test_list(self, client, service):
        service.scheduler.add_task("image-check", "Image check", "@every 30m", lambda ctx: None)
        data = client.get("/api/tasks").get_json()
        assert [t["id"] for t in data] == ["image-check"]
        assert data[0]["schedule"] == "@every 30m"

    def test_get_unknown(self, client):
        assert client.get("/api/tasks/missing").status_code == 404

    def test_run(self, client, service):
        done = threading.Event()
        service.scheduler.add_task("t", "T", "@every 1h", lambda ctx: done.set())
        resp = client.post("/api/tasks/t/run", headers=XHR_HEADER)
        assert resp.status_code == 202
        assert done.wait(5)
        assert wait_until(lambda: service.scheduler.get_task("t").run_count == 1)

    def test_run_unknown(self, client):
        assert client.post("/api/tasks/missing/run", headers=XHR_HEADER).status_code == 404

    def test_run_conflict(self, client, service):
        release = threading.Event()
        service.scheduler.add_task("t", "T", "@every 1h", lambda ctx: release.wait(5))
        assert client.post("/api/tasks/t/run", headers=XHR_HEADER).status_code == 202
        assert wait_until(lambda: service.scheduler.get_task("t").is_running)
        resp = client.post("/api/tasks/t/run", headers=XHR_HEADER)
        assert resp.status_code == 409
        release.set()

    def test_update_schedule(self, client, service):
        service.scheduler.add_task("t", "T", "@every 1h", lambda ctx: None)
        resp = client.put("/api/tasks/t/schedule", data=json.dumps({"schedule": "*/5 * * * *"}),
                          headers={"Content-Type": "application/json", **XHR_HEADER})
        assert resp.status_code == 200
        assert resp.get_json()["schedule"] == "*/5 * * * *"

    @pytest.mark.parametrize("body", [{}, {"schedule": ""}, {"schedule": "whenever"}])
    def test_update_schedule_invalid(self, client, service, body):
        service.scheduler.add_task("t", "T", "@every 1h", lambda ctx: None)
        resp = client.put("/api/tasks/t/schedule", data=json.dumps(body),
                          headers={"Content-Type": "application/json", **XHR_HEADER})
        assert resp.status_code == 400

    def test_update_schedule_unknown(self, client):
        resp = client.put("/api/tasks/missing/schedule", data=json.dumps({"schedule": "@hourly"}),
                          headers={"Content-Type": "application/json", **XHR_HEADER})
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# CSRF
# ---------------------------------------------------------------------------

class TestCSRF:
    """State-changing requests need the X-Requested-With header."""

    def test_post_without_header(self, client, service):
        service.scheduler.add_task("t", "T", "@every 1h", lambda ctx: None)
        resp = client.post("/api/tasks/t/run")
        assert resp.status_code == 403
        assert service.scheduler.get_task("t").run_count == 0

    def test_put_without_header(self, client):
        resp = client.put("/api/tasks/t/schedule", json={"schedule": "@hourly"})
        assert resp.status_code == 403

    def test_get_without_header(self, client):
        assert client.get("/api/status").status_code == 200


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class TestAuth:
    """Basic auth when both credentials are configured."""

    @pytest.fixture()
    def auth_client(self):
        app = create_app(_service("admin", "secret"))
        app.config["TESTING"] = True
        return app.test_client()

    def test_missing_credentials(self, auth_client):
        resp = auth_client.get("/api/status")
        assert resp.status_code == 401
        assert "Basic" in resp.headers["WWW-Authenticate"]

    def test_wrong_password(self, auth_client):
        assert auth_client.get("/api/status", headers=_auth_header(password="nope")).status_code == 401

    def test_valid_credentials(self, auth_client):
        assert auth_client.get("/api/status", headers=_auth_header()).status_code == 200

    def test_auth_checked_before_csrf(self, auth_client):
        assert auth_client.post("/api/tasks/t/run").status_code == 401

    def test_username_only_disables_auth(self):
        app = create_app(_service("admin", None))
        assert app.test_client().get("/api/status").status_code == 200
