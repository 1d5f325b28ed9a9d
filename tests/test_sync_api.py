"""Tests for the sync administration endpoints."""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.api import sync as sync_api
from app.api.sync import get_sync_service, get_token_provider
from app.database.cache import get_cache
from app.database.database import get_db
from app.main import app
from app.models.sync_record import SyncRecord
from app.services.attendance_sync import AttendanceSyncEngine, AttendanceSyncResult
from app.services.employee_sync import EmployeeSyncEngine
from app.services.exceptions import AuthError
from app.services.rate_limiter import RateLimiter
from app.services.sync_service import SyncService
from app.services.token_provider import Credential, TokenProvider


@pytest.fixture
def provider():
    provider = MagicMock(spec=TokenProvider)
    provider.peek_credential.return_value = None
    provider.refresh_token = AsyncMock(
        return_value=Credential("abcdefgh-token", 1_700_000_000, 86400, Credential.REMOTE)
    )
    return provider


@pytest.fixture
def sync_service(memory_cache, provider, fake_clock):
    """Real sync service around mock engines."""
    engines = {}
    for name, engine_class in (("attendance", AttendanceSyncEngine), ("employee", EmployeeSyncEngine)):
        engine = MagicMock(spec=engine_class)
        engine.rate_limiter = RateLimiter(memory_cache, f"{name}_rate_limit_state", clock=fake_clock)
        engine.run = AsyncMock(return_value=AttendanceSyncResult())
        engine.get_employees_data = AsyncMock(return_value={
            "data": [{"id": "e-1"}],
            "total_records": 1,
            "source": "cache",
            "succeeded": True,
            "message": "Data from cache",
            "errors": None
        })
        engines[name] = engine
    return SyncService(
        memory_cache,
        provider,
        attendance_engine=engines["attendance"],
        employee_engine=engines["employee"]
    )


@pytest.fixture
def client(db_session, memory_cache, provider, sync_service):
    """Create test client with overridden dependencies.

    Not used as a context manager, so startup (scheduler, encryption check)
    does not run.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache] = lambda: memory_cache
    app.dependency_overrides[get_token_provider] = lambda: provider
    app.dependency_overrides[get_sync_service] = lambda: sync_service
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestTriggerSync:
    """Tests for POST /api/sync/attendance and /employees."""

    def test_trigger_attendance(self, client):
        response = client.post("/api/sync/attendance")

        assert response.status_code == 200
        body = response.json()
        assert body["sync_type"] == "attendance"
        assert body["status"] == "success"
        assert body["completed_at"] is not None

    def test_trigger_employees_failure_recorded(self, client, sync_service):
        sync_service.employee_engine.run.side_effect = Exception("HTTP 500 for /hris/employees")

        response = client.post("/api/sync/employees")

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        assert "HTTP 500" in response.json()["error_message"]

    def test_concurrent_run_conflict(self, client):
        busy = MagicMock(spec=SyncService)
        busy.run_attendance_sync = AsyncMock(side_effect=RuntimeError("A attendance sync is already in progress"))
        app.dependency_overrides[get_sync_service] = lambda: busy

        response = client.post("/api/sync/attendance")

        assert response.status_code == 409
        assert "already in progress" in response.json()["detail"]


class TestStatusAndHistory:
    """Tests for status and history endpoints."""

    def test_status(self, client, db_session):
        db_session.add(SyncRecord(sync_type="employee", status="success", started_at=datetime.utcnow()))
        db_session.commit()

        response = client.get("/api/sync/status")

        assert response.status_code == 200
        body = response.json()
        assert body["attendance"]["in_progress"] is False
        assert body["attendance"]["rate_limit"]["max_limit"] == 40
        assert body["attendance"]["last_sync"] is None
        assert body["employee"]["last_sync"]["status"] == "success"

    def test_history(self, client, db_session):
        db_session.add_all([
            SyncRecord(sync_type="attendance", status="success", started_at=datetime(2024, 5, 10, 7, 0)),
            SyncRecord(sync_type="employee", status="failed", started_at=datetime(2024, 5, 10, 7, 5)),
        ])
        db_session.commit()

        response = client.get("/api/sync/history", params={"sync_type": "attendance"})

        assert response.status_code == 200
        assert [item["sync_type"] for item in response.json()] == ["attendance"]

    def test_history_invalid_type(self, client):
        response = client.get("/api/sync/history", params={"sync_type": "payroll"})
        assert response.status_code == 400

    def test_history_record_not_found(self, client):
        response = client.get("/api/sync/history/42")
        assert response.status_code == 404


class TestMaintenanceEndpoints:
    """Tests for reset, cache and roster endpoints."""

    def test_reset_checkpoint(self, client, memory_cache):
        memory_cache.store["attendance_rate_limit_state"] = "{}"

        response = client.post("/api/sync/reset/attendance")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert "attendance_rate_limit_state" not in memory_cache.store

    def test_reset_invalid_type(self, client):
        assert client.post("/api/sync/reset/payroll").status_code == 400

    def test_clear_employee_ids_cache(self, client, memory_cache):
        memory_cache.store["attendance_employee_ids_cache"] = '["e-1"]'

        response = client.delete("/api/sync/cache/employee-ids")

        assert response.status_code == 200
        assert "attendance_employee_ids_cache" not in memory_cache.store

    def test_employees_data(self, client):
        response = client.get("/api/sync/employees")

        assert response.status_code == 200
        assert response.json()["total_records"] == 1


class TestTokenEndpoints:
    """Tests for the token diagnostics."""

    def test_no_token(self, client):
        response = client.get("/api/sync/token")
        assert response.json() == {
            "has_token": False,
            "token_prefix": None,
            "acquired_at": None,
            "source": None
        }

    def test_token_prefix_only(self, client, provider):
        provider.peek_credential.return_value = Credential(
            "abcdefgh-secret-part", 1_700_000_000, 86400, Credential.CACHE
        )

        body = client.get("/api/sync/token").json()

        assert body["has_token"] is True
        assert body["token_prefix"] == "abcdefgh..."
        assert "secret" not in body["token_prefix"]
        assert body["source"] == "cache"

    def test_refresh_auth_error_is_bad_gateway(self, client, provider):
        provider.refresh_token.side_effect = AuthError("Token exchange failed with HTTP 400")

        response = client.post("/api/sync/token/refresh")

        assert response.status_code == 502


class TestHealth:
    """Tests for /api/health."""

    def test_healthy(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_cache_down(self, client, memory_cache):
        memory_cache.healthy = False

        body = client.get("/api/health").json()

        assert body["status"] == "unhealthy"
        assert body["cache"] == "disconnected"
        assert body["database"] == "connected"


class TestDependencies:
    """Tests for the shared dependency instances."""

    def test_sync_service_built_once(self, memory_cache, provider, monkeypatch):
        """The name-variant table is loaded once, not per request."""
        monkeypatch.setattr(sync_api, "_sync_service", None)

        with patch("app.services.employee_sync.NameMatcher.from_yaml") as from_yaml:
            first = get_sync_service(memory_cache, provider)
            second = get_sync_service(memory_cache, provider)

        assert first is second
        from_yaml.assert_called_once()
