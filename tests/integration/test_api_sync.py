"""Integration tests for /sync routes."""
from datetime import date, datetime
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from dashboard.api.main import create_app
from dashboard.config import Settings
from dashboard.gripp.sync_service import SyncService
from dashboard.models.sync import SyncStatus

EMPLOYEES = [{"id": 1, "firstname": "Jane", "lastname": "Doe"}]


@pytest.fixture(name="gripp")
def gripp_fixture(mock_client_factory):
    return mock_client_factory({"employee.get": EMPLOYEES, "project.get": [{"id": 5, "name": "Website"}]})


@pytest.fixture(name="client")
def client_fixture(engine, gripp):
    app = create_app(engine=engine, client=gripp)
    app.state.sync_service = SyncService(
        gripp,
        engine,
        cache=app.state.cache,
        settings=Settings(
            _env_file=None,
            sync_page_delay_seconds=0,
            sync_window_delay_seconds=0,
            sync_group_delay_seconds=0,
        ),
    )
    with TestClient(app) as c:
        yield c


class TestSyncAllRoute:
    def test_background_returns_immediately(self, client):
        # Patch _do_sync_all so the background task doesn't run a real sync
        with patch("dashboard.api.routes.sync._do_sync_all", new=AsyncMock()) as task:
            resp = client.post(
                "/sync/all",
                json={"start_date": "2025-01-01", "end_date": "2025-01-31", "background": True},
            )
        assert resp.status_code == 200
        assert "started" in resp.json()["message"].lower()
        task.assert_awaited_once()
        assert task.await_args.args[1:] == (date(2025, 1, 1), date(2025, 1, 31))

    def test_foreground_returns_per_entity_results(self, client):
        resp = client.post("/sync/all", json={"start_date": "2025-01-01", "end_date": "2025-01-07"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["results"]["employees"] is True
        assert body["results"]["projects"] is True
        # No contracts upstream: a foundational type failed.
        assert body["results"]["contracts"] is False
        assert body["success"] is False

    def test_inverted_range_is_422(self, client):
        resp = client.post("/sync/all", json={"start_date": "2025-02-01", "end_date": "2025-01-01"})
        assert resp.status_code == 422


class TestSyncEntityRoute:
    def test_sync_one_type(self, client, engine):
        resp = client.post("/sync/employees", json={})
        assert resp.status_code == 200
        body = resp.json()
        assert body["entity_type"] == "employees"
        assert body["outcome"] == "success"
        assert body["records_persisted"] == 1

    def test_without_body(self, client):
        resp = client.post("/sync/projects")
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "success"

    def test_unknown_type_is_404(self, client):
        resp = client.post("/sync/timesheets", json={})
        assert resp.status_code == 404

    def test_single_date_is_422(self, client):
        resp = client.post("/sync/hours", json={"start_date": "2025-01-01"})
        assert resp.status_code == 422

    def test_inverted_dates_are_422(self, client):
        resp = client.post("/sync/hours", json={"start_date": "2025-01-31", "end_date": "2025-01-01"})
        assert resp.status_code == 422


class TestSyncStatusRoute:
    def test_status_empty(self, client):
        resp = client.get("/sync/status")
        assert resp.status_code == 200
        assert resp.json() == []

    def test_status_after_run(self, client, engine):
        with Session(engine) as s:
            s.add(SyncStatus(
                entity_type="hours",
                last_run_at=datetime(2025, 1, 15, 3, 0),
                outcome="error",
                message="No records persisted",
                duration_ms=1200,
            ))
            s.commit()
        resp = client.get("/sync/status")
        assert resp.status_code == 200
        body = resp.json()
        assert len(body) == 1
        assert body[0]["entity_type"] == "hours"
        assert body[0]["outcome"] == "error"
        assert body[0]["duration_ms"] == 1200
