"""
Tests for FastAPI endpoints.

API router tests using TestClient against a real AutomationService on a
temporary database. The lifespan is not entered; the hub_service fixture
installs the service singleton directly.
"""

import importlib
import json

import pytest
from fastapi.testclient import TestClient

from src.scheduler import EscalationStatus
from src.webhooks.sources import hmac_sha256_hex

WEBHOOK_SECRET = "api-secret"


@pytest.fixture
def client(hub_service):
    """TestClient on a freshly imported app with auth disabled."""
    import src.api.dependencies.auth as auth_module
    import src.api.main as main_module

    importlib.reload(auth_module)
    importlib.reload(main_module)
    return TestClient(main_module.app)


def _delivery(event="push", delivery_id="d-1", secret=WEBHOOK_SECRET, **fields):
    body = json.dumps({"type": event, "id": delivery_id, **fields}).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Signature": hmac_sha256_hex(secret, body),
        "X-Delivery-Id": delivery_id,
    }
    return body, headers


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_check(self, client):
        """Should return health status."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "version" in response.json()


class TestWebhookEndpoint:
    """Tests for POST /webhooks/{source_id}."""

    def test_processed_delivery(self, client, hub_service, hub_publisher):
        """Should run the bound workflow and answer 200."""
        hub_service.start()
        body, headers = _delivery()

        response = client.post("/webhooks/acme", content=body, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "processed"
        assert data["delivery_id"] == "acme:d-1"
        assert data["run_id"] is not None
        assert hub_publisher.emitted == ["acme:d-1"]

    def test_duplicate_delivery(self, client, hub_service, hub_publisher):
        """Should acknowledge a replay without a second run."""
        hub_service.start()
        body, headers = _delivery()
        client.post("/webhooks/acme", content=body, headers=headers)

        response = client.post("/webhooks/acme", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"
        assert hub_publisher.emitted == ["acme:d-1"]

    def test_bad_signature_is_rejected(self, client, hub_service, hub_publisher):
        """Should accept (202) but not process a forged delivery."""
        hub_service.start()
        body, headers = _delivery(secret="wrong")

        response = client.post("/webhooks/acme", content=body, headers=headers)

        assert response.status_code == 202
        assert response.json()["status"] == "rejected"
        assert hub_publisher.emitted == []

    def test_unmapped_event_is_ignored(self, client, hub_service):
        """Should accept events with no bound workflow."""
        hub_service.start()
        body, headers = _delivery(event="tag")

        response = client.post("/webhooks/acme", content=body, headers=headers)

        assert response.status_code == 202
        assert response.json()["status"] == "ignored"

    def test_unknown_source(self, client):
        """Should return 404 for an unregistered source."""
        response = client.post("/webhooks/nope", content=b"{}")

        assert response.status_code == 404
        assert response.json()["status"] == "unknown_source"

    def test_scheduler_stopped_asks_for_redelivery(self, client):
        """Should answer 503 while the scheduler is stopped."""
        body, headers = _delivery()

        response = client.post("/webhooks/acme", content=body, headers=headers)

        assert response.status_code == 503
        assert response.json()["status"] == "failed"


class TestRunsEndpoints:
    """Tests for /runs endpoints."""

    def test_list_runs_empty(self, client):
        response = client.get("/runs")

        assert response.status_code == 200
        assert response.json() == {"runs": [], "total": 0}

    def test_list_runs_after_trigger(self, client, hub_service):
        """Should list sealed runs newest first."""
        hub_service.start()
        first = hub_service.trigger("digest", wait=True)
        second = hub_service.trigger("digest", wait=True)

        response = client.get("/runs", params={"workflow_id": "digest"})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [run["run_id"] for run in data["runs"]] == [second.run_id, first.run_id]
        assert data["runs"][1]["items_processed"] == 2
        assert data["runs"][1]["outcome"] == "success"

    def test_list_runs_limit(self, client, hub_service):
        hub_service.start()
        hub_service.trigger("digest", wait=True)
        hub_service.trigger("digest", wait=True)

        response = client.get("/runs", params={"limit": 1})

        assert response.json()["total"] == 1

    def test_list_runs_invalid_limit(self, client):
        """Should validate the limit range."""
        response = client.get("/runs", params={"limit": 0})

        assert response.status_code == 422

    def test_list_runs_unknown_workflow(self, client):
        response = client.get("/runs", params={"workflow_id": "missing"})

        assert response.status_code == 404

    def test_get_run(self, client, hub_service):
        hub_service.start()
        run = hub_service.trigger("digest", wait=True)

        response = client.get(f"/runs/{run.run_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["run_id"] == run.run_id
        assert data["workflow_id"] == "digest"
        assert data["trigger"] == "manual"

    def test_get_run_not_found(self, client):
        """Should return 404 for non-existent run."""
        response = client.get("/runs/nonexistent")

        assert response.status_code == 404


class TestEscalationsEndpoint:
    """Tests for GET /escalations."""

    def test_list_and_filter(self, client, hub_service):
        hub_service.store.open_escalation("backup/nas", "task-1", "digest")
        hub_service.store.upsert_escalation("disk/full", "task-2", EscalationStatus.OPEN)
        hub_service.store.upsert_escalation("disk/full", None, EscalationStatus.RESOLVED)

        all_records = client.get("/escalations").json()
        open_records = client.get("/escalations", params={"status": "open"}).json()

        assert all_records["total"] == 2
        assert open_records["total"] == 1
        record = open_records["escalations"][0]
        assert record["escalation_key"] == "backup/nas"
        assert record["task_id"] == "task-1"
        assert record["status"] == "open"

    def test_filter_by_workflow(self, client, hub_service):
        hub_service.store.open_escalation("backup/nas", "task-1", "digest")
        hub_service.store.open_escalation("disk/full", "task-2", "other")

        response = client.get("/escalations", params={"workflow_id": "digest"})

        assert [r["escalation_key"] for r in response.json()["escalations"]] == ["backup/nas"]

    def test_invalid_status(self, client):
        response = client.get("/escalations", params={"status": "pending"})

        assert response.status_code == 422


class TestSchedulerEndpoints:
    """Tests for /scheduler/* endpoints."""

    def test_start_and_stop(self, client, hub_service):
        response = client.post("/scheduler/start")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert hub_service.is_running

        response = client.post("/scheduler/stop", json={"grace_period": 5})

        assert response.status_code == 200
        assert response.json()["abandoned_runs"] == 0
        assert not hub_service.is_running

    def test_start_is_idempotent(self, client, hub_service):
        hub_service.start()

        response = client.post("/scheduler/start")

        assert response.status_code == 200
        assert response.json()["message"] == "Scheduler is already running"

    def test_stop_when_stopped(self, client):
        response = client.post("/scheduler/stop")

        assert response.status_code == 200
        assert response.json()["message"] == "Scheduler is already stopped"

    def test_status(self, client, hub_service):
        hub_service.start()

        response = client.get("/scheduler/status")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "RUNNING"
        assert data["sources"] == ["acme"]
        assert [w["workflow_id"] for w in data["workflows"]] == ["acme-push", "digest"]

    def test_trigger_and_wait(self, client, hub_service, hub_publisher):
        hub_service.start()

        response = client.post("/scheduler/workflows/digest/trigger", json={"wait": True})

        assert response.status_code == 200
        data = response.json()
        assert data["accepted"] is True
        assert data["outcome"] == "success"
        assert hub_service.get_run(data["run_id"]).items_processed == 2
        assert hub_publisher.emitted == ["post-1", "post-2"]

    def test_trigger_unknown_workflow(self, client, hub_service):
        hub_service.start()

        response = client.post("/scheduler/workflows/missing/trigger")

        assert response.status_code == 404

    def test_trigger_when_stopped(self, client):
        response = client.post("/scheduler/workflows/digest/trigger")

        assert response.status_code == 409

    def test_trigger_webhook_workflow(self, client, hub_service):
        hub_service.start()

        response = client.post("/scheduler/workflows/acme-push/trigger")

        assert response.status_code == 409
