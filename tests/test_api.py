"""Tests for the HTTP API.

The full application runs under ``TestClient`` with its lifespan, the
in-memory store, no Gemini key and the background scheduler disabled.
Analysis still runs as a background task, so tests poll for it.
"""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from config.settings import settings
from conftest import STREETLIGHT_DESCRIPTION, STREETLIGHT_HEADING

CITIZEN = {"X-Actor-Id": "citizen-7781", "X-Actor-Role": "citizen"}
OTHER_CITIZEN = {"X-Actor-Id": "citizen-0042", "X-Actor-Role": "citizen"}
ADMIN = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin", "X-Actor-Name": "Asha Verma"}
AUTHORITY = {"X-Actor-Id": "auth-9", "X-Actor-Role": "authority", "X-Actor-Name": "Ward Engineer"}

SUBMISSION = {
    "department": "Municipal Corporation",
    "heading": STREETLIGHT_HEADING,
    "description": STREETLIGHT_DESCRIPTION,
    "latitude": 28.61,
    "longitude": 77.21,
    "address": "Main Road, Ward 12",
    "agreed_to_terms": True,
    "identity_document": "ABC1234xyz9",
}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "env", "development")
    monkeypatch.setattr(settings, "gemini_api_key", "")
    monkeypatch.setattr(settings, "storage_backend", "memory")
    monkeypatch.setattr(settings, "enable_escalation_scheduler", False)
    monkeypatch.setattr(settings, "backfill_on_startup", False)
    monkeypatch.setattr(settings, "admin_api_key", "")

    from src.main import app

    # Fresh middleware instances so rate-limit windows do not leak between tests.
    app.middleware_stack = None
    with TestClient(app) as test_client:
        yield test_client


def _submit(client: TestClient, **overrides) -> dict:
    response = client.post("/api/v1/complaints", json={**SUBMISSION, **overrides}, headers=CITIZEN)
    assert response.status_code == 201, response.text
    return response.json()


def _wait_for(client: TestClient, complaint_id: str, status: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/v1/complaints/{complaint_id}", headers=CITIZEN).json()
        if body["status"] == status or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


# ---------------------------------------------------------------------------
# Service endpoints
# ---------------------------------------------------------------------------


class TestStartup:
    @pytest.mark.parametrize("level", ["debug", "WARNING", "not-a-level"])
    def test_lifespan_with_log_level(self, monkeypatch, level) -> None:
        monkeypatch.setattr(settings, "log_level", level)
        monkeypatch.setattr(settings, "log_format", "console")
        monkeypatch.setattr(settings, "gemini_api_key", "")
        monkeypatch.setattr(settings, "storage_backend", "memory")
        monkeypatch.setattr(settings, "enable_escalation_scheduler", False)
        monkeypatch.setattr(settings, "backfill_on_startup", False)

        from src.main import app

        app.middleware_stack = None
        with TestClient(app) as test_client:
            assert test_client.app.state.engine is not None
            assert test_client.get("/api/v1/health").json()["status"] == "healthy"

    def test_configure_logging_filters_below_level(self, monkeypatch) -> None:
        import structlog
        from structlog.testing import capture_logs

        from src.main import _configure_logging

        monkeypatch.setattr(settings, "log_level", "error")
        monkeypatch.setattr(settings, "log_format", "json")
        try:
            _configure_logging()
            with capture_logs() as logs:
                log = structlog.get_logger("tests.level_filter")
                log.info("dropped")
                log.error("kept")
            assert [entry["event"] for entry in logs] == ["kept"]
        finally:
            structlog.reset_defaults()


class TestServiceEndpoints:
    def test_api_info(self, client) -> None:
        data = client.get("/api").json()
        assert data["name"] == "Civic Shield API"
        assert data["endpoints"]["complaints"] == "/api/v1/complaints"

    def test_health(self, client) -> None:
        data = client.get("/api/v1/health").json()
        assert data["status"] == "healthy"
        assert data["uptime_seconds"] >= 0

    def test_readiness(self, client) -> None:
        data = client.get("/api/v1/health/ready").json()
        assert data["status"] == "ready"
        assert data["checks"]["repository"] == "ok"
        assert data["checks"]["verdict_client"] == "fallback_only"
        assert data["checks"]["escalation_scheduler"] == "stopped"

    def test_departments(self, client) -> None:
        data = client.get("/api/v1/departments").json()
        assert len(data) == 10
        assert {"key", "name", "description"} <= set(data[0])

    def test_lawsuit_info(self, client) -> None:
        data = client.get("/api/v1/complaints/lawsuit-info").json()
        assert len(data["steps"]) == 7
        assert len(data["platforms"]) == 6


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class TestIdentity:
    def test_missing_headers(self, client) -> None:
        assert client.get("/api/v1/complaints/my").status_code == 401

    @pytest.mark.parametrize("role", ["system", "superuser"])
    def test_rejected_roles(self, client, role) -> None:
        response = client.get("/api/v1/complaints/my", headers={"X-Actor-Id": "x", "X-Actor-Role": role})
        assert response.status_code == 403

    def test_wrong_role_for_route(self, client) -> None:
        response = client.get("/api/v1/complaints/admin", headers=CITIZEN)
        assert response.status_code == 403
        assert "may not perform" in response.json()["detail"]


# ---------------------------------------------------------------------------
# Complaints
# ---------------------------------------------------------------------------


class TestSubmission:
    def test_submit(self, client) -> None:
        data = _submit(client)
        assert data["complaint_id"] == "CS-000001"
        assert data["anonymous_id"] == "Unknown-XYZ9"
        complaint = data["complaint"]
        assert complaint["location"]["address"] == "Main Road, Ward 12"
        assert "user_id" not in complaint
        assert "embedding" not in complaint

    def test_terms_required(self, client) -> None:
        response = client.post(
            "/api/v1/complaints", json={**SUBMISSION, "agreed_to_terms": False}, headers=CITIZEN
        )
        assert response.status_code == 422
        assert response.json()["detail"] == "You must agree to Terms & Conditions"

    def test_missing_fields(self, client) -> None:
        response = client.post("/api/v1/complaints", json={"agreed_to_terms": True}, headers=CITIZEN)
        assert response.status_code == 422
        assert response.json()["detail"] == "Please fill all required fields"

    def test_admin_cannot_submit(self, client) -> None:
        response = client.post("/api/v1/complaints", json=SUBMISSION, headers=ADMIN)
        assert response.status_code == 403

    def test_analysis_runs_in_background(self, client) -> None:
        data = _submit(client)
        complaint = _wait_for(client, data["complaint_id"], "sent_to_admin")
        assert complaint["status"] == "sent_to_admin"
        assert complaint["ai_analysis"]["source"] == "rules"
        assert complaint["ai_analysis"]["severity"] == "high"
        assert complaint["govt_order_doc"]["order_number"].startswith("GO/CS-000001/")

    def test_spam_is_rejected_by_analysis(self, client) -> None:
        data = _submit(client, description="This is just a test, please ignore this entry.")
        complaint = _wait_for(client, data["complaint_id"], "ai_rejected")
        assert complaint["status"] == "ai_rejected"


class TestReads:
    def test_ownership(self, client) -> None:
        cid = _submit(client)["complaint_id"]
        assert client.get(f"/api/v1/complaints/{cid}", headers=OTHER_CITIZEN).status_code == 403
        assert client.get(f"/api/v1/complaints/{cid}", headers=ADMIN).status_code == 200

    def test_not_found(self, client) -> None:
        response = client.get("/api/v1/complaints/CS-999999", headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["complaint_id"] == "CS-999999"

    def test_my_complaints(self, client) -> None:
        _submit(client)
        assert len(client.get("/api/v1/complaints/my", headers=CITIZEN).json()) == 1
        assert client.get("/api/v1/complaints/my", headers=OTHER_CITIZEN).json() == []

    def test_admin_queue(self, client) -> None:
        cid = _submit(client)["complaint_id"]
        _wait_for(client, cid, "sent_to_admin")
        queue = client.get("/api/v1/complaints/admin", params={"department": "municipal"}, headers=ADMIN).json()
        assert [c["complaint_id"] for c in queue] == [cid]
        assert client.get("/api/v1/complaints/all", headers=ADMIN).status_code == 200


class TestWorkflow:
    def test_admin_action_validation(self, client) -> None:
        cid = _submit(client)["complaint_id"]
        _wait_for(client, cid, "sent_to_admin")
        bad = client.put(f"/api/v1/complaints/{cid}/admin-action", json={"action": "maybe"}, headers=ADMIN)
        assert bad.status_code == 422
        no_target = client.put(f"/api/v1/complaints/{cid}/admin-action", json={"action": "approve"}, headers=ADMIN)
        assert no_target.status_code == 422

    def test_premature_escalation_conflicts(self, client) -> None:
        cid = _submit(client)["complaint_id"]
        _wait_for(client, cid, "sent_to_admin")
        client.put(
            f"/api/v1/complaints/{cid}/admin-action",
            json={"action": "approve", "target_authority": "Electricity"},
            headers=ADMIN,
        )
        response = client.post(f"/api/v1/complaints/{cid}/escalate", headers=CITIZEN)
        assert response.status_code == 409
        assert response.json()["current"] == "sent_to_authority"

    def test_data_request_and_consent(self, client) -> None:
        cid = _submit(client)["complaint_id"]
        requested = client.put(f"/api/v1/complaints/{cid}/request-data", headers=ADMIN)
        assert requested.json()["complaint"]["data_requested_by_admin"] is True
        consent = client.put(f"/api/v1/complaints/{cid}/consent", json={"consent": True}, headers=CITIZEN)
        assert consent.json()["message"] == "Data sharing accepted"
        stranger = client.put(f"/api/v1/complaints/{cid}/consent", json={"consent": True}, headers=OTHER_CITIZEN)
        assert stranger.status_code == 403

    def test_dispute_and_lawsuit(self, client) -> None:
        cid = _submit(client)["complaint_id"]
        _wait_for(client, cid, "sent_to_admin")

        approved = client.put(
            f"/api/v1/complaints/{cid}/admin-action",
            json={"action": "approve", "remarks": "Genuine", "target_authority": "Electricity"},
            headers=ADMIN,
        )
        assert approved.json()["complaint"]["status"] == "sent_to_authority"
        assert approved.json()["complaint"]["escalation_deadline"] is not None

        authority_queue = client.get("/api/v1/complaints/authority", headers=AUTHORITY).json()
        assert [c["complaint_id"] for c in authority_queue] == [cid]

        replied = client.put(
            f"/api/v1/complaints/{cid}/authority-action",
            json={"action": "respond", "remarks": "Crew dispatched"},
            headers=AUTHORITY,
        )
        assert replied.json()["complaint"]["status"] == "replied"

        disputed = client.put(
            f"/api/v1/complaints/{cid}/user-resolve",
            json={"accepted": False, "feedback": "Still dark"},
            headers=CITIZEN,
        )
        assert disputed.json()["message"] == "Complaint marked as not resolved"

        filed = client.post(f"/api/v1/complaints/{cid}/escalate", headers=CITIZEN)
        assert filed.status_code == 200
        body = filed.json()
        assert body["complaint"]["status"] == "lawsuit_filed"
        assert body["complaint"]["lawsuit_details"]["filed"] is True
        assert body["lawsuit_email"]["reference"] == cid
        assert len(body["procedure"]["steps"]) == 7


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


class TestAdminOperations:
    def test_escalation_sweep(self, client) -> None:
        data = client.post("/api/v1/admin/escalations/run").json()
        assert data["checked"] == 0
        assert data["escalated"] == []

    def test_backfill(self, client) -> None:
        cid = _submit(client, heading="Pothole outside clinic", description="Deep pothole outside the clinic gate.")
        _wait_for(client, cid["complaint_id"], "sent_to_admin")
        data = client.post("/api/v1/admin/embeddings/backfill").json()
        assert data["embedded"] == 0

    def test_reconcile(self, client) -> None:
        assert client.post("/api/v1/admin/analysis/reconcile").json() == {"relaunched": []}

    def test_admin_key_enforced(self, client, monkeypatch) -> None:
        monkeypatch.setattr(settings, "admin_api_key", "s3cret")
        assert client.post("/api/v1/admin/escalations/run").status_code == 401
        wrong = client.post("/api/v1/admin/escalations/run", headers={"X-Admin-API-Key": "nope"})
        assert wrong.status_code == 403
        ok = client.post("/api/v1/admin/escalations/run", headers={"X-Admin-API-Key": "s3cret"})
        assert ok.status_code == 200
