"""Tests for the identity dependencies and the rate-limit middleware.

Each test mounts the middleware or dependency on a small throwaway
FastAPI app so nothing here depends on the complaint services.
"""

from __future__ import annotations

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from config.settings import settings
from src.middleware.auth import get_actor, require_admin_api_key
from src.middleware.rate_limit import RateLimitMiddleware, SlidingWindow
from src.models.complaint import Actor


def _identity_app() -> FastAPI:
    app = FastAPI()

    @app.get("/whoami")
    async def whoami(actor: Actor = Depends(get_actor)) -> dict:
        return actor.model_dump(mode="json")

    @app.post("/ops", dependencies=[Depends(require_admin_api_key)])
    async def ops() -> dict:
        return {"ok": True}

    return app


def _limited_app(general: int = 5, submissions: int = 2) -> FastAPI:
    app = FastAPI()
    app.add_middleware(
        RateLimitMiddleware,
        max_requests_per_minute=general,
        max_submissions_per_minute=submissions,
        trusted_proxy_count=0,
    )

    @app.get("/api/v1/complaints/my")
    async def mine() -> dict:
        return {"ok": True}

    @app.post("/api/v1/complaints")
    async def submit() -> dict:
        return {"ok": True}

    @app.get("/api/v1/health")
    async def health() -> dict:
        return {"status": "healthy"}

    return app


# ---------------------------------------------------------------------------
# get_actor
# ---------------------------------------------------------------------------


class TestGetActor:
    def test_resolves_headers(self) -> None:
        client = TestClient(_identity_app())
        response = client.get(
            "/whoami",
            headers={
                "X-Actor-Id": " admin-1 ",
                "X-Actor-Role": "Admin",
                "X-Actor-Name": "Asha Verma",
                "X-Actor-Department": "Municipal",
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["actor_id"] == "admin-1"
        assert data["role"] == "admin"
        assert data["name"] == "Asha Verma"
        assert data["department"] == "Municipal"

    def test_missing_role(self) -> None:
        response = TestClient(_identity_app()).get("/whoami", headers={"X-Actor-Id": "citizen-1"})
        assert response.status_code == 401

    @pytest.mark.parametrize("role", ["system", "root", ""])
    def test_role_not_accepted(self, role) -> None:
        response = TestClient(_identity_app()).get(
            "/whoami", headers={"X-Actor-Id": "citizen-1", "X-Actor-Role": role}
        )
        # An empty role counts as missing.
        assert response.status_code == (401 if not role else 403)


# ---------------------------------------------------------------------------
# require_admin_api_key
# ---------------------------------------------------------------------------


class TestAdminApiKey:
    def test_open_in_development_without_key(self, monkeypatch) -> None:
        monkeypatch.setattr(settings, "env", "development")
        monkeypatch.setattr(settings, "admin_api_key", "")
        assert TestClient(_identity_app()).post("/ops").status_code == 200

    def test_closed_in_production_without_key(self, monkeypatch) -> None:
        monkeypatch.setattr(settings, "env", "production")
        monkeypatch.setattr(settings, "admin_api_key", "")
        assert TestClient(_identity_app()).post("/ops").status_code == 503

    def test_key_checked(self, monkeypatch) -> None:
        monkeypatch.setattr(settings, "admin_api_key", "s3cret")
        client = TestClient(_identity_app())
        assert client.post("/ops").status_code == 401
        assert client.post("/ops", headers={"X-Admin-API-Key": "wrong"}).status_code == 403
        assert client.post("/ops", headers={"X-Admin-API-Key": "s3cret"}).status_code == 200


# ---------------------------------------------------------------------------
# SlidingWindow
# ---------------------------------------------------------------------------


class TestSlidingWindow:
    def test_allows_up_to_limit(self) -> None:
        window = SlidingWindow(3)
        assert window.hit("a", 0.0) == (True, 2)
        assert window.hit("a", 1.0) == (True, 1)
        assert window.hit("a", 2.0) == (True, 0)
        allowed, retry_after = window.hit("a", 3.0)
        assert allowed is False
        assert retry_after == 58

    def test_keys_are_independent(self) -> None:
        window = SlidingWindow(1)
        assert window.hit("a", 0.0)[0] is True
        assert window.hit("b", 0.0)[0] is True
        assert window.hit("a", 0.5)[0] is False

    def test_old_hits_expire(self) -> None:
        window = SlidingWindow(1, window_seconds=10)
        window.hit("a", 0.0)
        assert window.hit("a", 5.0)[0] is False
        assert window.hit("a", 11.0)[0] is True

    def test_prune(self) -> None:
        window = SlidingWindow(5, window_seconds=10)
        window.hit("old", 0.0)
        window.hit("fresh", 15.0)
        assert window.prune(20.0) == 1
        assert window.hit("fresh", 20.0) == (True, 3)


# ---------------------------------------------------------------------------
# RateLimitMiddleware
# ---------------------------------------------------------------------------


class TestRateLimitMiddleware:
    def test_general_budget(self) -> None:
        client = TestClient(_limited_app(general=2))
        headers = {"X-Actor-Id": "citizen-1"}
        first = client.get("/api/v1/complaints/my", headers=headers)
        assert first.headers["X-RateLimit-Remaining"] == "1"
        client.get("/api/v1/complaints/my", headers=headers)

        blocked = client.get("/api/v1/complaints/my", headers=headers)
        assert blocked.status_code == 429
        assert blocked.json()["retry_after_seconds"] >= 1
        assert "Retry-After" in blocked.headers

    def test_callers_have_separate_budgets(self) -> None:
        client = TestClient(_limited_app(general=1))
        assert client.get("/api/v1/complaints/my", headers={"X-Actor-Id": "citizen-1"}).status_code == 200
        assert client.get("/api/v1/complaints/my", headers={"X-Actor-Id": "citizen-2"}).status_code == 200
        assert client.get("/api/v1/complaints/my", headers={"X-Actor-Id": "citizen-1"}).status_code == 429

    def test_submission_budget(self) -> None:
        client = TestClient(_limited_app(general=10, submissions=1))
        headers = {"X-Actor-Id": "citizen-1"}
        assert client.post("/api/v1/complaints", headers=headers).status_code == 200

        blocked = client.post("/api/v1/complaints", headers=headers)
        assert blocked.status_code == 429
        assert blocked.headers["X-RateLimit-Limit"] == "1"
        # Reads still have general budget left.
        assert client.get("/api/v1/complaints/my", headers=headers).status_code == 200

    def test_health_is_exempt(self) -> None:
        client = TestClient(_limited_app(general=1))
        for _ in range(5):
            assert client.get("/api/v1/health").status_code == 200

    def test_falls_back_to_client_ip(self) -> None:
        client = TestClient(_limited_app(general=1))
        assert client.get("/api/v1/complaints/my").status_code == 200
        assert client.get("/api/v1/complaints/my").status_code == 429
