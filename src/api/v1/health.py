"""Health check endpoints for Civic Shield API v1.

Liveness and readiness probes.  Readiness verifies the complaint store
and reports whether the verdict client and background workers are up.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, str]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe; does not touch downstream dependencies."""
    start_time: float = getattr(request.app.state, "start_time", time.time())
    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(time.time() - start_time, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Readiness probe.

    The store is the only hard dependency.  Gemini being unconfigured
    is reported but does not fail readiness, since analysis falls back
    to the rule-based verdict.
    """
    checks: dict[str, str] = {}
    all_ok = True
    state = request.app.state

    repository = getattr(state, "repository", None)
    if repository is None:
        checks["repository"] = "not_initialised"
        all_ok = False
    else:
        ping = getattr(repository, "ping", None)
        try:
            if ping is None or await ping():
                checks["repository"] = "ok"
            else:
                checks["repository"] = "unreachable"
                all_ok = False
        except Exception as exc:
            checks["repository"] = f"error: {exc!s}"
            all_ok = False

    gemini = getattr(state, "gemini", None)
    checks["verdict_client"] = "ok" if gemini is not None and gemini.available else "fallback_only"

    corpus = getattr(state, "corpus", None)
    snapshot = corpus.snapshot if corpus is not None else None
    checks["corpus_index"] = f"ok ({snapshot.corpus_size} documents)" if snapshot is not None else "cold"

    scheduler = getattr(state, "scheduler", None)
    if scheduler is None:
        checks["escalation_scheduler"] = "disabled"
    else:
        checks["escalation_scheduler"] = "running" if scheduler.is_running else "stopped"

    status = "ready" if all_ok else "degraded"
    logger.info("health.readiness_check", status=status, checks=checks)
    return ReadinessResponse(status=status, checks=checks)
