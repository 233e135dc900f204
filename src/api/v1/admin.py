"""Operational endpoints for Civic Shield API v1.

Protected by the admin API key.  Meant for operators and external
schedulers (e.g. a cron job hitting ``/admin/escalations/run`` instead
of the in-process loop).
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from src.middleware.auth import require_admin_api_key

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_api_key)],
)


def _state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name.replace('_', ' ').title()} not available")
    return service


@router.post("/escalations/run")
async def run_escalations(request: Request) -> dict:
    """Run one escalation sweep now."""
    sweeper = _state(request, "scheduler")
    result = await sweeper.run_sweep()
    logger.info("api.admin.escalation_sweep", escalated=len(result.escalated))
    return result.to_dict()


@router.post("/embeddings/backfill")
async def backfill_embeddings(request: Request, batch_size: int | None = None) -> dict:
    """Embed stored complaints that have no vector yet."""
    corpus = _state(request, "corpus")
    size = batch_size or getattr(request.app.state, "backfill_batch_size", 50)
    embedded = await corpus.backfill_embeddings(batch_size=max(1, size))
    return {"embedded": embedded}


@router.post("/analysis/reconcile")
async def reconcile_analysis(request: Request) -> dict:
    """Restart analyses stranded in ``submitted`` or ``ai_review``."""
    supervisor = _state(request, "supervisor")
    relaunched = await supervisor.reconcile()
    return {"relaunched": relaunched}
