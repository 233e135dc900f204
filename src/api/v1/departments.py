"""Department catalogue for Civic Shield API v1."""

from __future__ import annotations

from fastapi import APIRouter

from src.services.documents import DEPARTMENTS

router = APIRouter(prefix="/departments", tags=["departments"])


@router.get("")
async def list_departments() -> list[dict]:
    return [d.model_dump() for d in DEPARTMENTS]
