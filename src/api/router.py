"""Main API router combining all v1 route modules.

Aggregates all routers under the ``/api/v1`` prefix so the
FastAPI application only needs to include a single router.

Includes:
    * Complaints: submission, role-scoped reads and lifecycle actions
    * Departments: the department catalogue
    * Health: liveness and readiness probes
    * Admin: escalation sweep, embedding backfill, analysis reconcile
"""

from __future__ import annotations

from fastapi import APIRouter

from src.api.v1 import admin, complaints, departments, health

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(complaints.router)
api_router.include_router(departments.router)
api_router.include_router(health.router)
api_router.include_router(admin.router)
