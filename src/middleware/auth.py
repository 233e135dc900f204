"""Caller identity and admin API key dependencies.

Sessions are issued by the upstream auth gateway, which forwards the
authenticated caller as ``X-Actor-*`` headers.  :func:`get_actor` turns
those headers into an :class:`Actor` for the lifecycle engine.

Operational endpoints (escalation sweep, embedding backfill) are guarded
by :func:`require_admin_api_key`, which validates ``X-Admin-API-Key``
against ``ADMIN_API_KEY`` using constant-time comparison.
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import Header, HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from config.settings import settings
from src.models.complaint import Actor
from src.models.enums import ActorRole

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)

# The system role is internal; it cannot be asserted over HTTP.
_HTTP_ROLES = frozenset({ActorRole.CITIZEN, ActorRole.ADMIN, ActorRole.AUTHORITY})


async def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
    x_actor_name: str = Header(default=""),
    x_actor_department: str = Header(default=""),
) -> Actor:
    """FastAPI dependency resolving the forwarded caller identity.

    Raises 401 when the identity headers are missing and 403 for an
    unknown or internal role.
    """
    if not x_actor_id or not x_actor_role:
        raise HTTPException(
            status_code=401,
            detail="Missing X-Actor-Id / X-Actor-Role headers.",
        )
    try:
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError:
        role = None
    if role not in _HTTP_ROLES:
        logger.warning("auth.invalid_actor_role", role=x_actor_role)
        raise HTTPException(status_code=403, detail="Invalid actor role.")

    return Actor(
        actor_id=x_actor_id.strip(),
        role=role,
        name=x_actor_name.strip(),
        department=x_actor_department.strip(),
    )


async def require_admin_api_key(
    request: Request,
    api_key: str | None = Security(_api_key_header),
) -> str:
    """FastAPI dependency that enforces admin API key authentication.

    Returns the validated key on success; raises 401/403 on failure.

    Usage::

        @router.post("/admin/escalations/run", dependencies=[Depends(require_admin_api_key)])
        async def run_escalations(...): ...
    """
    configured_key = settings.admin_api_key

    if not configured_key:
        if not settings.is_production:
            logger.warning(
                "auth.admin_key_not_configured",
                note="Admin API key not set; allowing request in development mode",
            )
            return ""
        logger.error("auth.admin_key_not_configured_production")
        raise HTTPException(
            status_code=503,
            detail="Admin authentication is not configured.",
        )

    if not api_key:
        logger.warning(
            "auth.missing_api_key",
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=401,
            detail="Missing X-Admin-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not hmac.compare_digest(api_key.encode(), configured_key.encode()):
        logger.warning(
            "auth.invalid_api_key",
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=403,
            detail="Invalid API key.",
        )

    return api_key
