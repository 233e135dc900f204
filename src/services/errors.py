"""Error taxonomy for the complaint lifecycle.

User-facing errors (validation, authorisation, transition, not-found,
conflict) propagate synchronously from :class:`LifecycleEngine`.
External-service errors are absorbed by the pipeline and replaced with
deterministic fallbacks; they only ever reach logs.
"""

from __future__ import annotations

from typing import ClassVar


class CivicShieldError(Exception):
    """Base class for all domain errors."""

    status_code: ClassVar[int] = 500

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(CivicShieldError):
    """Missing required field or malformed action."""

    status_code = 422


class AuthorizationError(CivicShieldError):
    """Caller has the wrong role or does not own the complaint."""

    status_code = 403


class InvalidTransitionError(CivicShieldError):
    """Requested action does not apply to the complaint's current status."""

    status_code = 409

    def __init__(self, current: str, target: str, complaint_id: str = "") -> None:
        super().__init__(
            f"Cannot move complaint {complaint_id or '?'} from '{current}' to '{target}'",
            current=current,
            target=target,
            complaint_id=complaint_id,
        )
        self.current = current
        self.target = target


class NotFoundError(CivicShieldError):
    status_code = 404


class ConflictError(CivicShieldError):
    """Optimistic version check failed; another writer committed first."""

    status_code = 409


class ExternalServiceError(CivicShieldError):
    """Text extraction, verdict generation or notification failed."""

    status_code = 502


class RateLimitError(ExternalServiceError):
    """External service answered HTTP 429."""

    status_code = 429
