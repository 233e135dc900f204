"""In-memory sliding-window rate limiting for the complaint API.

Two budgets are enforced per caller:

* a general budget for every request, and
* a tighter budget for complaint submission (``POST /api/v1/complaints``),
  since each submission starts a background analysis.

Callers are keyed by the forwarded ``X-Actor-Id`` when present, and by
client IP otherwise.  Designed for single-process deployments; a
multi-instance deployment needs a shared (Redis-backed) limiter.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Final

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_EXEMPT_PATHS: Final[frozenset[str]] = frozenset({
    "/api/v1/health",
    "/api/v1/health/ready",
    "/metrics",
    "/docs",
    "/redoc",
    "/openapi.json",
})
_SUBMISSION_PATH: Final[str] = "/api/v1/complaints"
_WINDOW_SECONDS: Final[float] = 60.0
_CLEANUP_INTERVAL: Final[int] = 1000


class SlidingWindow:
    """Per-key deques of request timestamps over a fixed window."""

    __slots__ = ("_hits", "limit", "window_seconds")

    def __init__(self, limit: int, window_seconds: float = _WINDOW_SECONDS) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = {}

    def hit(self, key: str, now: float) -> tuple[bool, int]:
        """Record a request; return ``(allowed, retry_after_or_remaining)``."""
        window = self._hits.setdefault(key, deque())
        window_start = now - self.window_seconds
        while window and window[0] < window_start:
            window.popleft()

        if len(window) >= self.limit:
            retry_after = max(1, int(self.window_seconds - (now - window[0])) + 1)
            return False, retry_after

        window.append(now)
        return True, self.limit - len(window)

    def prune(self, now: float) -> int:
        window_start = now - self.window_seconds
        stale = [key for key, dq in self._hits.items() if not dq or dq[-1] < window_start]
        for key in stale:
            del self._hits[key]
        return len(stale)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limiter keyed by actor id, falling back to client IP.

    Parameters
    ----------
    app:
        The ASGI application.
    max_requests_per_minute:
        General per-caller budget.
    max_submissions_per_minute:
        Per-caller budget for complaint submissions.
    trusted_proxy_count:
        Number of trusted reverse proxies in front of the app; the client
        IP is read ``trusted_proxy_count + 1`` entries from the right of
        ``X-Forwarded-For``.
    """

    def __init__(
        self,
        app: object,
        max_requests_per_minute: int = 120,
        max_submissions_per_minute: int = 10,
        trusted_proxy_count: int = 1,
    ) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._general = SlidingWindow(max_requests_per_minute)
        self._submissions = SlidingWindow(max_submissions_per_minute)
        self._trusted_proxy_count = trusted_proxy_count
        self._lock = asyncio.Lock()
        self._requests_seen = 0

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _EXEMPT_PATHS:
            return await call_next(request)

        key = self._caller_key(request)
        now = time.monotonic()
        is_submission = request.method == "POST" and path.rstrip("/") == _SUBMISSION_PATH

        async with self._lock:
            self._requests_seen += 1
            if self._requests_seen % _CLEANUP_INTERVAL == 0:
                removed = self._general.prune(now) + self._submissions.prune(now)
                if removed:
                    logger.debug("rate_limit.cleanup", removed_keys=removed)

            allowed, value = self._general.hit(key, now)
            limiter = self._general
            if allowed and is_submission:
                allowed, value = self._submissions.hit(key, now)
                limiter = self._submissions

        if not allowed:
            logger.warning(
                "rate_limit.exceeded",
                caller=key,
                path=path,
                limit=limiter.limit,
            )
            return JSONResponse(
                status_code=429,
                content={
                    "detail": "Rate limit exceeded. Please try again later.",
                    "retry_after_seconds": value,
                },
                headers={
                    "Retry-After": str(value),
                    "X-RateLimit-Limit": str(limiter.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limiter.limit)
        response.headers["X-RateLimit-Remaining"] = str(value)
        return response

    def _caller_key(self, request: Request) -> str:
        actor_id = request.headers.get("X-Actor-Id")
        if actor_id:
            return f"actor:{actor_id.strip()}"
        return f"ip:{self._client_ip(request)}"

    def _client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            ips = [ip.strip() for ip in forwarded_for.split(",")]
            if self._trusted_proxy_count > 0:
                client_index = -(self._trusted_proxy_count + 1)
                return ips[client_index] if abs(client_index) <= len(ips) else ips[0]
            return ips[0]

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
        if request.client:
            return request.client.host
        return "unknown"
