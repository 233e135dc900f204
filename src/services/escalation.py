"""Deadline-driven escalation of unanswered complaints.

Once an admin forwards a complaint, the authority has six business days
to reply.  :class:`EscalationScheduler` sweeps for complaints still in
``sent_to_authority`` past that deadline and marks them ``escalated``,
after which the citizen may file a lawsuit notice.

Background mode
    An ``asyncio`` task in the FastAPI event loop that sweeps every
    ``escalation_interval_seconds`` (hourly by default).

On-demand mode
    ``POST /api/v1/admin/escalations/run`` calls :meth:`run_sweep`
    directly, e.g. from an external cron.

Each loop iteration also runs the optional reconciliation hook, which
restarts analyses that were stranded by a crash or restart.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Final

import structlog

from src.models.enums import ComplaintStatus

if TYPE_CHECKING:
    from src.services.lifecycle import LifecycleEngine
    from src.services.notifications import NotificationGateway
    from src.services.repository import ComplaintRepository

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BUSINESS_DAYS: Final[int] = 6
_DEFAULT_INTERVAL_SECONDS: Final[float] = 3600.0
_SATURDAY: Final[int] = 5  # Monday=0

_ESCALATION_NOTICE: Final[str] = (
    "Your complaint {complaint_id} has been escalated due to non-response from "
    "the authority within the deadline. You may now choose to file a lawsuit."
)


def compute_escalation_deadline(start: datetime, business_days: int = DEFAULT_BUSINESS_DAYS) -> datetime:
    """Advance ``start`` one calendar day at a time until ``business_days``
    weekdays (Monday-Friday) have been counted.

    The time of day is preserved.  Starting on a Friday with six business
    days lands on the Monday ten days later.
    """
    deadline = start
    counted = 0
    while counted < business_days:
        deadline += timedelta(days=1)
        if deadline.weekday() < _SATURDAY:
            counted += 1
    return deadline


@dataclass(slots=True)
class SweepResult:
    """Outcome of one escalation sweep."""

    checked: int = 0
    escalated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "escalated": list(self.escalated),
            "failed": list(self.failed),
            "started_at": self.started_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# EscalationScheduler
# ---------------------------------------------------------------------------


class EscalationScheduler:
    """Periodic sweep that escalates overdue complaints.

    Parameters
    ----------
    engine:
        Lifecycle engine; every escalation goes through
        :meth:`LifecycleEngine.mark_escalated`.
    repository:
        Read path used to find candidates.
    notifier:
        Optional gateway used to tell the citizen about the escalation.
    interval_seconds:
        Pause between background sweeps.
    reconcile:
        Optional coroutine run after every background sweep.
    """

    def __init__(
        self,
        engine: LifecycleEngine,
        repository: ComplaintRepository,
        *,
        notifier: NotificationGateway | None = None,
        interval_seconds: float = _DEFAULT_INTERVAL_SECONDS,
        reconcile: Callable[[], Awaitable[object]] | None = None,
    ) -> None:
        self._engine = engine
        self._repository = repository
        self._notifier = notifier
        self._interval = interval_seconds
        self._reconcile = reconcile
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._running = False
        self._last_run: datetime | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_run(self) -> datetime | None:
        return self._last_run

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def run_sweep(self) -> SweepResult:
        """Escalate every ``sent_to_authority`` complaint past its deadline.

        Never raises.  Complaints that have already moved on are skipped,
        so running the sweep twice escalates nothing the second time.
        """
        now = self._engine.now()
        result = SweepResult(started_at=now)
        try:
            candidates = await self._repository.list(statuses=[ComplaintStatus.SENT_TO_AUTHORITY])
        except Exception:
            logger.error("escalation.candidate_query_failed", exc_info=True)
            return result

        overdue = [
            c for c in candidates
            if c.escalation_deadline is not None and c.escalation_deadline <= now
        ]
        result.checked = len(candidates)

        for complaint in overdue:
            try:
                escalated = await self._engine.mark_escalated(complaint.complaint_id)
            except Exception:
                logger.error("escalation.mark_failed", complaint_id=complaint.complaint_id, exc_info=True)
                result.failed.append(complaint.complaint_id)
                continue
            if escalated is None:
                continue
            result.escalated.append(escalated.complaint_id)
            await self._notify(escalated.user_id, escalated.complaint_id)

        self._last_run = now
        logger.info(
            "escalation.sweep_complete",
            checked=result.checked,
            escalated=len(result.escalated),
            failed=len(result.failed),
        )
        return result

    async def _notify(self, user_id: str, complaint_id: str) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.notify_user(
                user_id,
                _ESCALATION_NOTICE.format(complaint_id=complaint_id),
                kind="warning",
            )
        except Exception:
            logger.warning("escalation.user_notice_failed", complaint_id=complaint_id, exc_info=True)

    async def _safe_reconcile(self) -> None:
        if self._reconcile is None:
            return
        try:
            await self._reconcile()
        except Exception:
            logger.error("escalation.reconcile_failed", exc_info=True)

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start_background_scheduler(self) -> None:
        """Sweep, reconcile, sleep; until :meth:`stop` is called.

        Meant to be wrapped in ``asyncio.create_task`` by the app
        lifespan; exceptions from a single iteration are logged and the
        loop carries on.
        """
        self._running = True
        logger.info("escalation.background_started", interval_seconds=self._interval)
        try:
            while self._running:
                await self.run_sweep()
                await self._safe_reconcile()
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            logger.info("escalation.background_cancelled")
        finally:
            self._running = False
            logger.info("escalation.background_stopped")

    def start(self) -> asyncio.Task:  # type: ignore[type-arg]
        """Launch :meth:`start_background_scheduler` as a task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.start_background_scheduler(), name="escalation-scheduler")
        return self._task

    async def stop(self) -> None:
        """Stop the loop and wait (briefly) for the task to finish."""
        logger.info("escalation.stopping")
        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=10.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            self._task = None

        logger.info("escalation.stopped")
