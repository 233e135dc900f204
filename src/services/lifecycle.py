"""Complaint lifecycle engine.

The single authority over complaint status.  Every operation follows the
same shape:

1. check the caller's role (and ownership, where relevant)
2. take the per-complaint lock and load the record
3. check the current status against the transition table
4. append the history entry and apply the field changes
5. persist with an optimistic version check and return the snapshot

User-facing errors (:class:`ValidationError`, :class:`AuthorizationError`,
:class:`InvalidTransitionError`, :class:`NotFoundError`,
:class:`ConflictError`) propagate to the caller unchanged.

The analysis pipeline and the escalation scheduler also go through this
engine (``begin_review`` / ``complete_review`` / ``mark_escalated``) so
that there is exactly one code path that writes status history.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final

import structlog

from src.models.complaint import (
    Actor,
    AIAnalysis,
    Complaint,
    ComplaintSubmission,
    GovtOrderDoc,
    LawsuitDetails,
    UserResolution,
)
from src.models.enums import ActorRole, AdminDecision, AuthorityDecision, ComplaintStatus as S
from src.services.documents import build_legal_notice, format_short_date
from src.services.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from src.services.escalation import compute_escalation_deadline
from src.services.locks import KeyedLock
from src.services.repository import format_complaint_id
from src.services.state_machine import ensure_transition

if TYPE_CHECKING:
    from src.services.notifications import NotificationGateway
    from src.services.repository import ComplaintRepository

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

AI_ACTOR: Final[str] = "ai_system"
SYSTEM_ACTOR: Final[str] = "system"
# Citizens are recorded generically so the audit trail never names them.
CITIZEN_ACTOR: Final[str] = "user"

ADMIN_VISIBLE_STATES: Final[frozenset[S]] = frozenset({
    S.SENT_TO_ADMIN, S.ADMIN_APPROVED, S.ADMIN_REJECTED,
})
AUTHORITY_VISIBLE_STATES: Final[frozenset[S]] = frozenset({
    S.SENT_TO_AUTHORITY, S.REPLIED, S.USER_NOT_RESOLVED, S.USER_RESOLVED,
    S.RESOLVED, S.ESCALATED, S.LAWSUIT_FILED,
})
ESCALATION_MESSAGE: Final[str] = (
    "Authority failed to respond within the deadline. Complaint has been "
    "escalated. You may now file a lawsuit."
)


def anonymous_id_for(identity_document: str) -> str:
    """``Unknown-<last 4 chars>``; the full document is never stored."""
    return f"Unknown-{identity_document.strip()[-4:].upper()}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# LifecycleEngine
# ---------------------------------------------------------------------------


class LifecycleEngine:
    """Role-scoped complaint state machine.

    Parameters
    ----------
    repository:
        Persistence for complaints.
    notifier:
        Gateway used to deliver legal notices on escalation.
    locks:
        Per-complaint lock registry, shared with the pipeline and the
        scheduler.
    clock:
        Wall-clock source, injectable for deadline tests.
    business_days:
        Authority response window used for the escalation deadline.
    """

    def __init__(
        self,
        repository: ComplaintRepository,
        notifier: NotificationGateway,
        *,
        locks: KeyedLock | None = None,
        clock: Callable[[], datetime] = _utcnow,
        business_days: int = 6,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._locks = locks or KeyedLock()
        self._clock = clock
        self._business_days = business_days
        self._launcher: Callable[[str], object] | None = None

    def attach_launcher(self, launcher: Callable[[str], object]) -> None:
        """Register the callable that starts analysis for a new complaint."""
        self._launcher = launcher

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_role(actor: Actor, *roles: ActorRole) -> None:
        if actor.role not in roles:
            raise AuthorizationError(
                f"Role '{actor.role.value}' may not perform this action",
                role=actor.role.value,
                allowed=[r.value for r in roles],
            )

    @staticmethod
    def _require_owner(complaint: Complaint, actor: Actor) -> None:
        if not complaint.is_owned_by(actor):
            raise AuthorizationError(
                "Not authorized for this complaint",
                complaint_id=complaint.complaint_id,
            )

    @staticmethod
    def _audit_name(actor: Actor) -> str:
        if actor.role == ActorRole.CITIZEN:
            return CITIZEN_ACTOR
        if actor.role == ActorRole.SYSTEM:
            return actor.display_name or SYSTEM_ACTOR
        return actor.display_name

    async def _load(self, complaint_id: str) -> Complaint:
        complaint = await self._repository.get(complaint_id)
        if complaint is None:
            raise NotFoundError(f"Complaint {complaint_id} not found", complaint_id=complaint_id)
        return complaint

    def _transition(self, complaint: Complaint, target: S, message: str, updated_by: str) -> None:
        previous = complaint.status
        ensure_transition(previous, target, complaint.complaint_id)
        complaint.record(target, message, updated_by, at=self._clock())
        logger.info(
            "lifecycle.transition",
            complaint_id=complaint.complaint_id,
            from_status=previous.value,
            to_status=target.value,
            updated_by=updated_by,
        )

    # ------------------------------------------------------------------
    # Citizen: submit
    # ------------------------------------------------------------------

    async def submit(self, submission: ComplaintSubmission, actor: Actor) -> Complaint:
        """Persist a new complaint and start its analysis in the background.

        Only the persist is awaited; analysis runs as a supervised task
        whose failures never reach this caller.
        """
        self._require_role(actor, ActorRole.CITIZEN)
        if not (submission.department.strip() and submission.heading.strip() and submission.description.strip()):
            raise ValidationError("Please fill all required fields")
        if not submission.agreed_to_terms:
            raise ValidationError("You must agree to Terms & Conditions")

        identity = submission.identity_document.strip() or actor.actor_id
        complaint_id = format_complaint_id(await self._repository.next_sequence())
        now = self._clock()

        complaint = Complaint(
            complaint_id=complaint_id,
            user_id=actor.actor_id,
            anonymous_id=anonymous_id_for(identity),
            department=submission.department.strip(),
            heading=submission.heading.strip(),
            description=submission.description.strip(),
            documents=list(submission.documents),
            location=submission.location,
            agreed_to_terms=True,
            created_at=now,
            updated_at=now,
        )
        complaint.record(S.SUBMITTED, "Complaint has been submitted successfully.", SYSTEM_ACTOR, at=now)
        complaint = await self._repository.create(complaint)
        logger.info("lifecycle.submitted", complaint_id=complaint_id, department=complaint.department)

        if self._launcher is not None:
            try:
                self._launcher(complaint_id)
            except Exception:
                # The reconciliation sweep picks up anything left in ``submitted``.
                logger.error("lifecycle.analysis_launch_failed", complaint_id=complaint_id, exc_info=True)
        return complaint

    # ------------------------------------------------------------------
    # Analysis pipeline hooks
    # ------------------------------------------------------------------

    async def begin_review(self, complaint_id: str) -> Complaint | None:
        """Move ``submitted`` to ``ai_review``.

        Returns the complaint when analysis should proceed (including a
        restart of one already in ``ai_review``), or ``None`` when it has
        moved past review.
        """
        async with self._locks.hold(complaint_id):
            complaint = await self._load(complaint_id)
            if complaint.status == S.AI_REVIEW:
                return complaint
            if complaint.status != S.SUBMITTED:
                return None
            self._transition(complaint, S.AI_REVIEW, "Complaint is being analyzed by AI system.", AI_ACTOR)
            return await self._repository.update(complaint)

    async def complete_review(
        self,
        complaint_id: str,
        analysis: AIAnalysis,
        *,
        embedding: list[float] | None = None,
        order: GovtOrderDoc | None = None,
    ) -> Complaint:
        """Store the analysis and route the complaint on from ``ai_review``.

        Valid complaints go ``verified`` then ``sent_to_admin`` in one
        write; invalid ones go to ``ai_rejected``.  ``embedding`` is only
        stored when the record has none.
        """
        async with self._locks.hold(complaint_id):
            complaint = await self._load(complaint_id)
            if complaint.status != S.AI_REVIEW:
                raise InvalidTransitionError(complaint.status.value, S.VERIFIED.value, complaint_id)

            complaint.ai_analysis = analysis
            if embedding is not None and not complaint.embedding:
                complaint.embedding = embedding

            if analysis.is_valid:
                complaint.govt_order_doc = order
                self._transition(
                    complaint,
                    S.VERIFIED,
                    f"AI analysis complete. Complaint verified with score {analysis.score}/100. "
                    "Government order generated.",
                    AI_ACTOR,
                )
                self._transition(
                    complaint,
                    S.SENT_TO_ADMIN,
                    f"Complaint routed to {complaint.department} department admin for review.",
                    SYSTEM_ACTOR,
                )
            else:
                self._transition(
                    complaint,
                    S.AI_REJECTED,
                    f"AI analysis flagged this complaint: {analysis.verdict}. Flags: {', '.join(analysis.flags)}",
                    AI_ACTOR,
                )
            return await self._repository.update(complaint)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def admin_action(
        self,
        complaint_id: str,
        action: AdminDecision | str,
        actor: Actor,
        *,
        remarks: str = "",
        target_authority: str | None = None,
    ) -> Complaint:
        """Approve (forward to an authority) or reject a verified complaint.

        Approval requires ``target_authority`` and starts the escalation
        clock from the approval instant.
        """
        self._require_role(actor, ActorRole.ADMIN)
        try:
            decision = AdminDecision(action)
        except ValueError:
            raise ValidationError('Invalid action. Use "approve" or "reject"', action=str(action)) from None
        remarks = (remarks or "").strip()
        target = (target_authority or "").strip()
        if decision == AdminDecision.APPROVE and not target:
            raise ValidationError("A target authority is required to approve a complaint")

        async with self._locks.hold(complaint_id):
            complaint = await self._load(complaint_id)
            name = self._audit_name(actor)
            complaint.admin_id = actor.actor_id

            if decision == AdminDecision.APPROVE:
                complaint.admin_remarks = remarks
                self._transition(
                    complaint,
                    S.ADMIN_APPROVED,
                    f"Complaint approved by {name}." + (f" Remarks: {remarks}" if remarks else ""),
                    name,
                )
                deadline = compute_escalation_deadline(self._clock(), self._business_days)
                complaint.target_authority = target
                complaint.escalation_deadline = deadline
                self._transition(
                    complaint,
                    S.SENT_TO_AUTHORITY,
                    f"Complaint forwarded to {target} Authority for resolution. "
                    f"Deadline: {format_short_date(deadline)}.",
                    name,
                )
            else:
                complaint.admin_remarks = remarks or "Complaint rejected by admin"
                self._transition(
                    complaint,
                    S.ADMIN_REJECTED,
                    f"Complaint rejected by admin. Reason: {remarks or 'Not specified'}",
                    name,
                )
            return await self._repository.update(complaint)

    async def request_user_data(self, complaint_id: str, actor: Actor) -> Complaint:
        """Flag that the admin wants the complainant's personal data."""
        self._require_role(actor, ActorRole.ADMIN)
        async with self._locks.hold(complaint_id):
            complaint = await self._load(complaint_id)
            complaint.data_requested_by_admin = True
            complaint.annotate(
                "Admin has requested access to complainant personal data. Waiting for user consent.",
                self._audit_name(actor),
                at=self._clock(),
            )
            return await self._repository.update(complaint)

    # ------------------------------------------------------------------
    # Citizen: consent / resolve / escalate
    # ------------------------------------------------------------------

    async def update_consent(self, complaint_id: str, granted: bool, actor: Actor) -> Complaint:
        self._require_role(actor, ActorRole.CITIZEN)
        async with self._locks.hold(complaint_id):
            complaint = await self._load(complaint_id)
            self._require_owner(complaint, actor)
            complaint.user_consent_for_data = granted
            complaint.annotate(
                "User has consented to share personal data with the admin."
                if granted
                else "User has declined to share personal data.",
                CITIZEN_ACTOR,
                at=self._clock(),
            )
            return await self._repository.update(complaint)

    async def user_resolve(self, complaint_id: str, accepted: bool, actor: Actor, *, feedback: str = "") -> Complaint:
        """Citizen accepts or disputes the authority's reply."""
        self._require_role(actor, ActorRole.CITIZEN)
        feedback = (feedback or "").strip()
        async with self._locks.hold(complaint_id):
            complaint = await self._load(complaint_id)
            self._require_owner(complaint, actor)
            target = S.USER_RESOLVED if accepted else S.USER_NOT_RESOLVED
            ensure_transition(complaint.status, target, complaint_id)

            complaint.user_resolution = UserResolution(accepted=accepted, feedback=feedback, resolved_at=self._clock())
            if accepted:
                message = "User marked complaint as resolved." + (f" Feedback: {feedback}" if feedback else "")
            else:
                message = (
                    "User marked complaint as NOT resolved."
                    + (f" Reason: {feedback}" if feedback else "")
                    + " Case may be escalated."
                )
            self._transition(complaint, target, message, CITIZEN_ACTOR)
            return await self._repository.update(complaint)

    async def escalate(self, complaint_id: str, actor: Actor) -> Complaint:
        """File the lawsuit notice against a non-responsive authority.

        Allowed from ``escalated`` and ``user_not_resolved``, and from
        ``sent_to_authority`` once the deadline has passed.  A failed
        email does not block the filing; it is recorded as undelivered.
        """
        self._require_role(actor, ActorRole.CITIZEN, ActorRole.SYSTEM)
        async with self._locks.hold(complaint_id):
            complaint = await self._load(complaint_id)
            if actor.role == ActorRole.CITIZEN:
                self._require_owner(complaint, actor)

            now = self._clock()
            ensure_transition(complaint.status, S.LAWSUIT_FILED, complaint_id)
            if complaint.status == S.SENT_TO_AUTHORITY and (
                complaint.escalation_deadline is None or complaint.escalation_deadline > now
            ):
                raise InvalidTransitionError(complaint.status.value, S.LAWSUIT_FILED.value, complaint_id)

            notice = build_legal_notice(complaint, now)
            recipient = f"{complaint.target_authority or complaint.department} Authority"
            delivered = False
            try:
                receipt = await self._notifier.send_email(recipient, notice.subject, notice.body, notice.reference)
                delivered = receipt.success
            except Exception:
                logger.error("lifecycle.notice_delivery_failed", complaint_id=complaint_id, exc_info=True)

            complaint.lawsuit_details = LawsuitDetails(
                filed=True,
                filed_at=now,
                notice_subject=notice.subject,
                email_content=notice.body,
                reference=notice.reference,
                delivered=delivered,
            )
            self._transition(
                complaint,
                S.LAWSUIT_FILED,
                "Lawsuit notice has been sent to the authority. Legal proceedings initiated.",
                self._audit_name(actor),
            )
            return await self._repository.update(complaint)

    # ------------------------------------------------------------------
    # Authority
    # ------------------------------------------------------------------

    async def authority_action(
        self,
        complaint_id: str,
        action: AuthorityDecision | str,
        actor: Actor,
        *,
        remarks: str = "",
    ) -> Complaint:
        self._require_role(actor, ActorRole.AUTHORITY)
        try:
            AuthorityDecision(action)
        except ValueError:
            raise ValidationError('Invalid action. Use "respond"', action=str(action)) from None
        remarks = (remarks or "").strip()

        async with self._locks.hold(complaint_id):
            complaint = await self._load(complaint_id)
            ensure_transition(complaint.status, S.REPLIED, complaint_id)
            complaint.authority_id = actor.actor_id
            complaint.authority_response = remarks
            complaint.escalation_deadline = None
            self._transition(
                complaint,
                S.REPLIED,
                f"Authority responded: {remarks or 'Response provided'}. User can now mark this "
                "complaint as resolved or request further action.",
                self._audit_name(actor),
            )
            return await self._repository.update(complaint)

    # ------------------------------------------------------------------
    # Scheduler path
    # ------------------------------------------------------------------

    async def mark_escalated(self, complaint_id: str) -> Complaint | None:
        """Flag an overdue complaint as ``escalated`` (no notice is sent).

        Returns ``None`` if the complaint is no longer overdue, which
        makes repeated sweeps harmless.
        """
        async with self._locks.hold(complaint_id):
            complaint = await self._load(complaint_id)
            now = self._clock()
            if complaint.status != S.SENT_TO_AUTHORITY:
                return None
            if complaint.escalation_deadline is None or complaint.escalation_deadline > now:
                return None
            self._transition(complaint, S.ESCALATED, ESCALATION_MESSAGE, SYSTEM_ACTOR)
            return await self._repository.update(complaint)

    # ------------------------------------------------------------------
    # Read paths
    # ------------------------------------------------------------------

    async def get(self, complaint_id: str, actor: Actor) -> Complaint:
        complaint = await self._load(complaint_id)
        if actor.role == ActorRole.CITIZEN:
            self._require_owner(complaint, actor)
        return complaint

    async def list_for_user(self, actor: Actor) -> list[Complaint]:
        self._require_role(actor, ActorRole.CITIZEN)
        return await self._repository.list(user_id=actor.actor_id)

    async def list_for_admin(self, actor: Actor, department: str | None = None) -> list[Complaint]:
        self._require_role(actor, ActorRole.ADMIN)
        return await self._repository.list(
            statuses=ADMIN_VISIBLE_STATES,
            department=department or actor.department or None,
        )

    async def list_for_authority(self, actor: Actor, department: str | None = None) -> list[Complaint]:
        self._require_role(actor, ActorRole.AUTHORITY)
        return await self._repository.list(
            statuses=AUTHORITY_VISIBLE_STATES,
            department=department or actor.department or None,
        )

    async def list_all(self, actor: Actor) -> list[Complaint]:
        self._require_role(actor, ActorRole.ADMIN)
        return await self._repository.list()
