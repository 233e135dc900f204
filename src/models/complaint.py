"""Complaint aggregate and its embedded value objects.

The :class:`Complaint` is the only record the lifecycle engine mutates.
Its ``status_history`` is an append-only audit trail: entries are added
through :meth:`Complaint.record` and never edited or reordered.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from src.models.enums import ActorRole, ComplaintStatus, Severity


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Actor(BaseModel):
    """Identity of whoever performs a lifecycle operation.

    Authentication happens upstream; the engine only trusts ``role`` and
    ``actor_id`` for authorisation and uses ``name`` for the audit trail.
    """

    model_config = {"frozen": True}

    actor_id: str
    role: ActorRole
    name: str = ""
    department: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.actor_id

    @classmethod
    def system(cls, name: str = "system") -> Actor:
        return cls(actor_id=name, role=ActorRole.SYSTEM, name=name)


class EvidenceDocument(BaseModel):
    filename: str
    original_name: str = ""
    path: str = ""
    mimetype: str = "application/octet-stream"
    size: int = 0


class Location(BaseModel):
    latitude: float = 0.0
    longitude: float = 0.0
    address: str = "Not provided"


class StatusHistoryEntry(BaseModel):
    model_config = {"frozen": True}

    status: ComplaintStatus
    message: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
    updated_by: str = "system"


class AIAnalysis(BaseModel):
    is_valid: bool | None = None
    score: int = Field(default=0, ge=0, le=100)
    verdict: str = ""
    flags: list[str] = Field(default_factory=list)
    category: str = ""
    severity: Severity | None = None
    is_duplicate: bool = False
    duplicate_of: str | None = None
    source: str = "rules"  # "gemini" or "rules"
    analyzed_at: datetime | None = None


class GovtOrderDoc(BaseModel):
    order_number: str = ""
    content: str = ""
    generated_at: datetime = Field(default_factory=_utcnow)
    source: str = "template"


class LawsuitDetails(BaseModel):
    filed: bool = False
    filed_at: datetime | None = None
    notice_subject: str = ""
    email_content: str = ""
    reference: str = ""
    delivered: bool = False


class UserResolution(BaseModel):
    accepted: bool | None = None
    feedback: str = ""
    resolved_at: datetime | None = None


class Complaint(BaseModel):
    """A citizen grievance moving through the approval workflow."""

    complaint_id: str
    user_id: str
    anonymous_id: str

    department: str
    heading: str
    description: str
    documents: list[EvidenceDocument] = Field(default_factory=list)
    location: Location | None = None
    agreed_to_terms: bool = False

    status: ComplaintStatus = ComplaintStatus.SUBMITTED
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)

    ai_analysis: AIAnalysis = Field(default_factory=AIAnalysis)
    embedding: list[float] | None = None
    govt_order_doc: GovtOrderDoc | None = None
    lawsuit_details: LawsuitDetails = Field(default_factory=LawsuitDetails)

    admin_id: str | None = None
    admin_remarks: str = ""
    target_authority: str | None = None
    authority_id: str | None = None
    authority_response: str = ""
    user_resolution: UserResolution = Field(default_factory=UserResolution)
    user_consent_for_data: bool | None = None
    data_requested_by_admin: bool = False

    escalation_deadline: datetime | None = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    version: int = 0

    def record(
        self,
        status: ComplaintStatus,
        message: str,
        updated_by: str,
        *,
        at: datetime | None = None,
    ) -> StatusHistoryEntry:
        """Set ``status`` and append the matching history entry.

        Timestamps never go backwards within one record, even when the
        caller's clock does.
        """
        timestamp = at or _utcnow()
        if self.status_history and timestamp < self.status_history[-1].timestamp:
            timestamp = self.status_history[-1].timestamp
        entry = StatusHistoryEntry(
            status=status,
            message=message,
            timestamp=timestamp,
            updated_by=updated_by,
        )
        self.status = status
        self.status_history.append(entry)
        self.updated_at = timestamp
        return entry

    def annotate(self, message: str, updated_by: str, *, at: datetime | None = None) -> StatusHistoryEntry:
        """Append a side-annotation entry tagged with the current status."""
        return self.record(self.status, message, updated_by, at=at)

    def is_owned_by(self, actor: Actor) -> bool:
        return actor.role == ActorRole.CITIZEN and actor.actor_id == self.user_id

    @property
    def combined_text(self) -> str:
        """Corpus text used for IDF statistics and embedding backfill."""
        return f"{self.department} {self.heading} {self.description}"

    def to_public_dict(self) -> dict[str, Any]:
        """Serialise for API responses; the embedding and owner id are withheld."""
        return self.model_dump(mode="json", exclude={"embedding", "user_id"})


class ComplaintSubmission(BaseModel):
    """Input accepted by :meth:`LifecycleEngine.submit`."""

    department: str = ""
    heading: str = ""
    description: str = ""
    documents: list[EvidenceDocument] = Field(default_factory=list)
    location: Location | None = None
    agreed_to_terms: bool = False
    identity_document: str = Field(default="", description="Voter ID or similar; only its last 4 chars are kept.")
