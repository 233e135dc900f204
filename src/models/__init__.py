from src.models.complaint import (
    Actor,
    AIAnalysis,
    Complaint,
    ComplaintSubmission,
    EvidenceDocument,
    GovtOrderDoc,
    LawsuitDetails,
    Location,
    StatusHistoryEntry,
    UserResolution,
)
from src.models.enums import (
    ActorRole,
    AdminDecision,
    AuthorityDecision,
    ComplaintStatus,
    Severity,
)

__all__ = [
    "AIAnalysis",
    "Actor",
    "ActorRole",
    "AdminDecision",
    "AuthorityDecision",
    "Complaint",
    "ComplaintStatus",
    "ComplaintSubmission",
    "EvidenceDocument",
    "GovtOrderDoc",
    "LawsuitDetails",
    "Location",
    "Severity",
    "StatusHistoryEntry",
    "UserResolution",
]
