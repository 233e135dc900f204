from __future__ import annotations

from enum import StrEnum


class ComplaintStatus(StrEnum):
    __slots__ = ()

    SUBMITTED = "submitted"
    AI_REVIEW = "ai_review"
    AI_REJECTED = "ai_rejected"
    VERIFIED = "verified"
    SENT_TO_ADMIN = "sent_to_admin"
    ADMIN_APPROVED = "admin_approved"
    ADMIN_REJECTED = "admin_rejected"
    SENT_TO_AUTHORITY = "sent_to_authority"
    REPLIED = "replied"                        # authority sent a response
    USER_RESOLVED = "user_resolved"
    USER_NOT_RESOLVED = "user_not_resolved"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    LAWSUIT_FILED = "lawsuit_filed"


class Severity(StrEnum):
    __slots__ = ()

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ActorRole(StrEnum):
    __slots__ = ()

    CITIZEN = "citizen"
    ADMIN = "admin"
    AUTHORITY = "authority"
    SYSTEM = "system"


class AdminDecision(StrEnum):
    __slots__ = ()

    APPROVE = "approve"
    REJECT = "reject"


class AuthorityDecision(StrEnum):
    __slots__ = ()

    RESPOND = "respond"
