"""Complaint lifecycle endpoints for Civic Shield API v1.

Every route resolves the caller from the ``X-Actor-*`` headers and
delegates to :class:`LifecycleEngine`.  Domain errors are rendered by
the application-level exception handler, so handlers here stay thin.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from src.middleware.auth import get_actor
from src.models.complaint import Actor, ComplaintSubmission, EvidenceDocument, Location
from src.services.documents import lawsuit_procedure
from src.services.lifecycle import LifecycleEngine

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/complaints", tags=["complaints"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class SubmitComplaintRequest(BaseModel):
    department: str = Field(default="", max_length=200)
    heading: str = Field(default="", max_length=300)
    description: str = Field(default="", max_length=10_000)
    latitude: float | None = None
    longitude: float | None = None
    address: str = Field(default="", max_length=500)
    agreed_to_terms: bool = False
    identity_document: str = Field(default="", max_length=64)
    documents: list[EvidenceDocument] = Field(default_factory=list, max_length=10)

    def to_submission(self) -> ComplaintSubmission:
        location = None
        if self.latitude is not None or self.longitude is not None or self.address:
            location = Location(
                latitude=self.latitude or 0.0,
                longitude=self.longitude or 0.0,
                address=self.address or "Not provided",
            )
        return ComplaintSubmission(
            department=self.department,
            heading=self.heading,
            description=self.description,
            documents=self.documents,
            location=location,
            agreed_to_terms=self.agreed_to_terms,
            identity_document=self.identity_document,
        )


class AdminActionRequest(BaseModel):
    action: str
    remarks: str = Field(default="", max_length=2000)
    target_authority: str | None = Field(default=None, max_length=200)


class AuthorityActionRequest(BaseModel):
    action: str = "respond"
    remarks: str = Field(default="", max_length=5000)


class UserResolveRequest(BaseModel):
    accepted: bool
    feedback: str = Field(default="", max_length=2000)


class ConsentRequest(BaseModel):
    consent: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def get_engine(request: Request) -> LifecycleEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Complaint service not available")
    return engine


def _public(complaints: list) -> list[dict]:
    return [c.to_public_dict() for c in complaints]


# ---------------------------------------------------------------------------
# Collection endpoints
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def submit_complaint(
    body: SubmitComplaintRequest,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
) -> dict:
    """File a complaint.  Analysis continues in the background."""
    complaint = await engine.submit(body.to_submission(), actor)
    return {
        "message": "Complaint submitted successfully",
        "complaint_id": complaint.complaint_id,
        "anonymous_id": complaint.anonymous_id,
        "complaint": complaint.to_public_dict(),
    }


@router.get("/my")
async def my_complaints(
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
) -> list[dict]:
    return _public(await engine.list_for_user(actor))


@router.get("/admin")
async def admin_complaints(
    department: str | None = None,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
) -> list[dict]:
    """Complaints awaiting or past admin review, scoped to a department."""
    return _public(await engine.list_for_admin(actor, department))


@router.get("/authority")
async def authority_complaints(
    department: str | None = None,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
) -> list[dict]:
    return _public(await engine.list_for_authority(actor, department))


@router.get("/all")
async def all_complaints(
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
) -> list[dict]:
    return _public(await engine.list_all(actor))


@router.get("/lawsuit-info")
async def lawsuit_info() -> dict:
    """Steps and portals for taking an escalated complaint to court."""
    return lawsuit_procedure().model_dump()


# ---------------------------------------------------------------------------
# Single-complaint endpoints
# ---------------------------------------------------------------------------


@router.get("/{complaint_id}")
async def get_complaint(
    complaint_id: str,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
) -> dict:
    complaint = await engine.get(complaint_id, actor)
    return complaint.to_public_dict()


@router.put("/{complaint_id}/admin-action")
async def admin_action(
    complaint_id: str,
    body: AdminActionRequest,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
) -> dict:
    complaint = await engine.admin_action(
        complaint_id,
        body.action,
        actor,
        remarks=body.remarks,
        target_authority=body.target_authority,
    )
    return {"message": f"Complaint {complaint.status.value.replace('_', ' ')}", "complaint": complaint.to_public_dict()}


@router.put("/{complaint_id}/request-data")
async def request_user_data(
    complaint_id: str,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
) -> dict:
    complaint = await engine.request_user_data(complaint_id, actor)
    return {"message": "Data request sent to user", "complaint": complaint.to_public_dict()}


@router.put("/{complaint_id}/consent")
async def update_consent(
    complaint_id: str,
    body: ConsentRequest,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
) -> dict:
    complaint = await engine.update_consent(complaint_id, body.consent, actor)
    return {
        "message": f"Data sharing {'accepted' if body.consent else 'declined'}",
        "complaint": complaint.to_public_dict(),
    }


@router.put("/{complaint_id}/authority-action")
async def authority_action(
    complaint_id: str,
    body: AuthorityActionRequest,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
) -> dict:
    complaint = await engine.authority_action(complaint_id, body.action, actor, remarks=body.remarks)
    return {"message": "Response sent to user successfully", "complaint": complaint.to_public_dict()}


@router.put("/{complaint_id}/user-resolve")
async def user_resolve(
    complaint_id: str,
    body: UserResolveRequest,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
) -> dict:
    complaint = await engine.user_resolve(complaint_id, body.accepted, actor, feedback=body.feedback)
    return {
        "message": "Complaint marked as resolved" if body.accepted else "Complaint marked as not resolved",
        "complaint": complaint.to_public_dict(),
    }


@router.post("/{complaint_id}/escalate")
async def escalate(
    complaint_id: str,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
) -> dict:
    """File the legal notice against the responsible authority."""
    complaint = await engine.escalate(complaint_id, actor)
    details = complaint.lawsuit_details
    logger.info("api.complaints.lawsuit_filed", complaint_id=complaint_id, delivered=details.delivered)
    return {
        "message": "Lawsuit filed successfully",
        "complaint": complaint.to_public_dict(),
        "lawsuit_email": {
            "subject": details.notice_subject,
            "body": details.email_content,
            "reference": details.reference,
        },
        "procedure": lawsuit_procedure().model_dump(),
    }
