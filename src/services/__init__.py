"""Civic Shield service layer -- lifecycle engine, storage, corpus index,
verdicts, documents, notifications and escalation.

Only dependency-light modules are exported eagerly.  The Gemini client,
text extraction (OCR/PDF) and the Redis repository are imported from
their own modules so that ``import src.services`` succeeds without the
optional native pieces (tesseract, a Redis server) being present.
"""

from __future__ import annotations

from src.services.errors import (
    AuthorizationError,
    CivicShieldError,
    ConflictError,
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from src.services.locks import KeyedLock
from src.services.notifications import LoggingEmailGateway, NotificationGateway
from src.services.repository import ComplaintRepository, InMemoryComplaintRepository
from src.services.state_machine import can_transition, ensure_transition, is_terminal

__all__ = [
    "AuthorizationError",
    "CivicShieldError",
    "ComplaintRepository",
    "ConflictError",
    "ExternalServiceError",
    "InMemoryComplaintRepository",
    "InvalidTransitionError",
    "KeyedLock",
    "LoggingEmailGateway",
    "NotFoundError",
    "NotificationGateway",
    "RateLimitError",
    "ValidationError",
    "can_transition",
    "ensure_transition",
    "is_terminal",
]
