"""Outbound notifications for Civic Shield.

The lifecycle engine depends only on :class:`NotificationGateway`.  The
bundled :class:`LoggingEmailGateway` simulates delivery: it logs every
message and keeps a bounded outbox so operators (and tests) can see what
would have been sent.  A real SMTP or provider-backed gateway can be
dropped in without touching the engine.

Two kinds of message go out:

* ``send_email`` -- legal notices addressed to an authority
* ``notify_user`` -- short in-app notices to the citizen, e.g. when the
  scheduler escalates their complaint
"""

from __future__ import annotations

from collections import deque
from datetime import UTC, datetime
from typing import Final, Protocol, runtime_checkable
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

_DEFAULT_OUTBOX_SIZE: Final[int] = 500


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class EmailReceipt(BaseModel):
    """Delivery receipt returned by :meth:`NotificationGateway.send_email`."""

    success: bool
    sent_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    message_id: str = Field(default_factory=lambda: uuid4().hex)
    to: str = ""
    subject: str = ""
    reference: str = ""
    detail: str = ""


class UserNotice(BaseModel):
    user_id: str
    message: str
    kind: str = "info"  # "info", "warning"
    sent_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


# ---------------------------------------------------------------------------
# Gateway protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class NotificationGateway(Protocol):
    async def send_email(self, to: str, subject: str, body: str, reference: str = "") -> EmailReceipt: ...

    async def notify_user(self, user_id: str, message: str, kind: str = "info") -> UserNotice: ...


# ---------------------------------------------------------------------------
# Simulated gateway
# ---------------------------------------------------------------------------


class LoggingEmailGateway:
    """Simulated gateway: logs instead of sending."""

    __slots__ = ("_notices", "_outbox")

    def __init__(self, outbox_size: int = _DEFAULT_OUTBOX_SIZE) -> None:
        self._outbox: deque[EmailReceipt] = deque(maxlen=outbox_size)
        self._notices: deque[UserNotice] = deque(maxlen=outbox_size)

    async def send_email(self, to: str, subject: str, body: str, reference: str = "") -> EmailReceipt:
        receipt = EmailReceipt(
            success=True,
            to=to or "Concerned Authority",
            subject=subject,
            reference=reference or "N/A",
            detail="Email sent successfully (simulated)",
        )
        self._outbox.append(receipt)
        logger.info(
            "notifications.email_sent",
            to=receipt.to,
            subject=subject,
            reference=receipt.reference,
            body_length=len(body),
            simulated=True,
        )
        return receipt

    async def notify_user(self, user_id: str, message: str, kind: str = "info") -> UserNotice:
        notice = UserNotice(user_id=user_id, message=message, kind=kind)
        self._notices.append(notice)
        logger.info("notifications.user_notified", user_id=user_id, kind=kind)
        return notice

    @property
    def outbox(self) -> list[EmailReceipt]:
        return list(self._outbox)

    @property
    def notices(self) -> list[UserNotice]:
        return list(self._notices)
