"""Closed transition table for the complaint workflow.

Every status change in the system goes through :func:`ensure_transition`,
so a complaint can only ever hold a status reachable through this table.
Side annotations (data requests, consent updates) do not change status
and therefore bypass it.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Final

from src.models.enums import ComplaintStatus as S
from src.services.errors import InvalidTransitionError

TRANSITIONS: Final = MappingProxyType({
    S.SUBMITTED: frozenset({S.AI_REVIEW}),
    S.AI_REVIEW: frozenset({S.VERIFIED, S.AI_REJECTED}),
    S.VERIFIED: frozenset({S.SENT_TO_ADMIN}),
    S.SENT_TO_ADMIN: frozenset({S.ADMIN_APPROVED, S.ADMIN_REJECTED}),
    S.ADMIN_APPROVED: frozenset({S.SENT_TO_AUTHORITY}),
    S.SENT_TO_AUTHORITY: frozenset({S.REPLIED, S.ESCALATED, S.LAWSUIT_FILED}),
    S.REPLIED: frozenset({S.USER_RESOLVED, S.USER_NOT_RESOLVED}),
    S.USER_NOT_RESOLVED: frozenset({S.REPLIED, S.LAWSUIT_FILED}),
    S.ESCALATED: frozenset({S.LAWSUIT_FILED}),
    S.AI_REJECTED: frozenset(),
    S.ADMIN_REJECTED: frozenset(),
    S.USER_RESOLVED: frozenset(),
    S.RESOLVED: frozenset(),
    S.LAWSUIT_FILED: frozenset(),
})

TERMINAL_STATES: Final[frozenset[S]] = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)

# Statuses whose analysis has not finished; excluded from similarity search.
PRE_REVIEW_STATES: Final[frozenset[S]] = frozenset({S.SUBMITTED, S.AI_REVIEW, S.AI_REJECTED})

# Statuses in which the authority still owes the citizen a reply.
AWAITING_AUTHORITY_STATES: Final[frozenset[S]] = frozenset({S.SENT_TO_AUTHORITY, S.USER_NOT_RESOLVED})


def can_transition(current: S, target: S) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: S, target: S, complaint_id: str = "") -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value, complaint_id)


def is_terminal(status: S) -> bool:
    return status in TERMINAL_STATES
