"""Deterministic complaint verdicts.

:func:`rule_based_analysis` is the offline fallback used whenever the
Gemini verdict is unavailable, rate limited or malformed.  Its scoring
is fixed so that results are reproducible in tests.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING, Final

from src.models.complaint import AIAnalysis
from src.models.enums import Severity

if TYPE_CHECKING:
    from src.models.complaint import Complaint
    from src.services.llm import VerdictResponse

# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

_BASE_SCORE: Final[int] = 70
_MIN_DESCRIPTION_LENGTH: Final[int] = 20
_MIN_HEADING_LENGTH: Final[int] = 5
_VALIDITY_THRESHOLD: Final[int] = 40
_DUPLICATE_SCORE_CAP: Final[int] = 30

_SPAM: Final[re.Pattern[str]] = re.compile(r"(.)\1{5,}|test|asdf|qwerty|xxx|spam|fake", re.IGNORECASE)
_CRITICAL: Final[re.Pattern[str]] = re.compile(
    r"emergency|danger|life.?threatening|death|accident|collapse|fire", re.IGNORECASE
)
_HIGH: Final[re.Pattern[str]] = re.compile(
    r"urgent|immediate|health.?hazard|flooding|sewage|electric", re.IGNORECASE
)

VALID_VERDICT: Final[str] = "Complaint appears valid and has been verified for processing."
FLAGGED_VERDICT: Final[str] = "Complaint flagged for review due to quality issues."


def rule_based_analysis(complaint: Complaint, *, now: datetime | None = None) -> AIAnalysis:
    """Score a complaint with keyword and length rules.

    Starts at 70 and adjusts for short text (-30 / -20), spam (-40),
    and critical (+10) or high (+5) severity keywords in the
    description.  A short description or spam marks the complaint
    invalid outright; otherwise it is valid when the score is >= 40.
    """
    description = complaint.description or ""
    heading = complaint.heading or ""
    flags: list[str] = []
    score = _BASE_SCORE
    valid = True

    if len(description) < _MIN_DESCRIPTION_LENGTH:
        flags.append("Description too short")
        score -= 30
        valid = False

    if len(heading) < _MIN_HEADING_LENGTH:
        flags.append("Heading too short")
        score -= 20

    if _SPAM.search(description) or _SPAM.search(heading):
        flags.append("Potential spam content detected")
        score -= 40
        valid = False

    if _CRITICAL.search(description):
        severity = Severity.CRITICAL
        score += 10
    elif _HIGH.search(description):
        severity = Severity.HIGH
        score += 5
    else:
        severity = Severity.MEDIUM

    score = max(0, min(100, score))

    return AIAnalysis(
        is_valid=valid and score >= _VALIDITY_THRESHOLD,
        score=score,
        verdict=VALID_VERDICT if valid else FLAGGED_VERDICT,
        flags=flags,
        category=complaint.department,
        severity=severity,
        source="rules",
        analyzed_at=now,
    )


def from_verdict_response(
    response: VerdictResponse,
    complaint: Complaint,
    *,
    now: datetime | None = None,
) -> AIAnalysis:
    """Convert a Gemini verdict into the stored analysis shape."""
    analysis = AIAnalysis(
        is_valid=response.is_valid,
        score=response.score,
        verdict=response.verdict,
        flags=list(response.flags),
        category=response.category or complaint.department,
        severity=response.severity,
        source="gemini",
        analyzed_at=now,
    )
    if response.is_duplicate:
        apply_duplicate_verdict(analysis, response.duplicate_of)
    return analysis


def apply_duplicate_verdict(analysis: AIAnalysis, duplicate_of: str | None) -> AIAnalysis:
    """Force a duplicate to invalid with a capped score.

    Overrides whatever validity the verdict itself claimed.
    """
    analysis.is_valid = False
    analysis.is_duplicate = True
    analysis.duplicate_of = duplicate_of
    analysis.score = min(analysis.score, _DUPLICATE_SCORE_CAP)
    target = duplicate_of or "an existing complaint"
    analysis.flags.append(f"Duplicate of {target}")
    return analysis
