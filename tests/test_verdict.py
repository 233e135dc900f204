"""Tests for the deterministic rule-based verdict and the Gemini verdict mapping."""

from __future__ import annotations

from datetime import UTC, datetime

from src.models.complaint import AIAnalysis, Complaint
from src.models.enums import Severity
from src.services.llm import VerdictResponse
from src.services.verdict import (
    FLAGGED_VERDICT,
    VALID_VERDICT,
    apply_duplicate_verdict,
    from_verdict_response,
    rule_based_analysis,
)

NOW = datetime(2026, 10, 16, 10, 0, tzinfo=UTC)

EMERGENCY_TEXT = (
    "There is an emergency at the corner of Park Street where a transformer is sparking "
    "near the school gate and children walk past it every single morning on their way to "
    "class. Please send a crew to isolate the supply today before someone gets hurt."
)


def _complaint(heading: str = "Water pipeline burst", description: str = "", department: str = "Water") -> Complaint:
    return Complaint(
        complaint_id="CS-000010",
        user_id="citizen-1",
        anonymous_id="Unknown-0001",
        department=department,
        heading=heading,
        description=description,
    )


class TestRuleBasedAnalysis:
    def test_short_description_is_invalid(self) -> None:
        result = rule_based_analysis(_complaint("Pothole near market", "Road broken"), now=NOW)
        assert result.score == 40
        assert result.is_valid is False
        assert result.flags == ["Description too short"]
        assert result.verdict == FLAGGED_VERDICT
        assert result.severity == Severity.MEDIUM

    def test_emergency_keyword_is_critical(self) -> None:
        result = rule_based_analysis(_complaint("Sparking transformer", EMERGENCY_TEXT), now=NOW)
        assert result.score == 80
        assert result.severity == Severity.CRITICAL
        assert result.is_valid is True
        assert result.flags == []
        assert result.verdict == VALID_VERDICT

    def test_high_severity_keyword(self) -> None:
        text = "Sewage is overflowing onto the main road outside the primary school every evening."
        result = rule_based_analysis(_complaint("Sewage overflow", text), now=NOW)
        assert result.severity == Severity.HIGH
        assert result.score == 75

    def test_spam_marks_invalid(self) -> None:
        text = "This is a test complaint about the road outside the market area."
        result = rule_based_analysis(_complaint("Road complaint", text), now=NOW)
        assert result.is_valid is False
        assert "Potential spam content detected" in result.flags
        assert result.score == 30

    def test_repeated_characters_are_spam(self) -> None:
        text = "The drain is blocked aaaaaaa near the bus depot and smells terrible."
        result = rule_based_analysis(_complaint("Blocked drain", text), now=NOW)
        assert "Potential spam content detected" in result.flags

    def test_short_heading_only_costs_points(self) -> None:
        text = "Garbage has not been collected from the colony for eleven days now."
        result = rule_based_analysis(_complaint("Bin", text), now=NOW)
        assert result.flags == ["Heading too short"]
        assert result.score == 50
        assert result.is_valid is True

    def test_score_is_clamped(self) -> None:
        result = rule_based_analysis(_complaint("Bad", "spam"), now=NOW)
        assert result.score == 0
        assert result.is_valid is False

    def test_metadata(self) -> None:
        result = rule_based_analysis(_complaint("Sparking transformer", EMERGENCY_TEXT, "Electricity"), now=NOW)
        assert result.source == "rules"
        assert result.category == "Electricity"
        assert result.analyzed_at == NOW


class TestVerdictMapping:
    def test_gemini_verdict_is_copied(self) -> None:
        response = VerdictResponse(
            isValid=True, score=88, verdict="Genuine", flags=[], category="Roads", severity="HIGH"
        )
        result = from_verdict_response(response, _complaint(), now=NOW)
        assert result.source == "gemini"
        assert result.is_valid is True
        assert result.score == 88
        assert result.severity == Severity.HIGH
        assert result.category == "Roads"

    def test_duplicate_overrides_validity(self) -> None:
        response = VerdictResponse(
            isValid=True, score=90, verdict="Same issue", isDuplicate=True, duplicateOf="CS-000001"
        )
        result = from_verdict_response(response, _complaint(), now=NOW)
        assert result.is_valid is False
        assert result.is_duplicate is True
        assert result.duplicate_of == "CS-000001"
        assert result.score == 30
        assert "Duplicate of CS-000001" in result.flags

    def test_duplicate_keeps_lower_score(self) -> None:
        analysis = apply_duplicate_verdict(AIAnalysis(is_valid=True, score=12), None)
        assert analysis.score == 12
        assert analysis.flags == ["Duplicate of an existing complaint"]

    def test_missing_category_falls_back_to_department(self) -> None:
        response = VerdictResponse(isValid=False, score=20)
        result = from_verdict_response(response, _complaint(department="Transport"), now=NOW)
        assert result.category == "Transport"
