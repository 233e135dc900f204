"""Formal documents produced during the complaint lifecycle.

* **Government order** -- issued when a complaint is verified.  Gemini
  drafts the text when available; otherwise a fixed template is used.
* **Legal notice** -- sent to the authority when the citizen escalates.
  Always template based.
* **Lawsuit procedure** -- static guidance returned to citizens whose
  complaints have been escalated.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final

import structlog
from pydantic import BaseModel

from src.models.complaint import AIAnalysis, Complaint, GovtOrderDoc
from src.services.errors import ExternalServiceError

if TYPE_CHECKING:
    from src.services.llm import GeminiClient

logger = structlog.get_logger(__name__)

_RULE: Final[str] = "═" * 63


# ---------------------------------------------------------------------------
# Departments
# ---------------------------------------------------------------------------


class Department(BaseModel):
    key: str
    name: str
    description: str


DEPARTMENTS: Final[tuple[Department, ...]] = (
    Department(key="municipal", name="Municipal Corporation", description="Roads, drainage, sanitation, building permits"),
    Department(key="publicworks", name="Public Works Department", description="Highways, bridges, government buildings"),
    Department(key="revenue", name="Revenue Department", description="Land records, property tax, registrations"),
    Department(key="health", name="Health Department", description="Hospitals, public health, disease control"),
    Department(key="education", name="Education Department", description="Schools, colleges, scholarships, exams"),
    Department(key="transport", name="Transport Department", description="Licenses, permits, public transport, traffic"),
    Department(key="police", name="Police Department", description="Law & order, FIR, safety, crime reports"),
    Department(key="electricity", name="Electricity Department", description="Power supply, billing, outages, connections"),
    Department(key="water", name="Water Supply Department", description="Water supply, pipelines, sewage, contamination"),
    Department(key="environment", name="Environment Department", description="Pollution, waste management, green initiatives"),
)


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------


def format_long_date(value: datetime) -> str:
    """``19 October 2026``"""
    return f"{value.day:02d} {value:%B %Y}"


def format_short_date(value: datetime) -> str:
    """``19/10/2026``"""
    return value.strftime("%d/%m/%Y")


# ---------------------------------------------------------------------------
# Government order
# ---------------------------------------------------------------------------

_ORDER_PROMPT: Final[str] = """\
Generate a formal government complaint order document based on the following:

COMPLAINT ID: {complaint_id}
ANONYMOUS ID: {anonymous_id}
Department: {department}
Heading: {heading}
Description: {description}
Location: {location}
Severity: {severity}
Category: {category}

Generate a formal government order document that:
1. Has a proper header with "GOVERNMENT OF INDIA - CIVIC SHIELD COMPLAINT MANAGEMENT SYSTEM"
2. Includes order number, date
3. References the complaint details
4. Orders the relevant department to investigate and take action
5. Sets a timeline for resolution
6. Is professional and formal in tone

Return ONLY the document text, no markdown formatting.\
"""


def order_number(complaint_id: str, now: datetime) -> str:
    """``GO/<complaint id>/<last six digits of epoch milliseconds>``"""
    millis = str(int(now.timestamp() * 1000))
    return f"GO/{complaint_id}/{millis[-6:]}"


def render_order_template(complaint: Complaint, analysis: AIAnalysis, now: datetime) -> GovtOrderDoc:
    number = order_number(complaint.complaint_id, now)
    severity = (analysis.severity.value if analysis.severity else "").upper()
    location = complaint.location.address if complaint.location else "As mentioned in complaint"
    flag_line = f"- Flags: {', '.join(analysis.flags)}\n" if analysis.flags else ""

    content = f"""\
{_RULE}
          GOVERNMENT OF INDIA
          CIVIC SHIELD COMPLAINT MANAGEMENT SYSTEM
          OFFICIAL GOVERNMENT ORDER
{_RULE}

Order No: {number}
Date: {format_long_date(now)}
Reference: Complaint ID {complaint.complaint_id}

TO: The Head of Department
    {complaint.department}

SUBJECT: Official Complaint Regarding - {complaint.heading}

{_RULE}

COMPLAINT DETAILS:

Complainant ID: {complaint.anonymous_id}
Department: {complaint.department}
Category: {analysis.category}
Severity: {severity}
Location: {location}

DESCRIPTION:
{complaint.description}

{_RULE}

AI ANALYSIS REPORT:
- Validity Score: {analysis.score}/100
- Assessment: {analysis.verdict}
- Classification: {analysis.category}
- Priority Level: {severity}
{flag_line}
{_RULE}

ORDER:

In exercise of the powers conferred under the Civic Shield Complaint
Management System, the {complaint.department} is hereby directed to:

1. Acknowledge receipt of this complaint within 24 hours
2. Initiate investigation into the matter immediately
3. Submit a progress report within 3 working days
4. Resolve the complaint within 5-6 working days from the date of this order
5. File a resolution report upon completion

Non-compliance with the above directives may result in escalation
to higher authorities and potential legal proceedings.

{_RULE}

This is a system-generated document.
Civic Shield Complaint Management System
Government of India

{_RULE}"""

    return GovtOrderDoc(order_number=number, content=content, generated_at=now, source="template")


class OrderGenerator:
    """Drafts government orders, preferring Gemini over the template.

    Parameters
    ----------
    client:
        Optional Gemini client.  ``None`` or an unavailable client means
        every order comes from :func:`render_order_template`.
    """

    __slots__ = ("_client",)

    def __init__(self, client: GeminiClient | None = None) -> None:
        self._client = client

    async def generate(self, complaint: Complaint, analysis: AIAnalysis, now: datetime | None = None) -> GovtOrderDoc:
        now = now or datetime.now(UTC)
        if self._client is None or not self._client.available:
            return render_order_template(complaint, analysis, now)

        prompt = _ORDER_PROMPT.format(
            complaint_id=complaint.complaint_id,
            anonymous_id=complaint.anonymous_id,
            department=complaint.department,
            heading=complaint.heading,
            description=complaint.description,
            location=complaint.location.address if complaint.location else "Not provided",
            severity=analysis.severity.value if analysis.severity else "",
            category=analysis.category,
        )
        try:
            text = await self._client.generate_text(prompt)
        except ExternalServiceError:
            logger.warning("documents.order_fallback", complaint_id=complaint.complaint_id, exc_info=True)
            return render_order_template(complaint, analysis, now)

        return GovtOrderDoc(
            order_number=order_number(complaint.complaint_id, now),
            content=text.strip(),
            generated_at=now,
            source="gemini",
        )


# ---------------------------------------------------------------------------
# Legal notice
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LegalNotice:
    subject: str
    body: str
    reference: str


def build_legal_notice(complaint: Complaint, now: datetime) -> LegalNotice:
    """Render the non-action legal notice for an escalated complaint."""
    deadline = (
        format_short_date(complaint.escalation_deadline)
        if complaint.escalation_deadline is not None
        else "Expired"
    )
    body = f"""\
LEGAL NOTICE

Date: {format_long_date(now)}

To,
The Head of Department,
{complaint.department}

Subject: Legal Notice regarding non-action on Complaint ID: {complaint.complaint_id}

Dear Sir/Madam,

This is to bring to your notice that a formal complaint (ID: {complaint.complaint_id}) was registered \
through the Civic Shield Complaint Management System regarding "{complaint.heading}".

Despite the complaint being verified, approved by the administrative officer, and forwarded to your \
department for resolution, NO action has been taken within the stipulated time frame of 5-6 working days.

COMPLAINT DETAILS:
- Complaint ID: {complaint.complaint_id}
- Department: {complaint.department}
- Filed On: {format_short_date(complaint.created_at)}
- Deadline: {deadline}
- Status: Escalated due to non-response

As per the Right to Information Act 2005, Public Grievance Redressal mechanism, and various State \
Grievance Redressal Acts, every citizen has the right to timely redressal of their grievances.

The failure to act on this complaint constitutes:
1. Violation of citizen's right to grievance redressal
2. Negligence of official duty
3. Potential grounds for legal action under Section 4 of the RTI Act

This notice serves as a formal warning. If no satisfactory response is received within 15 days from \
the date of this notice, the complainant reserves the right to:
1. File a formal complaint with the State Human Rights Commission
2. Approach the High Court under Article 226 of the Constitution
3. File an RTI application seeking reasons for non-action
4. Report the matter to the Anti-Corruption Bureau

We strongly advise immediate action on the said complaint.

Yours faithfully,
[Through Civic Shield Complaint Management System]
Complaint Reference: {complaint.complaint_id}"""

    return LegalNotice(
        subject=f"Legal Notice - Non-Action on Complaint {complaint.complaint_id}",
        body=body,
        reference=complaint.complaint_id,
    )


# ---------------------------------------------------------------------------
# Lawsuit procedure
# ---------------------------------------------------------------------------


class ProcedureStep(BaseModel):
    step: int
    title: str
    description: str
    link: str | None = None


class LegalPlatform(BaseModel):
    name: str
    url: str
    description: str


class LawsuitProcedure(BaseModel):
    steps: list[ProcedureStep]
    platforms: list[LegalPlatform]


_PROCEDURE: Final[LawsuitProcedure] = LawsuitProcedure(
    steps=[
        ProcedureStep(
            step=1,
            title="Document Everything",
            description="Save all complaint details, tracking history, government order, and escalation notifications as evidence.",
        ),
        ProcedureStep(
            step=2,
            title="Send Legal Notice",
            description="A legal notice will be sent to the concerned authority via email through our platform. Keep a copy for your records.",
        ),
        ProcedureStep(
            step=3,
            title="Wait for Response",
            description="Allow 15 days for the authority to respond to the legal notice.",
        ),
        ProcedureStep(
            step=4,
            title="File RTI Application",
            description="File an RTI application at rtionline.gov.in seeking reasons for non-action on your complaint.",
            link="https://rtionline.gov.in",
        ),
        ProcedureStep(
            step=5,
            title="Approach Consumer Forum / Lokpal",
            description="File a complaint with the State Consumer Forum or Lokpal portal for grievance redressal.",
            link="https://lokpal.gov.in",
        ),
        ProcedureStep(
            step=6,
            title="File Case in Court",
            description="If all else fails, file a case through the eFiling portal of Indian Courts.",
            link="https://efiling.ecourts.gov.in",
        ),
        ProcedureStep(
            step=7,
            title="Seek Legal Aid",
            description="If you need free legal assistance, contact the National Legal Services Authority (NALSA).",
            link="https://nalsa.gov.in",
        ),
    ],
    platforms=[
        LegalPlatform(name="eFiling - Indian Courts", url="https://efiling.ecourts.gov.in", description="File cases electronically in Indian courts"),
        LegalPlatform(name="RTI Online", url="https://rtionline.gov.in", description="File Right to Information applications"),
        LegalPlatform(name="CPGRAMS", url="https://pgportal.gov.in", description="Centralized Public Grievance Portal"),
        LegalPlatform(name="Lokpal Portal", url="https://lokpal.gov.in", description="Anti-corruption ombudsman"),
        LegalPlatform(name="NALSA", url="https://nalsa.gov.in", description="Free legal aid services"),
        LegalPlatform(name="National Consumer Helpline", url="https://consumerhelpline.gov.in", description="Consumer complaint portal"),
    ],
)


def lawsuit_procedure() -> LawsuitProcedure:
    return _PROCEDURE.model_copy(deep=True)
