"""Shared fixtures for the Civic Shield test suite.

Everything runs in-process against the in-memory repository and the
logging email gateway; no test needs network access, Redis or Gemini.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from src.models.complaint import Actor, Complaint, ComplaintSubmission, Location
from src.models.enums import ActorRole
from src.services.lifecycle import LifecycleEngine
from src.services.notifications import LoggingEmailGateway
from src.services.repository import InMemoryComplaintRepository
from src.services.verdict import rule_based_analysis

# Friday morning; six business days later is Monday 2026-10-26.
FRIDAY = datetime(2026, 10, 16, 10, 0, tzinfo=UTC)

STREETLIGHT_HEADING = "Broken streetlight on Main Rd"
STREETLIGHT_DESCRIPTION = (
    "The streetlight near the bus stop on Main Road has been dark for three weeks. "
    "This is urgent because the stretch is used by school children and elderly residents "
    "after sunset. Loose wires hang from the pole and create an electric hazard for "
    "pedestrians during rain. Residents have complained to the ward office twice without "
    "any response. Two scooter riders slipped near the pole last week because the road was "
    "completely dark. Shopkeepers close early now and the area feels unsafe for women walking "
    "home from work. We request the department to repair the light, secure the exposed wiring "
    "and inspect the other poles along the road. The pole number is painted near the base and "
    "the nearest landmark is the government dispensary. Photographs of the hanging wires and "
    "the dark road at night are attached with this complaint for reference."
)


class FixedClock:
    """Controllable wall clock for deadline-sensitive tests."""

    def __init__(self, start: datetime = FRIDAY) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> None:
        self.current += timedelta(**delta)


def make_submission(**overrides) -> ComplaintSubmission:
    fields = {
        "department": "Municipal Corporation",
        "heading": STREETLIGHT_HEADING,
        "description": STREETLIGHT_DESCRIPTION,
        "location": Location(latitude=28.61, longitude=77.21, address="Main Road, Ward 12"),
        "agreed_to_terms": True,
        "identity_document": "ABC1234xyz9",
    }
    fields.update(overrides)
    return ComplaintSubmission(**fields)


class Workflow:
    """Drives complaints into a given status through the engine itself."""

    def __init__(self, engine: LifecycleEngine, citizen: Actor, admin: Actor) -> None:
        self.engine = engine
        self.citizen = citizen
        self.admin = admin

    async def submit(self, **overrides) -> Complaint:
        return await self.engine.submit(make_submission(**overrides), self.citizen)

    async def to_admin(self, **overrides) -> Complaint:
        complaint = await self.submit(**overrides)
        reviewed = await self.engine.begin_review(complaint.complaint_id)
        analysis = rule_based_analysis(reviewed, now=self.engine.now())
        return await self.engine.complete_review(complaint.complaint_id, analysis)

    async def to_authority(self, target: str = "Municipal", **overrides) -> Complaint:
        complaint = await self.to_admin(**overrides)
        return await self.engine.admin_action(
            complaint.complaint_id, "approve", self.admin, target_authority=target
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def repository() -> InMemoryComplaintRepository:
    return InMemoryComplaintRepository()


@pytest.fixture
def notifier() -> LoggingEmailGateway:
    return LoggingEmailGateway()


@pytest.fixture
def engine(repository, notifier, clock) -> LifecycleEngine:
    return LifecycleEngine(repository, notifier, clock=clock)


@pytest.fixture
def citizen() -> Actor:
    return Actor(actor_id="citizen-7781", role=ActorRole.CITIZEN, name="Ravi")


@pytest.fixture
def other_citizen() -> Actor:
    return Actor(actor_id="citizen-0042", role=ActorRole.CITIZEN)


@pytest.fixture
def admin() -> Actor:
    return Actor(actor_id="admin-1", role=ActorRole.ADMIN, name="Asha Verma", department="Municipal")


@pytest.fixture
def authority() -> Actor:
    return Actor(actor_id="auth-9", role=ActorRole.AUTHORITY, name="Ward Engineer", department="Municipal")


@pytest.fixture
def workflow(engine, citizen, admin) -> Workflow:
    return Workflow(engine, citizen, admin)
