"""Tests for the in-memory complaint repository and the keyed lock registry."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from src.models.complaint import Complaint
from src.models.enums import ComplaintStatus
from src.services.errors import ConflictError, NotFoundError
from src.services.locks import KeyedLock
from src.services.repository import (
    InMemoryComplaintRepository,
    format_complaint_id,
    parse_complaint_sequence,
)

BASE = datetime(2026, 10, 1, 9, 0, tzinfo=UTC)


def _complaint(seq: int, **overrides) -> Complaint:
    fields = {
        "complaint_id": format_complaint_id(seq),
        "user_id": "citizen-1",
        "anonymous_id": "Unknown-0001",
        "department": "Municipal Corporation",
        "heading": f"Complaint {seq}",
        "description": "Drainage blocked near the vegetable market.",
        "created_at": BASE + timedelta(minutes=seq),
    }
    fields.update(overrides)
    return Complaint(**fields)


class TestComplaintIds:
    def test_format(self) -> None:
        assert format_complaint_id(7) == "CS-000007"

    def test_parse(self) -> None:
        assert parse_complaint_sequence("CS-000123") == 123
        assert parse_complaint_sequence("CMP-000123") is None
        assert parse_complaint_sequence("CS-12a") is None
        assert parse_complaint_sequence("garbage") is None


class TestInMemoryRepository:
    async def test_create_and_get(self) -> None:
        repo = InMemoryComplaintRepository()
        created = await repo.create(_complaint(1))
        assert created.version == 1
        fetched = await repo.get("CS-000001")
        assert fetched.heading == "Complaint 1"
        assert await repo.get("CS-000099") is None

    async def test_duplicate_create(self) -> None:
        repo = InMemoryComplaintRepository()
        await repo.create(_complaint(1))
        with pytest.raises(ConflictError):
            await repo.create(_complaint(1))

    async def test_reads_are_copies(self) -> None:
        repo = InMemoryComplaintRepository([_complaint(1)])
        fetched = await repo.get("CS-000001")
        fetched.heading = "changed"
        assert (await repo.get("CS-000001")).heading == "Complaint 1"

    async def test_update_bumps_version(self) -> None:
        repo = InMemoryComplaintRepository()
        await repo.create(_complaint(1))
        fetched = await repo.get("CS-000001")
        fetched.admin_remarks = "seen"
        saved = await repo.update(fetched)
        assert saved.version == 2
        assert (await repo.get("CS-000001")).admin_remarks == "seen"

    async def test_update_keeps_caller_timestamp(self) -> None:
        repo = InMemoryComplaintRepository()
        await repo.create(_complaint(1))
        fetched = await repo.get("CS-000001")
        stamped = BASE + timedelta(days=3)
        fetched.updated_at = stamped
        saved = await repo.update(fetched)
        assert saved.updated_at == stamped
        assert (await repo.get("CS-000001")).updated_at == stamped

    async def test_stale_update_conflicts(self) -> None:
        repo = InMemoryComplaintRepository()
        await repo.create(_complaint(1))
        a = await repo.get("CS-000001")
        b = await repo.get("CS-000001")
        await repo.update(a)
        with pytest.raises(ConflictError):
            await repo.update(b)

    async def test_update_missing(self) -> None:
        with pytest.raises(NotFoundError):
            await InMemoryComplaintRepository().update(_complaint(5))

    async def test_list_filters_and_orders(self) -> None:
        repo = InMemoryComplaintRepository([
            _complaint(1, status=ComplaintStatus.SENT_TO_ADMIN),
            _complaint(2, status=ComplaintStatus.SENT_TO_ADMIN, department="Health Department"),
            _complaint(3, status=ComplaintStatus.SUBMITTED, user_id="citizen-2"),
        ])
        assert [c.complaint_id for c in await repo.list()] == ["CS-000003", "CS-000002", "CS-000001"]
        admin_queue = await repo.list(statuses=[ComplaintStatus.SENT_TO_ADMIN], department="municipal")
        assert [c.complaint_id for c in admin_queue] == ["CS-000001"]
        assert [c.complaint_id for c in await repo.list(user_id="citizen-2")] == ["CS-000003"]

    async def test_find_missing_embeddings(self) -> None:
        repo = InMemoryComplaintRepository([
            _complaint(1),
            _complaint(2, embedding=[0.1]),
            _complaint(3),
        ])
        missing = await repo.find_missing_embeddings(limit=1)
        assert [c.complaint_id for c in missing] == ["CS-000001"]

    async def test_counter_continues_from_existing_ids(self) -> None:
        repo = InMemoryComplaintRepository([_complaint(4), _complaint(11)])
        assert await repo.migrate_counter() == 11
        assert await repo.next_sequence() == 12
        assert await repo.migrate_counter() == 12

    async def test_concurrent_sequences_are_unique(self) -> None:
        repo = InMemoryComplaintRepository()
        sequences = await asyncio.gather(*(repo.next_sequence() for _ in range(50)))
        assert sorted(sequences) == list(range(1, 51))


class TestKeyedLock:
    async def test_serialises_same_key(self) -> None:
        locks = KeyedLock()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("CS-000001"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_different_keys_do_not_block(self) -> None:
        locks = KeyedLock()
        async with locks.hold("CS-000001"):
            assert locks.is_locked("CS-000001")
            assert not locks.is_locked("CS-000002")
            async with locks.hold("CS-000002"):
                assert len(locks) == 2

    async def test_registry_is_cleaned_up(self) -> None:
        locks = KeyedLock()
        async with locks.hold("CS-000001"):
            pass
        assert len(locks) == 0

    async def test_released_on_error(self) -> None:
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("CS-000001"):
                raise RuntimeError("boom")
        assert not locks.is_locked("CS-000001")
        assert len(locks) == 0
