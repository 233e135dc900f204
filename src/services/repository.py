"""Complaint persistence with an in-memory store and a Redis store.

Both backends implement :class:`ComplaintRepository`:

* records are copied on the way in and out, so callers never share
  mutable state with the store;
* :meth:`update` is a compare-and-set on ``Complaint.version`` and
  raises :class:`ConflictError` when another writer got there first.
  It bumps ``version`` only; ``updated_at`` belongs to the lifecycle
  engine, which stamps it from its own clock;
* :meth:`next_sequence` is an atomic increment used for the
  ``CS-000123`` identifiers, and :meth:`migrate_counter` is the one-time
  startup step that fast-forwards the counter past pre-existing data.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Final, Protocol, runtime_checkable

import orjson
import structlog

from src.models.complaint import Complaint
from src.models.enums import ComplaintStatus
from src.services.errors import ConflictError, NotFoundError

logger = structlog.get_logger(__name__)

COMPLAINT_ID_PREFIX: Final[str] = "CS-"
_ID_WIDTH: Final[int] = 6


def format_complaint_id(sequence: int) -> str:
    return f"{COMPLAINT_ID_PREFIX}{sequence:0{_ID_WIDTH}d}"


def parse_complaint_sequence(complaint_id: str) -> int | None:
    """Return the numeric part of ``CS-000123``, or ``None`` if malformed."""
    prefix, _, number = complaint_id.partition("-")
    if not number or f"{prefix}-" != COMPLAINT_ID_PREFIX or not number.isdigit():
        return None
    return int(number)


def _matches(
    complaint: Complaint,
    statuses: frozenset[ComplaintStatus] | None,
    user_id: str | None,
    department: str | None,
) -> bool:
    if statuses is not None and complaint.status not in statuses:
        return False
    if user_id is not None and complaint.user_id != user_id:
        return False
    if department and department.lower() not in complaint.department.lower():
        return False
    return True


# ---------------------------------------------------------------------------
# Repository protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ComplaintRepository(Protocol):
    """Async persistence interface for complaints."""

    async def create(self, complaint: Complaint) -> Complaint: ...

    async def get(self, complaint_id: str) -> Complaint | None: ...

    async def update(self, complaint: Complaint) -> Complaint: ...

    async def list(
        self,
        *,
        statuses: Iterable[ComplaintStatus] | None = None,
        user_id: str | None = None,
        department: str | None = None,
    ) -> list[Complaint]: ...

    async def find_missing_embeddings(self, limit: int) -> list[Complaint]: ...

    async def next_sequence(self) -> int: ...

    async def migrate_counter(self) -> int: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryComplaintRepository:
    """Dict-backed repository for development and tests.

    A single :class:`asyncio.Lock` makes every operation atomic with
    respect to other coroutines in the same event loop.
    """

    __slots__ = ("_counter", "_data", "_lock")

    def __init__(self, complaints: Iterable[Complaint] = ()) -> None:
        self._data: dict[str, Complaint] = {c.complaint_id: c.model_copy(deep=True) for c in complaints}
        self._counter: int | None = None
        self._lock = asyncio.Lock()

    async def create(self, complaint: Complaint) -> Complaint:
        async with self._lock:
            if complaint.complaint_id in self._data:
                raise ConflictError(f"Complaint {complaint.complaint_id} already exists")
            complaint.version = 1
            self._data[complaint.complaint_id] = complaint.model_copy(deep=True)
        return complaint

    async def get(self, complaint_id: str) -> Complaint | None:
        async with self._lock:
            stored = self._data.get(complaint_id)
            return stored.model_copy(deep=True) if stored is not None else None

    async def update(self, complaint: Complaint) -> Complaint:
        async with self._lock:
            stored = self._data.get(complaint.complaint_id)
            if stored is None:
                raise NotFoundError(f"Complaint {complaint.complaint_id} not found")
            if stored.version != complaint.version:
                raise ConflictError(
                    f"Complaint {complaint.complaint_id} was modified concurrently",
                    expected=complaint.version,
                    actual=stored.version,
                )
            complaint.version += 1
            self._data[complaint.complaint_id] = complaint.model_copy(deep=True)
        return complaint

    async def list(
        self,
        *,
        statuses: Iterable[ComplaintStatus] | None = None,
        user_id: str | None = None,
        department: str | None = None,
    ) -> list[Complaint]:
        wanted = frozenset(statuses) if statuses is not None else None
        async with self._lock:
            found = [
                c.model_copy(deep=True)
                for c in self._data.values()
                if _matches(c, wanted, user_id, department)
            ]
        found.sort(key=lambda c: c.created_at, reverse=True)
        return found

    async def find_missing_embeddings(self, limit: int) -> list[Complaint]:
        async with self._lock:
            missing = [c for c in self._data.values() if not c.embedding]
            missing.sort(key=lambda c: c.created_at)
            return [c.model_copy(deep=True) for c in missing[:limit]]

    async def next_sequence(self) -> int:
        async with self._lock:
            if self._counter is None:
                self._counter = self._highest_sequence()
            self._counter += 1
            return self._counter

    async def migrate_counter(self) -> int:
        async with self._lock:
            if self._counter is None:
                self._counter = self._highest_sequence()
                logger.info("repository.counter_migrated", backend="memory", value=self._counter)
            return self._counter

    def _highest_sequence(self) -> int:
        sequences = (parse_complaint_sequence(cid) for cid in self._data)
        return max((s for s in sequences if s is not None), default=0)

    @property
    def size(self) -> int:
        return len(self._data)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisComplaintRepository:
    """Redis-backed repository using ``redis.asyncio`` with connection pooling.

    Layout (under ``namespace``):

    * ``complaint:<id>`` -- orjson-encoded complaint document
    * ``complaints`` -- sorted set of ids scored by creation time
    * ``counter:complaint_id`` -- the sequence counter (``INCR``)
    """

    __slots__ = ("_namespace", "_pool", "_redis")

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        namespace: str = "civicshield:",
        max_connections: int = 20,
    ) -> None:
        import redis.asyncio as aioredis

        self._namespace = namespace
        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)

    # -- keys ------------------------------------------------------------------

    def _key(self, complaint_id: str) -> str:
        return f"{self._namespace}complaint:{complaint_id}"

    @property
    def _index_key(self) -> str:
        return f"{self._namespace}complaints"

    @property
    def _counter_key(self) -> str:
        return f"{self._namespace}counter:complaint_id"

    @staticmethod
    def _dumps(complaint: Complaint) -> bytes:
        return orjson.dumps(complaint.model_dump(mode="json"))

    @staticmethod
    def _loads(raw: bytes) -> Complaint:
        return Complaint.model_validate(orjson.loads(raw))

    # -- ComplaintRepository interface -----------------------------------------

    async def create(self, complaint: Complaint) -> Complaint:
        complaint.version = 1
        created = await self._redis.set(self._key(complaint.complaint_id), self._dumps(complaint), nx=True)
        if not created:
            raise ConflictError(f"Complaint {complaint.complaint_id} already exists")
        await self._redis.zadd(self._index_key, {complaint.complaint_id: complaint.created_at.timestamp()})
        return complaint

    async def get(self, complaint_id: str) -> Complaint | None:
        raw = await self._redis.get(self._key(complaint_id))
        return self._loads(raw) if raw is not None else None

    async def update(self, complaint: Complaint) -> Complaint:
        from redis.exceptions import WatchError

        key = self._key(complaint.complaint_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    raise NotFoundError(f"Complaint {complaint.complaint_id} not found")
                stored_version = orjson.loads(raw).get("version", 0)
                if stored_version != complaint.version:
                    raise ConflictError(
                        f"Complaint {complaint.complaint_id} was modified concurrently",
                        expected=complaint.version,
                        actual=stored_version,
                    )
                updated = complaint.model_copy(deep=True)
                updated.version += 1
                pipe.multi()
                pipe.set(key, self._dumps(updated))
                await pipe.execute()
            except WatchError:
                raise ConflictError(
                    f"Complaint {complaint.complaint_id} was modified concurrently"
                ) from None
        complaint.version = updated.version
        return complaint

    async def list(
        self,
        *,
        statuses: Iterable[ComplaintStatus] | None = None,
        user_id: str | None = None,
        department: str | None = None,
    ) -> list[Complaint]:
        wanted = frozenset(statuses) if statuses is not None else None
        ids = await self._redis.zrevrange(self._index_key, 0, -1)
        if not ids:
            return []
        raws = await self._redis.mget([self._key(cid.decode()) for cid in ids])
        complaints = (self._loads(raw) for raw in raws if raw is not None)
        return [c for c in complaints if _matches(c, wanted, user_id, department)]

    async def find_missing_embeddings(self, limit: int) -> list[Complaint]:
        everything = await self.list()
        missing = [c for c in reversed(everything) if not c.embedding]
        return missing[:limit]

    async def next_sequence(self) -> int:
        return int(await self._redis.incr(self._counter_key))

    async def migrate_counter(self) -> int:
        """Seed the counter from the highest stored id if it does not exist yet."""
        ids = await self._redis.zrange(self._index_key, 0, -1)
        sequences = (parse_complaint_sequence(cid.decode()) for cid in ids)
        highest = max((s for s in sequences if s is not None), default=0)
        seeded = await self._redis.set(self._counter_key, highest, nx=True)
        current = int(await self._redis.get(self._counter_key) or 0)
        if seeded:
            logger.info("repository.counter_migrated", backend="redis", value=current)
        return current

    # -- Lifecycle -------------------------------------------------------------

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def close(self) -> None:
        await self._redis.aclose()
        await self._pool.aclose()
