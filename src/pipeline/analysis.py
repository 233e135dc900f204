"""Post-submission analysis pipeline for Civic Shield.

Runs once per complaint, detached from the submission request:

1. ``submitted`` -> ``ai_review``
2. extract text from evidence documents (best effort)
3. embed department + heading + description + address + extracted text
4. find similar reviewed complaints (RAG context for duplicate checks)
5. verdict from Gemini, falling back to the deterministic rules
6. draft the government order for valid complaints
7. ``verified`` -> ``sent_to_admin``, or ``ai_rejected``

No step propagates an exception.  Anything unexpected degrades to the
rule-based verdict so the complaint always leaves ``ai_review``.

:class:`AnalysisSupervisor` owns the background tasks.  It logs crashes
and, through :meth:`AnalysisSupervisor.reconcile`, restarts analyses
that were stranded in ``submitted`` or ``ai_review`` (for example by a
process restart).
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Final

import structlog

from src.models.enums import ComplaintStatus
from src.services.documents import render_order_template
from src.services.errors import ExternalServiceError
from src.services.verdict import from_verdict_response, rule_based_analysis

if TYPE_CHECKING:
    from src.models.complaint import AIAnalysis, Complaint
    from src.services.corpus_index import CorpusIndex, SimilarComplaint
    from src.services.documents import OrderGenerator
    from src.services.lifecycle import LifecycleEngine
    from src.services.llm import GeminiClient
    from src.services.repository import ComplaintRepository
    from src.services.text_extraction import TextExtractor

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_DEFAULT_GRACE_SECONDS: Final[float] = 600.0
_STRANDABLE_STATES: Final[tuple[ComplaintStatus, ...]] = (
    ComplaintStatus.SUBMITTED,
    ComplaintStatus.AI_REVIEW,
)


def analysis_text(complaint: Complaint, extracted_text: str = "") -> str:
    """Text that is embedded for similarity search."""
    address = complaint.location.address if complaint.location else ""
    parts = (complaint.department, complaint.heading, complaint.description, address, extracted_text)
    return " ".join(p for p in parts if p)


# ---------------------------------------------------------------------------
# AnalysisPipeline
# ---------------------------------------------------------------------------


class AnalysisPipeline:
    """Analyse one complaint and route it to the admin or reject it.

    Parameters
    ----------
    engine:
        Lifecycle engine used for both status changes.
    corpus:
        TF-IDF index for embedding and similarity search.
    extractor:
        Evidence text extractor.
    client:
        Gemini client; ``None`` forces the rule-based verdict.
    orders:
        Government order generator.
    similarity_threshold / top_k:
        Duplicate-search cut-off and result count.
    """

    __slots__ = ("_client", "_corpus", "_engine", "_extractor", "_orders", "_threshold", "_top_k")

    def __init__(
        self,
        engine: LifecycleEngine,
        corpus: CorpusIndex,
        extractor: TextExtractor,
        orders: OrderGenerator,
        client: GeminiClient | None = None,
        *,
        similarity_threshold: float = 0.60,
        top_k: int = 3,
    ) -> None:
        self._engine = engine
        self._corpus = corpus
        self._extractor = extractor
        self._orders = orders
        self._client = client
        self._threshold = similarity_threshold
        self._top_k = top_k

    def now(self) -> datetime:
        return self._engine.now()

    async def run(self, complaint_id: str) -> Complaint | None:
        """Execute the full pass.  Returns the routed complaint, or ``None``
        if it was not in a reviewable state or could not be saved."""
        start = time.perf_counter()
        try:
            complaint = await self._engine.begin_review(complaint_id)
        except Exception:
            logger.error("pipeline.begin_failed", complaint_id=complaint_id, exc_info=True)
            return None
        if complaint is None:
            logger.info("pipeline.skipped", complaint_id=complaint_id)
            return None

        embedding: list[float] | None = None
        try:
            extracted = await self._extractor.process_documents(complaint.documents)
            embedding = await self._corpus.embed(analysis_text(complaint, extracted))
            similar = await self._corpus.find_similar(
                embedding,
                exclude_id=complaint_id,
                top_k=self._top_k,
                threshold=self._threshold,
            )
            analysis = await self._verdict(complaint, extracted, similar)
        except Exception:
            logger.error("pipeline.analysis_failed", complaint_id=complaint_id, exc_info=True)
            analysis = rule_based_analysis(complaint, now=self._engine.now())

        order = None
        if analysis.is_valid:
            try:
                order = await self._orders.generate(complaint, analysis, self._engine.now())
            except Exception:
                logger.error("pipeline.order_failed", complaint_id=complaint_id, exc_info=True)
                order = render_order_template(complaint, analysis, self._engine.now())

        try:
            routed = await self._engine.complete_review(
                complaint_id,
                analysis,
                embedding=embedding,
                order=order,
            )
        except Exception:
            # Left in ai_review; the reconciliation sweep retries it.
            logger.error("pipeline.complete_failed", complaint_id=complaint_id, exc_info=True)
            return None

        logger.info(
            "pipeline.complete",
            complaint_id=complaint_id,
            status=routed.status.value,
            score=analysis.score,
            source=analysis.source,
            processing_time_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return routed

    async def _verdict(
        self,
        complaint: Complaint,
        extracted: str,
        similar: list[SimilarComplaint],
    ) -> AIAnalysis:
        now = self._engine.now()
        if self._client is None or not self._client.available:
            logger.info("pipeline.verdict_fallback", complaint_id=complaint.complaint_id, reason="unavailable")
            return rule_based_analysis(complaint, now=now)
        try:
            response = await self._client.analyze_complaint(complaint, extracted, similar)
        except ExternalServiceError as exc:
            logger.warning(
                "pipeline.verdict_fallback",
                complaint_id=complaint.complaint_id,
                reason=type(exc).__name__,
                error=exc.message,
            )
            return rule_based_analysis(complaint, now=now)
        return from_verdict_response(response, complaint, now=now)


# ---------------------------------------------------------------------------
# AnalysisSupervisor
# ---------------------------------------------------------------------------


class AnalysisSupervisor:
    """Owns the detached analysis tasks.

    Parameters
    ----------
    pipeline:
        Pipeline executed for each launched complaint.
    repository:
        Read path used by :meth:`reconcile` to find stranded complaints.
    grace_seconds:
        How long a complaint may sit in ``submitted``/``ai_review``
        before :meth:`reconcile` restarts it.
    clock:
        Time source for the grace cut-off.  Defaults to the lifecycle
        engine's clock, which also stamps ``updated_at``.
    """

    def __init__(
        self,
        pipeline: AnalysisPipeline,
        repository: ComplaintRepository,
        *,
        grace_seconds: float = _DEFAULT_GRACE_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._repository = repository
        self._grace = timedelta(seconds=grace_seconds)
        self._clock = clock or pipeline.now
        self._tasks: dict[str, asyncio.Task] = {}  # type: ignore[type-arg]

    @property
    def running(self) -> frozenset[str]:
        return frozenset(cid for cid, task in self._tasks.items() if not task.done())

    def launch(self, complaint_id: str) -> asyncio.Task:  # type: ignore[type-arg]
        """Start analysis unless it is already running for this complaint."""
        existing = self._tasks.get(complaint_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self._pipeline.run(complaint_id), name=f"analysis-{complaint_id}")
        self._tasks[complaint_id] = task
        task.add_done_callback(lambda t, cid=complaint_id: self._on_done(cid, t))
        logger.debug("pipeline.launched", complaint_id=complaint_id)
        return task

    def _on_done(self, complaint_id: str, task: asyncio.Task) -> None:  # type: ignore[type-arg]
        if self._tasks.get(complaint_id) is task:
            del self._tasks[complaint_id]
        if task.cancelled():
            logger.warning("pipeline.cancelled", complaint_id=complaint_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("pipeline.crashed", complaint_id=complaint_id, exc_info=exc)

    async def reconcile(self) -> list[str]:
        """Relaunch analyses stranded longer than the grace period."""
        try:
            pending = await self._repository.list(statuses=_STRANDABLE_STATES)
        except Exception:
            logger.error("pipeline.reconcile_query_failed", exc_info=True)
            return []

        cutoff = self._clock() - self._grace
        active = self.running
        relaunched = [
            c.complaint_id
            for c in pending
            if c.complaint_id not in active and c.updated_at <= cutoff
        ]
        for complaint_id in relaunched:
            self.launch(complaint_id)

        if relaunched:
            logger.warning("pipeline.reconciled", count=len(relaunched), complaint_ids=relaunched)
        return relaunched

    async def join(self, timeout: float | None = None) -> None:
        """Wait for all in-flight analyses (used by tests and shutdown)."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        await asyncio.wait(tasks, timeout=timeout)

    async def shutdown(self, timeout: float = 10.0) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
        logger.info("pipeline.supervisor_stopped", cancelled=len(tasks))
