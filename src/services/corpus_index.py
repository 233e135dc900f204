"""Local TF-IDF embedding index used for duplicate detection.

Builds vectors from complaint text without any API call.  The IDF table
is "trained" from every stored complaint and rebuilt whenever it is
older than the cache TTL, so the vocabulary grows with the corpus.

Pipeline:
  1. tokenize + stem complaint text
  2. build IDF from all stored complaints (the corpus)
  3. represent text as a TF-IDF vector over the top-IDF vocabulary
  4. cosine similarity against stored embeddings for duplicate search

Rebuilds produce a fresh :class:`IDFSnapshot` that replaces the old one
in a single assignment; readers holding the previous snapshot keep a
consistent view while a rebuild is in progress.
"""

from __future__ import annotations

import asyncio
import math
import re
import time
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Final

import numpy as np
import structlog

from src.services.state_machine import PRE_REVIEW_STATES

if TYPE_CHECKING:
    from src.models.complaint import Complaint
    from src.services.repository import ComplaintRepository

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_TTL_SECONDS: Final[float] = 60.0
_DEFAULT_VOCAB_SIZE: Final[int] = 1000
_DEFAULT_HASH_DIM: Final[int] = 128
_NON_ALNUM: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9\s]")

_STOPWORDS: Final[frozenset[str]] = frozenset({
    "a", "an", "the", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "shall", "can", "need", "dare", "ought",
    "used", "i", "me", "my", "we", "our", "you", "your", "he", "him",
    "his", "she", "her", "they", "them", "their", "it", "its", "this",
    "that", "these", "those", "and", "or", "but", "if", "because", "as",
    "until", "while", "of", "at", "by", "for", "with", "about", "against",
    "between", "into", "through", "during", "before", "after", "above",
    "below", "to", "from", "up", "down", "in", "out", "on", "off", "over",
    "under", "again", "further", "then", "once", "here", "there", "when",
    "where", "why", "how", "all", "both", "each", "few", "more", "most",
    "other", "some", "such", "no", "not", "only", "same", "so", "than",
    "too", "very", "just", "dont", "also", "please", "sir",
})

# (suffix, replacement), checked in order; first match wins.
_SUFFIX_RULES: Final[tuple[tuple[str, str], ...]] = (
    ("ings", ""),
    ("ing", ""),
    ("tion", "t"),
    ("ness", ""),
    ("ment", ""),
    ("able", ""),
    ("ible", ""),
    ("ies", "y"),
    ("es", ""),
    ("ed", ""),
    ("ly", ""),
    ("er", ""),
)


# ---------------------------------------------------------------------------
# Text processing
# ---------------------------------------------------------------------------


def stem(word: str) -> str:
    """Minimal suffix stripping (a rough Porter approximation)."""
    if len(word) <= 3:
        return word
    for suffix, replacement in _SUFFIX_RULES:
        if word.endswith(suffix):
            return word[: -len(suffix)] + replacement
    if word.endswith("s") and len(word) > 4:
        return word[:-1]
    return word


def tokenize(text: str | None) -> list[str]:
    if not text:
        return []
    cleaned = _NON_ALNUM.sub(" ", text.lower())
    stemmed = (stem(token) for token in cleaned.split())
    return [t for t in stemmed if len(t) > 2 and t not in _STOPWORDS]


def _normalize(vec: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec
    return vec / norm


def hash_vector(text: str, dim: int = _DEFAULT_HASH_DIM) -> list[float]:
    """Signed hashed bag-of-words, used before any corpus exists."""
    vec = np.zeros(dim, dtype=np.float64)
    for token in tokenize(text):
        h = 5381
        for ch in token:
            h = (((h << 5) + h) ^ ord(ch)) & 0x7FFFFFFF
        sign = 1.0 if (h >> 7) & 1 else -1.0
        vec[h % dim] += sign
    return _normalize(vec).tolist()


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine similarity; 0.0 for missing, zero or mismatched vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


# ---------------------------------------------------------------------------
# Snapshot + results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class IDFSnapshot:
    """Immutable IDF table built from one pass over the corpus."""

    idf: MappingProxyType[str, float]
    vocab: tuple[str, ...]
    corpus_size: int
    built_at: float

    @classmethod
    def empty(cls, built_at: float = 0.0) -> IDFSnapshot:
        return cls(idf=MappingProxyType({}), vocab=(), corpus_size=0, built_at=built_at)

    @classmethod
    def build(cls, documents: Sequence[str], vocab_size: int, built_at: float) -> IDFSnapshot:
        n = len(documents)
        if n == 0:
            return cls.empty(built_at)

        df: dict[str, int] = {}
        for text in documents:
            for token in set(tokenize(text)):
                df[token] = df.get(token, 0) + 1

        # Smoothed IDF: ln((N + 1) / (df + 1)) + 1
        idf = {term: math.log((n + 1) / (freq + 1)) + 1.0 for term, freq in df.items()}
        vocab = tuple(term for term, _ in sorted(idf.items(), key=lambda kv: kv[1], reverse=True)[:vocab_size])
        return cls(idf=MappingProxyType(idf), vocab=vocab, corpus_size=n, built_at=built_at)


@dataclass(slots=True)
class SimilarComplaint:
    """A prior complaint whose embedding is close to the query vector."""

    complaint_id: str
    heading: str
    department: str
    status: str
    similarity: float
    excerpt: str = field(default="")

    def to_context(self) -> dict:
        return {
            "id": self.complaint_id,
            "heading": self.heading,
            "excerpt": self.excerpt,
            "similarity": round(self.similarity, 4),
        }


# ---------------------------------------------------------------------------
# CorpusIndex
# ---------------------------------------------------------------------------


class CorpusIndex:
    """Process-wide TF-IDF model over the complaint corpus.

    Parameters
    ----------
    repository:
        Read path for stored complaints (IDF corpus and candidates).
    ttl_seconds:
        Maximum age of the IDF snapshot before it is rebuilt.
    vocab_size:
        Number of highest-IDF terms kept as the embedding vocabulary.
    hash_dim:
        Dimension of the cold-start hashed vector.
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        repository: ComplaintRepository,
        *,
        ttl_seconds: float = _DEFAULT_TTL_SECONDS,
        vocab_size: int = _DEFAULT_VOCAB_SIZE,
        hash_dim: int = _DEFAULT_HASH_DIM,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._ttl = ttl_seconds
        self._vocab_size = vocab_size
        self._hash_dim = hash_dim
        self._clock = clock
        self._snapshot: IDFSnapshot | None = None
        self._rebuild_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # IDF cache
    # ------------------------------------------------------------------

    def _is_fresh(self, snapshot: IDFSnapshot | None) -> bool:
        return snapshot is not None and self._clock() - snapshot.built_at < self._ttl

    async def get_idf(self) -> IDFSnapshot:
        """Return the current snapshot, rebuilding it when stale."""
        snapshot = self._snapshot
        if self._is_fresh(snapshot):
            return snapshot  # type: ignore[return-value]

        async with self._rebuild_lock:
            # Another coroutine may have rebuilt while we waited.
            if self._is_fresh(self._snapshot):
                return self._snapshot  # type: ignore[return-value]
            try:
                complaints = await self._repository.list()
            except Exception:
                logger.warning("corpus.idf_build_failed", exc_info=True)
                return self._snapshot or IDFSnapshot.empty()

            documents = [f"{c.heading} {c.description} {c.department}" for c in complaints]
            fresh = IDFSnapshot.build(documents, self._vocab_size, self._clock())
            self._snapshot = fresh
            logger.info("corpus.idf_rebuilt", corpus_size=fresh.corpus_size, vocab_size=len(fresh.vocab))
            return fresh

    def invalidate(self) -> None:
        """Force the next :meth:`get_idf` call to rebuild."""
        self._snapshot = None

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        snapshot = await self.get_idf()
        return self.embed_with(snapshot, text)

    def embed_with(self, snapshot: IDFSnapshot, text: str) -> list[float]:
        if not snapshot.vocab:
            return hash_vector(text, self._hash_dim)

        tokens = tokenize(text)
        counts = Counter(tokens)
        total = len(tokens) or 1
        vec = np.fromiter(
            ((counts.get(term, 0) / total) * snapshot.idf.get(term, 0.0) for term in snapshot.vocab),
            dtype=np.float64,
            count=len(snapshot.vocab),
        )
        return _normalize(vec).tolist()

    # ------------------------------------------------------------------
    # Similarity search
    # ------------------------------------------------------------------

    async def find_similar(
        self,
        query_embedding: Sequence[float] | None,
        *,
        exclude_id: str | None = None,
        top_k: int = 3,
        threshold: float = 0.60,
    ) -> list[SimilarComplaint]:
        """Nearest reviewed complaints with similarity >= ``threshold``."""
        if not query_embedding:
            return []
        try:
            candidates = await self._repository.list()
        except Exception:
            logger.warning("corpus.similarity_search_failed", exc_info=True)
            return []

        matches: list[SimilarComplaint] = []
        for candidate in candidates:
            if candidate.complaint_id == exclude_id or candidate.status in PRE_REVIEW_STATES:
                continue
            if not candidate.embedding:
                continue
            score = cosine_similarity(query_embedding, candidate.embedding)
            if score >= threshold:
                matches.append(SimilarComplaint(
                    complaint_id=candidate.complaint_id,
                    heading=candidate.heading,
                    department=candidate.department,
                    status=candidate.status.value,
                    similarity=score,
                    excerpt=candidate.description[:200],
                ))

        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:top_k]

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def backfill_embeddings(self, batch_size: int = 50, max_batches: int | None = None) -> int:
        """Embed stored complaints that have no vector yet.

        Works in batches of ``batch_size`` until none are missing (or
        ``max_batches`` is reached).  Already-embedded records are never
        touched, so repeated runs are no-ops.  Returns the number of
        records embedded.
        """
        embedded = 0
        batches = 0
        failed: set[str] = set()
        while max_batches is None or batches < max_batches:
            pending = [
                c for c in await self._repository.find_missing_embeddings(batch_size + len(failed))
                if c.complaint_id not in failed
            ][:batch_size]
            if not pending:
                break
            batches += 1
            snapshot = await self.get_idf()
            for complaint in pending:
                if await self._backfill_one(complaint, snapshot):
                    embedded += 1
                else:
                    failed.add(complaint.complaint_id)

        if embedded:
            logger.info("corpus.backfill_complete", embedded=embedded, batches=batches)
        return embedded

    async def _backfill_one(self, complaint: Complaint, snapshot: IDFSnapshot) -> bool:
        complaint.embedding = self.embed_with(snapshot, complaint.combined_text)
        try:
            await self._repository.update(complaint)
        except Exception:
            # Conflicting writers (e.g. the analysis pipeline) take precedence.
            logger.warning("corpus.backfill_record_failed", complaint_id=complaint.complaint_id, exc_info=True)
            return False
        return True

    @property
    def snapshot(self) -> IDFSnapshot | None:
        return self._snapshot
