"""Gemini verdict client for Civic Shield.

Talks to the Gemini ``generateContent`` REST endpoint over
``httpx.AsyncClient`` and provides two operations:

* **analyze_complaint** -- structured validity verdict with RAG context
  (similar prior complaints) for duplicate awareness
* **generate_text** -- free-form text, used for government orders

HTTP 429 is retried with exponential backoff (``base_delay * 2**(n-1)``)
up to ``max_retries`` times.  Any other failure, and a rate limit that
outlasts the retries, surfaces as :class:`ExternalServiceError` so the
caller can fall back to the deterministic rules.
"""

from __future__ import annotations

import re
import time
from typing import TYPE_CHECKING, Any, Final

import httpx
import orjson
import structlog
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.models.enums import Severity
from src.services.errors import ExternalServiceError, RateLimitError

if TYPE_CHECKING:
    from src.models.complaint import Complaint
    from src.services.corpus_index import SimilarComplaint

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_ANALYSIS_PROMPT: Final[str] = """\
You are a government complaint analysis AI. Analyze the following citizen \
complaint and provide a structured assessment.

COMPLAINT DETAILS:
- Department: {department}
- Heading: {heading}
- Description: {description}
- Location: {location}

EVIDENCE DOCUMENTS:
{extracted_text}

SIMILAR EXISTING COMPLAINTS (for duplicate detection):
{similar}

ANALYZE FOR:
1. Is this a valid, genuine complaint? (not spam, not abusive, not irrelevant)
2. Is this a duplicate of one of the similar existing complaints above?
3. Does it contain unknown/meaningless/spam content?
4. What is the severity? (low/medium/high/critical)
5. What category does this fall under?
6. Brief verdict explaining your assessment

RESPOND IN THIS EXACT JSON FORMAT ONLY (no markdown, no code blocks):
{{
  "isValid": true/false,
  "score": 0-100,
  "verdict": "brief explanation",
  "flags": ["flag1", "flag2"],
  "category": "category name",
  "severity": "low/medium/high/critical",
  "isDuplicate": false,
  "duplicateOf": null
}}\
"""

_JSON_OBJECT: Final[re.Pattern[str]] = re.compile(r"\{[\s\S]*\}")

_DEFAULT_BASE_URL: Final[str] = "https://generativelanguage.googleapis.com/v1beta"


# ---------------------------------------------------------------------------
# Response model
# ---------------------------------------------------------------------------


class VerdictResponse(BaseModel):
    """Structured verdict as returned by the model."""

    model_config = {"populate_by_name": True}

    is_valid: bool = Field(alias="isValid")
    score: int = Field(ge=0, le=100)
    verdict: str = ""
    flags: list[str] = Field(default_factory=list)
    category: str = ""
    severity: Severity = Severity.MEDIUM
    is_duplicate: bool = Field(default=False, alias="isDuplicate")
    duplicate_of: str | None = Field(default=None, alias="duplicateOf")

    @field_validator("score", mode="before")
    @classmethod
    def _round_score(cls, value: Any) -> Any:
        if isinstance(value, float):
            return round(value)
        return value

    @field_validator("severity", mode="before")
    @classmethod
    def _lower_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or Severity.MEDIUM
        return value or Severity.MEDIUM


def parse_verdict(text: str) -> VerdictResponse:
    """Pull the first JSON object out of ``text`` and validate it."""
    match = _JSON_OBJECT.search(text or "")
    if match is None:
        raise ExternalServiceError("Verdict response contained no JSON object")
    try:
        return VerdictResponse.model_validate(orjson.loads(match.group(0)))
    except (orjson.JSONDecodeError, PydanticValidationError) as exc:
        raise ExternalServiceError("Malformed verdict response", error=str(exc)) from exc


def _format_similar(similar: list[SimilarComplaint]) -> str:
    if not similar:
        return "None found."
    return "\n".join(
        f"- [{s.complaint_id}] {s.heading} (similarity {s.similarity:.2f}): {s.excerpt}"
        for s in similar
    )


# ---------------------------------------------------------------------------
# GeminiClient
# ---------------------------------------------------------------------------


class GeminiClient:
    """Async Gemini REST client with 429 backoff.

    Parameters
    ----------
    api_key:
        Gemini API key.  Without one the client reports itself
        unavailable and every call raises :class:`ExternalServiceError`.
    model_name:
        Model id used in the ``:generateContent`` path.
    base_url:
        API root, overridable for tests and proxies.
    timeout:
        Per-request timeout in seconds.
    max_retries:
        Retries after the first attempt on HTTP 429.
    base_delay:
        Initial backoff delay in seconds; doubles on every retry.
    transport:
        Optional ``httpx`` transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        api_key: str = "",
        model_name: str = "gemini-2.0-flash",
        *,
        base_url: str = _DEFAULT_BASE_URL,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._model_name = model_name
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    # -- lifecycle ----------------------------------------------------------

    @property
    def available(self) -> bool:
        return bool(self._api_key)

    async def close(self) -> None:
        await self._client.aclose()

    # -- transport ----------------------------------------------------------

    async def _post_once(self, prompt: str, generation_config: dict[str, Any]) -> str:
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        try:
            response = await self._client.post(
                f"/models/{self._model_name}:generateContent",
                params={"key": self._api_key},
                content=orjson.dumps(payload),
            )
        except httpx.HTTPError as exc:
            raise ExternalServiceError("Gemini request failed", error=str(exc)) from exc

        if response.status_code == 429:
            raise RateLimitError("Gemini rate limited", status=429)
        if response.status_code >= 400:
            raise ExternalServiceError("Gemini API error", status=response.status_code)

        try:
            data = orjson.loads(response.content)
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (orjson.JSONDecodeError, KeyError, IndexError, TypeError) as exc:
            raise ExternalServiceError("Gemini returned no candidate text") from exc

    async def _call(self, prompt: str, generation_config: dict[str, Any]) -> str:
        if not self.available:
            raise ExternalServiceError("Gemini API key not configured")

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RateLimitError),
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._base_delay),
            before_sleep=lambda state: logger.info(
                "gemini.rate_limited_retry",
                attempt=state.attempt_number,
                max_retries=self._max_retries,
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._post_once(prompt, generation_config)
        raise ExternalServiceError("Gemini retry loop exhausted")  # pragma: no cover

    # -- public API ---------------------------------------------------------

    async def analyze_complaint(
        self,
        complaint: Complaint,
        extracted_text: str = "",
        similar: list[SimilarComplaint] | None = None,
    ) -> VerdictResponse:
        """Ask the model for a structured verdict on ``complaint``.

        Raises
        ------
        RateLimitError
            Still rate limited after all retries.
        ExternalServiceError
            Unavailable, transport failure or unparsable output.
        """
        start = time.perf_counter()
        prompt = _ANALYSIS_PROMPT.format(
            department=complaint.department,
            heading=complaint.heading,
            description=complaint.description,
            location=complaint.location.address if complaint.location else "Not provided",
            extracted_text=extracted_text or "None provided.",
            similar=_format_similar(similar or []),
        )
        text = await self._call(prompt, {"temperature": 0.3, "maxOutputTokens": 1024})
        verdict = parse_verdict(text)

        logger.info(
            "gemini.analyze_complete",
            complaint_id=complaint.complaint_id,
            is_valid=verdict.is_valid,
            score=verdict.score,
            is_duplicate=verdict.is_duplicate,
            processing_time_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return verdict

    async def generate_text(self, prompt: str, *, temperature: float = 0.5, max_tokens: int = 2048) -> str:
        text = await self._call(prompt, {"temperature": temperature, "maxOutputTokens": max_tokens})
        if not text.strip():
            raise ExternalServiceError("Gemini returned empty text")
        return text
