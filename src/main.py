"""Civic Shield FastAPI application entry point.

Creates the FastAPI app, configures middleware, includes routers, and
manages the lifecycle of the complaint services (repository, lifecycle
engine, analysis pipeline, corpus index and escalation scheduler).
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from config.settings import settings
from src.api.router import api_router
from src.middleware.rate_limit import RateLimitMiddleware
from src.services.errors import CivicShieldError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(settings.log_level.upper(), logging.INFO),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _build_repository():
    if settings.storage_backend == "redis":
        from src.services.repository import RedisComplaintRepository

        return RedisComplaintRepository(settings.redis_url)

    from src.services.repository import InMemoryComplaintRepository

    return InMemoryComplaintRepository()


async def _backfill(corpus, batch_size: int) -> None:
    try:
        embedded = await corpus.backfill_embeddings(batch_size=batch_size)
        logger.info("app.embedding_backfill_complete", embedded=embedded)
    except Exception:
        logger.error("app.embedding_backfill_failed", exc_info=True)


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of all Civic Shield services.

    On startup:
      1. Open the complaint repository and migrate the id counter
      2. Create the notifier, Gemini client and corpus index
      3. Wire the lifecycle engine to the analysis pipeline
      4. Backfill missing embeddings in the background
      5. Start the escalation scheduler
      6. Store everything on ``app.state``

    On shutdown:
      - Stop the scheduler and cancel in-flight analyses.
      - Close the Gemini HTTP client and the repository.
    """
    _configure_logging()
    logger.info("app.startup", env=settings.env, storage=settings.storage_backend)

    app.state.start_time = time.time()

    # -- 1. Repository --------------------------------------------------------
    repository = _build_repository()
    next_seq = await repository.migrate_counter()
    app.state.repository = repository
    logger.info("app.repository_initialised", backend=settings.storage_backend, next_sequence=next_seq)

    # -- 2. Collaborators -----------------------------------------------------
    from src.services.corpus_index import CorpusIndex
    from src.services.documents import OrderGenerator
    from src.services.llm import GeminiClient
    from src.services.locks import KeyedLock
    from src.services.notifications import LoggingEmailGateway
    from src.services.text_extraction import TextExtractor

    notifier = LoggingEmailGateway()
    gemini = GeminiClient(
        api_key=settings.gemini_api_key,
        model_name=settings.gemini_model,
        base_url=settings.gemini_base_url,
        timeout=settings.gemini_timeout_seconds,
        max_retries=settings.gemini_max_retries,
        base_delay=settings.gemini_retry_base_delay,
    )
    if not gemini.available:
        logger.warning("app.gemini_not_configured", note="falling back to rule-based verdicts")

    corpus = CorpusIndex(
        repository,
        ttl_seconds=settings.corpus_cache_ttl,
        vocab_size=settings.corpus_vocab_size,
        hash_dim=settings.corpus_hash_dim,
    )
    app.state.notifier = notifier
    app.state.gemini = gemini
    app.state.corpus = corpus
    app.state.backfill_batch_size = settings.backfill_batch_size

    # -- 3. Lifecycle engine + analysis pipeline ------------------------------
    from src.pipeline.analysis import AnalysisPipeline, AnalysisSupervisor
    from src.services.lifecycle import LifecycleEngine

    engine = LifecycleEngine(
        repository,
        notifier,
        locks=KeyedLock(),
        business_days=settings.escalation_business_days,
    )
    pipeline = AnalysisPipeline(
        engine,
        corpus,
        TextExtractor(settings.uploads_dir),
        OrderGenerator(gemini),
        gemini,
        similarity_threshold=settings.similarity_threshold,
        top_k=settings.similarity_top_k,
    )
    supervisor = AnalysisSupervisor(
        pipeline,
        repository,
        grace_seconds=settings.analysis_reconcile_grace_seconds,
        clock=engine.now,
    )
    engine.attach_launcher(supervisor.launch)
    app.state.engine = engine
    app.state.pipeline = pipeline
    app.state.supervisor = supervisor
    logger.info("app.lifecycle_initialised")

    # -- 4. Embedding backfill ------------------------------------------------
    backfill_task: asyncio.Task | None = None  # type: ignore[type-arg]
    if settings.backfill_on_startup:
        backfill_task = asyncio.create_task(
            _backfill(corpus, settings.backfill_batch_size),
            name="embedding-backfill",
        )

    # -- 5. Escalation scheduler ----------------------------------------------
    from src.services.escalation import EscalationScheduler

    scheduler = EscalationScheduler(
        engine,
        repository,
        notifier=notifier,
        interval_seconds=settings.escalation_interval_seconds,
        reconcile=supervisor.reconcile,
    )
    if settings.enable_escalation_scheduler:
        scheduler.start()
        logger.info("app.escalation_scheduler_started", interval=settings.escalation_interval_seconds)
    app.state.scheduler = scheduler

    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_start")

    await scheduler.stop()
    if backfill_task is not None and not backfill_task.done():
        backfill_task.cancel()
    await supervisor.shutdown()
    await gemini.close()
    close = getattr(repository, "close", None)
    if close is not None:
        await close()

    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Civic Shield API",
    description=(
        "Civic Shield -- anonymous civic complaint tracking with AI triage, "
        "department routing and automatic escalation of ignored complaints."
    ),
    version="1.0.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)


@app.exception_handler(CivicShieldError)
async def civic_shield_error_handler(request: Request, exc: CivicShieldError) -> ORJSONResponse:
    if exc.status_code >= 500:
        logger.error("api.service_error", path=request.url.path, error=exc.message, context=exc.context)
    else:
        logger.info("api.request_rejected", path=request.url.path, status=exc.status_code, error=exc.message)
    return ORJSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, **exc.context},
    )


# -- CORS middleware --------------------------------------------------------
# SECURITY: allow_credentials=True must NOT be combined with allow_origins=["*"]
# (browsers will reject it).
_ACTOR_HEADERS = ["X-Actor-Id", "X-Actor-Role", "X-Actor-Name", "X-Actor-Department"]

if settings.is_production:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Content-Type", "Authorization", "X-Admin-API-Key", *_ACTOR_HEADERS],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5000", "http://127.0.0.1:5000"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "OPTIONS", "HEAD"],
        allow_headers=["Content-Type", "Accept", "Authorization", "X-Admin-API-Key", *_ACTOR_HEADERS],
    )

# -- Custom middleware ------------------------------------------------------
app.add_middleware(
    RateLimitMiddleware,
    max_requests_per_minute=settings.rate_limit_per_minute,
    max_submissions_per_minute=settings.submission_rate_limit_per_minute,
    trusted_proxy_count=settings.trusted_proxy_count,
)

# -- Prometheus metrics -----------------------------------------------------
try:
    from prometheus_fastapi_instrumentator import Instrumentator

    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=["/metrics", "/api/v1/health"],
    ).instrument(app).expose(
        app,
        endpoint="/metrics",
        include_in_schema=not settings.is_production,
    )
    logger.info("app.prometheus_metrics_enabled")
except ImportError:
    logger.warning("app.prometheus_not_available")

# -- Include routers -------------------------------------------------------
app.include_router(api_router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    """API information endpoint."""
    return {
        "name": "Civic Shield API",
        "description": "Anonymous civic complaint tracking and escalation",
        "version": app.version,
        "docs": "/docs",
        "health": "/api/v1/health",
        "endpoints": {
            "complaints": "/api/v1/complaints",
            "my_complaints": "/api/v1/complaints/my",
            "admin_queue": "/api/v1/complaints/admin",
            "authority_queue": "/api/v1/complaints/authority",
            "lawsuit_info": "/api/v1/complaints/lawsuit-info",
            "departments": "/api/v1/departments",
            "health": "/api/v1/health",
            "operations": "/api/v1/admin",
        },
    }


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        proxy_headers=settings.trusted_proxy_count > 0,
    )


if __name__ == "__main__":
    run()
