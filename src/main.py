"""MentorGate FastAPI application entry point.

Creates the FastAPI app, configures middleware, includes routers, and
manages the lifecycle of the verification pipeline (challenge store,
record store, GitHub client, OCR engine, identity provider,
orchestrator).
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from config.settings import Settings, settings
from src.api.router import api_router
from src.middleware.rate_limit import RateLimitMiddleware

if TYPE_CHECKING:
    from src.services.verification.challenge_store import ChallengeStore
    from src.services.verification.documents import DocumentVerifier
    from src.services.verification.github_client import GitHubClient
    from src.services.verification.identity import IdentityVerifier
    from src.services.verification.orchestrator import MentorVerificationOrchestrator
    from src.services.verification.profile_store import ProfileStore
    from src.services.verification.records import VerificationRecordStore

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
            structlog.get_level_from_name(settings.log_level),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Pipeline wiring
# ---------------------------------------------------------------------------


def build_orchestrator(
    cfg: Settings,
    *,
    github: GitHubClient,
    challenges: ChallengeStore,
    records: VerificationRecordStore,
    profiles: ProfileStore,
    documents: DocumentVerifier | None = None,
    identity: IdentityVerifier | None = None,
) -> MentorVerificationOrchestrator:
    """Assemble the orchestrator and its GitHub verifiers from *cfg*.

    Ownership channels run under ``channel_timeout_seconds``, each
    orchestrator branch under ``verifier_timeout_seconds``; the settings
    validator keeps the former strictly lower.
    """
    from src.models.verification import MinimumRequirements
    from src.services.verification.orchestrator import MentorVerificationOrchestrator
    from src.services.verification.ownership import OwnershipProofVerifier
    from src.services.verification.signals import ProfileSignalFetcher

    return MentorVerificationOrchestrator(
        challenges=challenges,
        records=records,
        ownership=OwnershipProofVerifier(
            github,
            repo_name=cfg.verification_repo_name,
            channel_timeout=cfg.channel_timeout_seconds,
        ),
        signals=ProfileSignalFetcher(github),
        profiles=profiles,
        documents=documents,
        identity=identity,
        requirements=MinimumRequirements(
            account_age_in_days=cfg.min_account_age_days,
            min_repos=cfg.min_repos,
            min_contributions=cfg.min_contributions,
            min_followers=cfg.min_followers,
        ),
        status_policy=cfg.status_policy,
        verifier_timeout=cfg.verifier_timeout_seconds,
        repo_name=cfg.verification_repo_name,
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of the verification pipeline.

    On startup:
      1. Challenge and record stores (Redis when ``REDIS_URL`` is set)
      2. GitHub client, ownership verifier and signal fetcher
      3. OCR engine and document verifier
      4. Identity provider and verifier
      5. Profile store and the orchestrator
      6. Store everything on ``app.state``

    On shutdown:
      - Close HTTP clients, gRPC transports and Redis connections.
    """
    _configure_logging()
    logger.info(
        "app.startup",
        env=settings.env,
        redis=bool(settings.redis_url),
        status_policy=settings.status_policy,
    )

    app.state.start_time = time.time()

    # -- 1. Stores ----------------------------------------------------------
    from src.services.verification.challenge_store import (
        InMemoryChallengeStore,
        RedisChallengeStore,
    )
    from src.services.verification.records import InMemoryRecordStore, RedisRecordStore

    if settings.redis_url:
        challenge_store = RedisChallengeStore.from_url(
            settings.redis_url,
            ttl_seconds=settings.challenge_ttl_seconds,
            code_bytes=settings.challenge_code_bytes,
        )
        record_store = RedisRecordStore.from_url(settings.redis_url)
    else:
        challenge_store = InMemoryChallengeStore(
            ttl_seconds=settings.challenge_ttl_seconds,
            code_bytes=settings.challenge_code_bytes,
        )
        record_store = InMemoryRecordStore()
        if settings.is_production:
            logger.warning("app.in_memory_stores_in_production")
    app.state.challenge_store = challenge_store
    app.state.record_store = record_store
    logger.info("app.stores_initialised", backend="redis" if settings.redis_url else "memory")

    # -- 2. GitHub ----------------------------------------------------------
    from src.services.verification.github_client import GitHubClient

    github = GitHubClient(
        settings.github_token,
        base_url=settings.github_api_url,
        timeout=settings.http_timeout_seconds,
    )
    if not settings.github_token:
        logger.warning("app.github_token_missing", note="anonymous API limits apply; contributions unavailable")
    app.state.github = github

    # -- 3. OCR / documents -------------------------------------------------
    from src.services.verification.documents import DocumentVerifier
    from src.services.verification.ocr import VisionOCREngine

    ocr_engine: VisionOCREngine | None = None
    try:
        ocr_engine = VisionOCREngine()
        logger.info("app.ocr_initialised")
    except Exception:
        logger.warning("app.ocr_init_failed", exc_info=True)
    app.state.ocr_engine = ocr_engine

    documents = (
        DocumentVerifier(ocr_engine, min_confidence=settings.ocr_min_confidence)
        if ocr_engine is not None
        else None
    )

    # -- 4. Identity --------------------------------------------------------
    from src.services.verification.identity import IdentityVerifier, build_provider

    identity = IdentityVerifier(
        build_provider(
            settings.identity_provider,
            webhook_url=settings.identity_webhook_url,
            webhook_token=settings.identity_webhook_token,
            timeout=settings.http_timeout_seconds,
        )
    )
    logger.info("app.identity_initialised", provider=settings.identity_provider)

    # -- 5. Orchestrator ----------------------------------------------------
    from src.services.verification.profile_store import InMemoryProfileStore

    profile_store = InMemoryProfileStore()
    app.state.profile_store = profile_store

    app.state.orchestrator = build_orchestrator(
        settings,
        github=github,
        challenges=challenge_store,
        records=record_store,
        profiles=profile_store,
        documents=documents,
        identity=identity,
    )

    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_start")

    await github.close()
    await identity.close()
    if ocr_engine is not None:
        await ocr_engine.close()
    if isinstance(challenge_store, RedisChallengeStore):
        await challenge_store.close()
    if isinstance(record_store, RedisRecordStore):
        await record_store.close()

    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="MentorGate API",
    description=(
        "MentorGate -- trust verification for mentor applicants. Combines a "
        "GitHub ownership challenge, OCR-validated credential documents and an "
        "out-of-band identity channel into a weighted score and status."
    ),
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

# -- CORS middleware --------------------------------------------------------
if settings.is_production:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8000", "http://127.0.0.1:8000"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS", "HEAD"],
        allow_headers=["Content-Type", "Accept", "Authorization", "X-API-Key"],
    )

# -- Custom middleware ------------------------------------------------------
app.add_middleware(
    RateLimitMiddleware,
    max_requests_per_minute=settings.rate_limit_per_minute,
    trusted_proxy_count=settings.trusted_proxy_count,
)

# -- Prometheus metrics -----------------------------------------------------
Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/api/v1/health"],
).instrument(app).expose(
    app,
    endpoint="/metrics",
    include_in_schema=not settings.is_production,
)

# -- Include routers -------------------------------------------------------
app.include_router(api_router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    """API information endpoint."""
    return {
        "name": "MentorGate API",
        "version": app.version,
        "docs": "/docs",
        "health": "/api/v1/health",
        "endpoints": {
            "initiate": "/api/v1/verification/github/initiate",
            "complete": "/api/v1/verification/github/complete",
            "documents": "/api/v1/verification/documents",
            "identity": "/api/v1/verification/identity",
            "status": "/api/v1/verification/status/{subject_id}",
            "record": "/api/v1/verification/record/{subject_id}",
        },
        "trust_signals": {
            "github": 0.4,
            "documents": 0.4,
            "identity": 0.2,
        },
    }
