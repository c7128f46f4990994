"""Health check endpoints for MentorGate API v1.

Provides liveness and readiness probes for container deployments.  The
readiness check verifies that the challenge and record stores answer
reads, so the load balancer only routes traffic to instances that can
actually persist verdicts.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_PROBE_SUBJECT = "_health_check"


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Basic health check response."""

    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    """Readiness check response with individual component statuses."""

    status: str
    checks: dict[str, str]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe.

    Returns 200 if the application process is running and able to
    handle requests.  Does *not* check downstream dependencies.
    """
    start_time: float = getattr(request.app.state, "start_time", time.time())
    uptime = time.time() - start_time

    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(uptime, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Readiness probe over the challenge store, record store and orchestrator."""
    checks: dict[str, str] = {}
    all_ok = True

    for name in ("challenge_store", "record_store"):
        store = getattr(request.app.state, name, None)
        if store is None:
            checks[name] = "not_configured"
            all_ok = False
            continue
        try:
            await store.get(_PROBE_SUBJECT)
            checks[name] = "ok"
        except Exception as exc:
            checks[name] = f"error: {exc!s}"
            all_ok = False

    checks["ocr"] = "ok" if getattr(request.app.state, "ocr_engine", None) is not None else "not_configured"

    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is not None:
        checks["orchestrator"] = "ok"
    else:
        checks["orchestrator"] = "not_initialised"
        all_ok = False

    status = "ready" if all_ok else "degraded"

    logger.info("health.readiness_check", status=status, checks=checks)

    return ReadinessResponse(status=status, checks=checks)
