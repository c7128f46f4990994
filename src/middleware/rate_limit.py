"""Per-client sliding-window rate limiting.

Every request is counted against a per-IP window.  Paths listed in
``path_limits`` additionally get their own, usually tighter, window:
challenge initiation and completion spend GitHub API quota and OCR time,
so they are budgeted separately from cheap status reads.

State lives in process memory; behind several instances each one
enforces its own budget.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Iterable, Mapping
from typing import Final

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

DEFAULT_EXEMPT_PATHS: Final[frozenset[str]] = frozenset({
    "/api/v1/health",
    "/api/v1/health/ready",
    "/metrics",
    "/docs",
    "/redoc",
    "/openapi.json",
})

DEFAULT_PATH_LIMITS: Final[dict[str, int]] = {
    "/api/v1/verification/github/initiate": 10,
    "/api/v1/verification/github/complete": 20,
    "/api/v1/verification/documents": 10,
    "/api/v1/verification/identity": 10,
}

_WINDOW_SECONDS: Final[float] = 60.0
_SWEEP_EVERY: Final[int] = 1000


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window limiter keyed by client IP (and path, for budgeted paths).

    Parameters
    ----------
    app:
        The ASGI application.
    max_requests_per_minute:
        Global per-IP budget.
    trusted_proxy_count:
        Number of reverse proxies in front of the service.  The client
        address is read from ``X-Forwarded-For`` at index
        ``-(trusted_proxy_count + 1)``; 0 uses the leftmost entry.
    path_limits:
        Extra per-IP budgets for specific paths.
    exempt_paths:
        Paths that are never counted.
    """

    def __init__(
        self,
        app: object,
        max_requests_per_minute: int = 60,
        trusted_proxy_count: int = 1,
        path_limits: Mapping[str, int] | None = None,
        exempt_paths: Iterable[str] | None = None,
    ) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._max_rpm = max_requests_per_minute
        self._trusted_proxy_count = trusted_proxy_count
        self._path_limits = dict(DEFAULT_PATH_LIMITS if path_limits is None else path_limits)
        self._exempt = frozenset(DEFAULT_EXEMPT_PATHS if exempt_paths is None else exempt_paths)
        self._windows: dict[tuple[str, str], deque[float]] = {}
        self._lock = asyncio.Lock()
        self._seen = 0

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path.rstrip("/") or "/"
        if path in self._exempt:
            return await call_next(request)

        client_ip = self._client_ip(request)
        now = time.monotonic()

        buckets: list[tuple[tuple[str, str], int]] = [((client_ip, "*"), self._max_rpm)]
        if path in self._path_limits:
            buckets.append(((client_ip, path), self._path_limits[path]))

        async with self._lock:
            self._seen += 1
            if self._seen % _SWEEP_EVERY == 0:
                self._sweep(now)

            for key, limit in buckets:
                window = self._windows.setdefault(key, deque())
                while window and window[0] < now - _WINDOW_SECONDS:
                    window.popleft()
                if len(window) >= limit:
                    retry_after = max(1, int(_WINDOW_SECONDS - (now - window[0])) + 1)
                    logger.warning(
                        "rate_limit.exceeded",
                        client_ip=client_ip,
                        scope=key[1],
                        limit=limit,
                    )
                    return JSONResponse(
                        status_code=429,
                        content={
                            "detail": "Rate limit exceeded. Please try again later.",
                            "retry_after_seconds": retry_after,
                        },
                        headers={
                            "Retry-After": str(retry_after),
                            "X-RateLimit-Limit": str(limit),
                            "X-RateLimit-Remaining": "0",
                        },
                    )

            for key, _ in buckets:
                self._windows[key].append(now)
            remaining = min(limit - len(self._windows[key]) for key, limit in buckets)
            tightest = min(limit for _, limit in buckets)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(tightest)
        response.headers["X-RateLimit-Remaining"] = str(max(remaining, 0))
        return response

    def _client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
            if hops:
                if self._trusted_proxy_count == 0:
                    return hops[0]
                index = -(self._trusted_proxy_count + 1)
                return hops[index] if -index <= len(hops) else hops[0]

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
        return request.client.host if request.client else "unknown"

    def _sweep(self, now: float) -> None:
        cutoff = now - _WINDOW_SECONDS
        stale = [key for key, window in self._windows.items() if not window or window[-1] < cutoff]
        for key in stale:
            del self._windows[key]
        if stale:
            logger.debug("rate_limit.sweep", removed=len(stale))
