"""Caller authentication for the verification endpoints.

Every calling service (platform backend, admin tooling, batch workers)
holds its own key, configured as ``MENTORGATE_API_KEYS="backend:k1,worker:k2"``
or as a single ``MENTORGATE_API_KEY`` registered under the caller name
``default``.  The matched caller name is bound into the structlog context
so every event logged while serving the request says who asked.

With no keys configured, development mode lets requests through as the
``anonymous`` caller; production refuses with 503.
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from config.settings import settings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

ANONYMOUS_CALLER = "anonymous"

_caller_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def match_caller(presented: str, caller_keys: dict[str, str]) -> str | None:
    """Return the caller owning *presented*, or *None*.

    Every configured key is compared so the time taken does not reveal
    which caller (if any) matched.
    """
    matched: str | None = None
    presented_bytes = presented.encode()
    for caller, key in caller_keys.items():
        if hmac.compare_digest(presented_bytes, key.encode()) and matched is None:
            matched = caller
    return matched


async def authenticate_caller(
    request: Request,
    presented: str | None = Security(_caller_key_header),
) -> str:
    """FastAPI dependency resolving the ``X-API-Key`` header to a caller name.

    Raises
    ------
    HTTPException
        401 when the header is missing, 403 when no caller owns the key,
        503 when production runs without any configured key.
    """
    caller_keys = settings.caller_keys
    client_ip = request.client.host if request.client else "unknown"

    if not caller_keys:
        if settings.is_production:
            logger.error("auth.no_callers_configured")
            raise HTTPException(status_code=503, detail="API authentication is not configured.")
        structlog.contextvars.bind_contextvars(caller=ANONYMOUS_CALLER)
        return ANONYMOUS_CALLER

    if not presented:
        logger.warning("auth.missing_key", path=request.url.path, client_ip=client_ip)
        raise HTTPException(
            status_code=401,
            detail="Missing X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    caller = match_caller(presented, caller_keys)
    if caller is None:
        logger.warning("auth.unknown_key", path=request.url.path, client_ip=client_ip)
        raise HTTPException(status_code=403, detail="Invalid API key.")

    structlog.contextvars.bind_contextvars(caller=caller)
    return caller
