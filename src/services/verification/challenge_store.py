"""Challenge session store for GitHub ownership proofs.

Holds at most one outstanding challenge per subject.  Issuing a new
challenge overwrites (and thereby invalidates) the previous one.
Sessions expire lazily: ``get`` returns *None* once ``now > expires_at``.

Two backends implement the :class:`ChallengeStore` protocol:

* :class:`InMemoryChallengeStore` -- process-local dict guarded by an
  :class:`asyncio.Lock`; suitable for single-instance deployments.
* :class:`RedisChallengeStore` -- shared across instances via
  ``redis.asyncio``; Redis ``EX`` mirrors the session TTL.  Redis
  failures surface as :class:`PersistenceError`.
"""

from __future__ import annotations

import asyncio
import secrets
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import orjson
import structlog
from redis.exceptions import RedisError

from src.models.verification import ChallengeSession
from src.services.verification.exceptions import PersistenceError

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_CODE_BYTES = 4


def generate_code(num_bytes: int = DEFAULT_CODE_BYTES) -> str:
    """Cryptographically random lowercase hex token (>= 8 characters)."""
    return secrets.token_hex(max(num_bytes, DEFAULT_CODE_BYTES))


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ChallengeStore(Protocol):
    """Async challenge session store interface."""

    async def issue(self, subject_id: str, claimed_handle: str) -> ChallengeSession: ...

    async def get(self, subject_id: str) -> ChallengeSession | None: ...

    async def invalidate(self, subject_id: str) -> None: ...


def _new_session(
    subject_id: str,
    claimed_handle: str,
    ttl_seconds: int,
    code_bytes: int,
) -> ChallengeSession:
    now = datetime.now(UTC)
    return ChallengeSession(
        subject_id=subject_id,
        claimed_handle=claimed_handle,
        code=generate_code(code_bytes),
        issued_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryChallengeStore:
    """Dict-backed challenge store with lazy expiry.

    Safe for concurrent coroutines within one event loop via
    :class:`asyncio.Lock`.  :meth:`sweep` may be called periodically to
    drop expired sessions; it is never required for correctness.
    """

    __slots__ = ("_code_bytes", "_lock", "_sessions", "_ttl_seconds")

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        code_bytes: int = DEFAULT_CODE_BYTES,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._code_bytes = code_bytes
        self._sessions: dict[str, ChallengeSession] = {}
        self._lock = asyncio.Lock()

    async def issue(self, subject_id: str, claimed_handle: str) -> ChallengeSession:
        session = _new_session(subject_id, claimed_handle, self._ttl_seconds, self._code_bytes)
        async with self._lock:
            replaced = subject_id in self._sessions
            self._sessions[subject_id] = session
        logger.info(
            "challenge.issued",
            subject_id=subject_id,
            claimed_handle=claimed_handle,
            replaced=replaced,
            expires_at=session.expires_at.isoformat(),
        )
        return session

    async def get(self, subject_id: str) -> ChallengeSession | None:
        async with self._lock:
            session = self._sessions.get(subject_id)
            if session is None:
                return None
            if session.is_expired():
                del self._sessions[subject_id]
                logger.info("challenge.expired", subject_id=subject_id)
                return None
            return session

    async def invalidate(self, subject_id: str) -> None:
        async with self._lock:
            self._sessions.pop(subject_id, None)

    async def sweep(self) -> int:
        """Remove every expired session; return how many were dropped."""
        now = datetime.now(UTC)
        async with self._lock:
            stale = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.debug("challenge.sweep", removed=len(stale))
        return len(stale)

    @property
    def size(self) -> int:
        """Return the current number of (possibly expired) sessions."""
        return len(self._sessions)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisChallengeStore:
    """Redis-backed challenge store shared by all service instances."""

    __slots__ = ("_code_bytes", "_namespace", "_redis", "_ttl_seconds")

    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        code_bytes: int = DEFAULT_CODE_BYTES,
        namespace: str = "mentorgate:challenge:",
    ) -> None:
        self._redis = redis
        self._ttl_seconds = ttl_seconds
        self._code_bytes = code_bytes
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisChallengeStore:
        import redis.asyncio as aioredis

        return cls(aioredis.Redis.from_url(url, decode_responses=False), **kwargs)

    def _key(self, subject_id: str) -> str:
        return f"{self._namespace}{subject_id}"

    async def issue(self, subject_id: str, claimed_handle: str) -> ChallengeSession:
        session = _new_session(subject_id, claimed_handle, self._ttl_seconds, self._code_bytes)
        try:
            await self._redis.set(
                self._key(subject_id),
                orjson.dumps(session.model_dump(mode="json")),
                ex=self._ttl_seconds,
            )
        except RedisError as exc:
            logger.error("challenge.store_failed", subject_id=subject_id, op="issue", error=str(exc))
            raise PersistenceError(f"Could not store challenge for {subject_id!r}") from exc
        logger.info(
            "challenge.issued",
            subject_id=subject_id,
            claimed_handle=claimed_handle,
            backend="redis",
            expires_at=session.expires_at.isoformat(),
        )
        return session

    async def get(self, subject_id: str) -> ChallengeSession | None:
        try:
            raw: bytes | None = await self._redis.get(self._key(subject_id))
        except RedisError as exc:
            logger.error("challenge.store_failed", subject_id=subject_id, op="get", error=str(exc))
            raise PersistenceError(f"Could not read challenge for {subject_id!r}") from exc
        if raw is None:
            return None
        try:
            session = ChallengeSession.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValueError):
            logger.warning("challenge.corrupt_session", subject_id=subject_id)
            await self.invalidate(subject_id)
            return None
        # Redis EX has second granularity; enforce the exact deadline too.
        if session.is_expired():
            await self.invalidate(subject_id)
            return None
        return session

    async def invalidate(self, subject_id: str) -> None:
        try:
            await self._redis.delete(self._key(subject_id))
        except RedisError as exc:
            logger.error("challenge.store_failed", subject_id=subject_id, op="invalidate", error=str(exc))
            raise PersistenceError(f"Could not invalidate challenge for {subject_id!r}") from exc

    async def close(self) -> None:
        await self._redis.aclose()
