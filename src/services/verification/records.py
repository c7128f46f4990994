"""Persistence for per-subject verification records.

Records are upserted keyed by subject with an optimistic version check:
a writer passes the version it read, and the store refuses the write
with :class:`RecordConflictError` if another writer got there first.
Unlike the challenge store, persistence failures are never absorbed --
a lost write would corrupt the trust record, so every backend error is
raised as :class:`PersistenceError`.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import orjson
import structlog
from redis.exceptions import RedisError, WatchError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.models.verification import VerificationRecord
from src.services.verification.exceptions import PersistenceError, RecordConflictError

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = structlog.get_logger(__name__)


@runtime_checkable
class VerificationRecordStore(Protocol):
    """Async record store interface."""

    async def get(self, subject_id: str) -> VerificationRecord | None: ...

    async def upsert(
        self,
        record: VerificationRecord,
        *,
        expected_version: int | None = None,
    ) -> VerificationRecord: ...


def _check_version(subject_id: str, expected: int | None, actual: int) -> None:
    if expected is not None and expected != actual:
        raise RecordConflictError(subject_id, expected, actual)


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryRecordStore:
    """Process-local record store; versions guarded by an asyncio lock."""

    __slots__ = ("_lock", "_records")

    def __init__(self) -> None:
        self._records: dict[str, VerificationRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, subject_id: str) -> VerificationRecord | None:
        async with self._lock:
            record = self._records.get(subject_id)
            return record.model_copy(deep=True) if record is not None else None

    async def upsert(
        self,
        record: VerificationRecord,
        *,
        expected_version: int | None = None,
    ) -> VerificationRecord:
        async with self._lock:
            current = self._records.get(record.subject_id)
            current_version = current.version if current is not None else 0
            _check_version(record.subject_id, expected_version, current_version)

            stored = record.model_copy(update={"version": current_version + 1}, deep=True)
            self._records[record.subject_id] = stored

        logger.info(
            "records.upserted",
            subject_id=record.subject_id,
            status=stored.status,
            version=stored.version,
        )
        return stored.model_copy(deep=True)

    @property
    def size(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisRecordStore:
    """Redis-backed record store using ``WATCH``/``MULTI`` for atomic upserts.

    A ``WatchError`` means another client touched the key between our
    read and our write.  Blind upserts (no expected version) are retried
    a few times via tenacity; versioned upserts re-read and surface the
    conflict instead of overwriting.
    """

    __slots__ = ("_namespace", "_redis")

    def __init__(self, redis: Redis, *, namespace: str = "mentorgate:record:") -> None:
        self._redis = redis
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisRecordStore:
        import redis.asyncio as aioredis

        return cls(aioredis.Redis.from_url(url, decode_responses=False), **kwargs)

    def _key(self, subject_id: str) -> str:
        return f"{self._namespace}{subject_id}"

    @staticmethod
    def _decode(raw: bytes | None) -> VerificationRecord | None:
        if raw is None:
            return None
        return VerificationRecord.model_validate(orjson.loads(raw))

    async def get(self, subject_id: str) -> VerificationRecord | None:
        try:
            raw = await self._redis.get(self._key(subject_id))
            return self._decode(raw)
        except (RedisError, orjson.JSONDecodeError, ValueError) as exc:
            logger.error("records.read_failed", subject_id=subject_id, error=str(exc))
            raise PersistenceError(f"Failed to read verification record for {subject_id!r}") from exc

    async def upsert(
        self,
        record: VerificationRecord,
        *,
        expected_version: int | None = None,
    ) -> VerificationRecord:
        try:
            stored = await self._upsert_with_retry(record, expected_version)
        except RecordConflictError:
            logger.warning(
                "records.version_conflict",
                subject_id=record.subject_id,
                expected_version=expected_version,
            )
            raise
        except (RedisError, orjson.JSONDecodeError, ValueError) as exc:
            logger.error("records.write_failed", subject_id=record.subject_id, error=str(exc))
            raise PersistenceError(f"Failed to write verification record for {record.subject_id!r}") from exc

        logger.info(
            "records.upserted",
            subject_id=record.subject_id,
            status=stored.status,
            version=stored.version,
            backend="redis",
        )
        return stored

    @retry(
        retry=retry_if_exception_type(WatchError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, max=0.5),
        reraise=True,
    )
    async def _upsert_with_retry(
        self,
        record: VerificationRecord,
        expected_version: int | None,
    ) -> VerificationRecord:
        key = self._key(record.subject_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.watch(key)
            current = self._decode(await pipe.get(key))
            current_version = current.version if current is not None else 0
            _check_version(record.subject_id, expected_version, current_version)

            stored = record.model_copy(update={"version": current_version + 1})
            pipe.multi()
            pipe.set(key, orjson.dumps(stored.model_dump(mode="json")))
            await pipe.execute()
        return stored

    async def close(self) -> None:
        await self._redis.aclose()
