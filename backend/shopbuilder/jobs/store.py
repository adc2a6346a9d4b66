"""JobStore: job record persistence over a ranked chain of backends.

Backends, in rank order:
1. RedisJobBackend: durable hash per job, server-assigned timestamps
2. MemoryJobBackend: the JobRuntime's in-process map

Routing:
- memory when Redis is not configured, when the most recent durable write
  failed less than durable_retry_seconds ago, or when the job already lives
  in memory (memory is then authoritative for that job)
- otherwise Redis first; a failed durable create/update falls back to memory
  with the same data and flags degraded mode (logged, never raised)

A terminal record keeps its status, stage and error on every backend.

Only create() can raise, and only when every backend failed.
"""

import json
import time
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from shopbuilder.core.exceptions import DegradedStorageWarning, StorageUnavailableError
from shopbuilder.jobs.runtime import JobRuntime
from shopbuilder.jobs.schemas import JobRecord

logger = structlog.get_logger(__name__)

JOB_KEY_PREFIX = "appjob:"
_TIMESTAMP_FIELDS = ("created_at", "updated_at")


class JobBackend(Protocol):
    name: str

    async def create(self, record: JobRecord) -> JobRecord: ...

    async def update(self, job_id: str, fields: dict[str, Any]) -> JobRecord | None: ...

    async def get(self, job_id: str) -> JobRecord | None: ...

    async def delete(self, job_id: str) -> None: ...

    async def purge_expired(self, cutoff: datetime) -> int: ...


def normalize_timestamp(value: Any) -> str:
    """Normalize epoch seconds or ISO strings to the ISO-8601 UTC form used in memory."""
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), UTC).isoformat()
    text = str(value)
    try:
        return datetime.fromtimestamp(float(text), UTC).isoformat()
    except ValueError:
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC).isoformat()


def _jsonable(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class MemoryJobBackend:
    """Process-lifetime map of job_id -> JobRecord."""

    name = "memory"

    def __init__(self, jobs: dict[str, JobRecord]) -> None:
        self._jobs = jobs

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    async def create(self, record: JobRecord) -> JobRecord:
        self._jobs[record.job_id] = record
        return record

    async def update(self, job_id: str, fields: dict[str, Any]) -> JobRecord | None:
        existing = self._jobs.get(job_id)
        if existing is None:
            return None
        merged = existing.merged(fields)
        self._jobs[job_id] = merged
        return merged

    async def get(self, job_id: str) -> JobRecord | None:
        return self._jobs.get(job_id)

    async def delete(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    async def purge_expired(self, cutoff: datetime) -> int:
        expired = [
            job_id
            for job_id, record in self._jobs.items()
            if datetime.fromisoformat(record.created_at) < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        return len(expired)


class RedisJobBackend:
    """Redis hash per job at appjob:{job_id}.

    Every field is stored JSON-encoded, except created_at/updated_at which hold
    epoch seconds taken from the Redis server clock (TIME).
    """

    name = "redis"

    def __init__(self, redis: Redis, ttl_seconds: int) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(job_id: str) -> str:
        return f"{JOB_KEY_PREFIX}{job_id}"

    async def _server_time(self) -> str:
        seconds, micros = await self.redis.time()
        return f"{int(seconds)}.{int(micros):06d}"

    @staticmethod
    def _encode(fields: dict[str, Any]) -> dict[str, str]:
        return {
            name: json.dumps(_jsonable(value))
            for name, value in fields.items()
            if name not in _TIMESTAMP_FIELDS
        }

    @staticmethod
    def _decode(raw: dict[str, str]) -> JobRecord:
        data: dict[str, Any] = {}
        for name, value in raw.items():
            if name in _TIMESTAMP_FIELDS:
                data[name] = normalize_timestamp(value)
            else:
                data[name] = json.loads(value)
        return JobRecord.model_validate(data)

    async def create(self, record: JobRecord) -> JobRecord:
        now = await self._server_time()
        mapping = self._encode(record.model_dump(mode="json"))
        mapping["created_at"] = now
        mapping["updated_at"] = now

        key = self.key(record.job_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=mapping)
            pipe.expire(key, self.ttl_seconds)
            await pipe.execute()

        return self._decode(mapping)

    async def update(self, job_id: str, fields: dict[str, Any]) -> JobRecord | None:
        """Check-and-set merge under WATCH so a concurrent terminal write is never undone."""
        key = self.key(job_id)
        now = await self._server_time()

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.hgetall(key)
                    if not raw:
                        return None

                    mapping = self._encode(self._decode(raw).writable_fields(fields))
                    mapping["updated_at"] = now
                    pipe.multi()
                    pipe.hset(key, mapping=mapping)
                    pipe.hgetall(key)
                    _, merged = await pipe.execute()
                    return self._decode(merged)
                except WatchError:
                    logger.debug("job_update_retry", job_id=job_id)

    async def get(self, job_id: str) -> JobRecord | None:
        raw = await self.redis.hgetall(self.key(job_id))
        return self._decode(raw) if raw else None

    async def delete(self, job_id: str) -> None:
        await self.redis.delete(self.key(job_id))

    async def purge_expired(self, cutoff: datetime) -> int:
        removed = 0
        async for key in self.redis.scan_iter(match=f"{JOB_KEY_PREFIX}*", count=100):
            created = await self.redis.hget(key, "created_at")
            if created is None:
                continue
            try:
                created_at = datetime.fromisoformat(normalize_timestamp(created))
            except ValueError:
                logger.warning("job_created_at_unparseable", key=key, value=created)
                continue
            if created_at < cutoff:
                await self.redis.delete(key)
                removed += 1
        return removed


class JobStore:
    """Job persistence with durable-first routing and in-memory fallback."""

    def __init__(
        self,
        runtime: JobRuntime,
        redis: Redis | None = None,
        retention_seconds: int = 86400,
        durable_retry_seconds: float = 30.0,
        clock=time.monotonic,
    ) -> None:
        self.memory = MemoryJobBackend(runtime.jobs)
        self.durable: RedisJobBackend | None = (
            RedisJobBackend(redis, retention_seconds) if redis is not None else None
        )
        self.retention_seconds = retention_seconds
        self.durable_retry_seconds = durable_retry_seconds
        self.last_degradation: DegradedStorageWarning | None = None
        self._clock = clock
        self._durable_failed_at: float | None = None
        # Last record this store saw per job; merge base when Redis fails mid-update
        self._snapshots: dict[str, JobRecord] = {}

    @property
    def durable_suspended(self) -> bool:
        """True while the last durable write failed within durable_retry_seconds."""
        if self._durable_failed_at is None:
            return False
        return self._clock() - self._durable_failed_at < self.durable_retry_seconds

    @property
    def degraded(self) -> bool:
        return self.durable is None or self._durable_failed_at is not None

    def _chain(self, job_id: str) -> list[JobBackend]:
        if self.durable is None or self.durable_suspended or job_id in self.memory:
            return [self.memory]
        return [self.durable, self.memory]

    def _degrade(self, operation: str, job_id: str, exc: Exception) -> None:
        self._durable_failed_at = self._clock()
        self.last_degradation = DegradedStorageWarning(operation, job_id, str(exc))
        logger.warning(
            "job_store_degraded",
            operation=operation,
            job_id=job_id,
            error=str(exc),
            error_type=type(exc).__name__,
            fallback="memory",
        )

    def _remember(self, backend: JobBackend, record: JobRecord) -> JobRecord:
        if backend is self.durable and self._durable_failed_at is not None:
            self._durable_failed_at = None
            logger.info("job_store_recovered", job_id=record.job_id)
        self._snapshots[record.job_id] = record
        return record

    async def create(self, record: JobRecord) -> JobRecord:
        """Persist a new record; raises StorageUnavailableError if every backend fails."""
        errors: list[str] = []
        for backend in self._chain(record.job_id):
            try:
                stored = await backend.create(record)
            except Exception as exc:
                errors.append(f"{backend.name}: {exc}")
                if backend is self.durable:
                    self._degrade("create", record.job_id, exc)
                else:
                    logger.error("job_store_memory_write_failed", job_id=record.job_id, error=str(exc))
                continue
            return self._remember(backend, stored)

        raise StorageUnavailableError(f"Could not create job {record.job_id}: {'; '.join(errors)}")

    async def update(self, job_id: str, fields: dict[str, Any]) -> JobRecord | None:
        """Shallow-merge fields into the record. Never raises.

        Returns the merged record, or None if the job is unknown everywhere.
        """
        for backend in self._chain(job_id):
            try:
                if backend is self.memory and job_id not in self.memory:
                    base = self._snapshots.get(job_id)
                    if base is None:
                        break
                    stored = await self.memory.create(base.merged(fields))
                else:
                    stored = await backend.update(job_id, fields)
            except Exception as exc:
                if backend is self.durable:
                    self._degrade("update", job_id, exc)
                else:
                    logger.error("job_store_memory_write_failed", job_id=job_id, error=str(exc))
                continue

            if stored is None:
                break
            return self._remember(backend, stored)

        logger.warning("job_update_target_missing", job_id=job_id, fields=sorted(fields))
        return None

    async def get(self, job_id: str) -> JobRecord | None:
        """Memory first (authoritative for jobs living there), then Redis."""
        record = await self.memory.get(job_id)
        if record is None and self.durable is not None:
            try:
                record = await self.durable.get(job_id)
            except Exception as exc:
                logger.warning("job_store_read_failed", job_id=job_id, error=str(exc),
                               error_type=type(exc).__name__)
                record = self._snapshots.get(job_id)

        if record is not None:
            self._snapshots[job_id] = record
        return record

    async def delete(self, job_id: str) -> None:
        self._snapshots.pop(job_id, None)
        await self.memory.delete(job_id)
        if self.durable is not None:
            try:
                await self.durable.delete(job_id)
            except Exception as exc:
                logger.warning("job_store_delete_failed", job_id=job_id, error=str(exc))

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete records created more than retention_seconds ago from every backend."""
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.retention_seconds)

        removed = await self.memory.purge_expired(cutoff)
        if self.durable is not None:
            try:
                removed += await self.durable.purge_expired(cutoff)
            except Exception as exc:
                logger.warning("job_store_purge_failed", error=str(exc), error_type=type(exc).__name__)

        for job_id, record in list(self._snapshots.items()):
            if datetime.fromisoformat(record.created_at) < cutoff:
                del self._snapshots[job_id]

        if removed:
            logger.info("expired_jobs_purged", removed=removed)
        return removed
