"""
Dead Letter Store — append-only record of jobs that exhausted their retries.

Entries are never reprocessed automatically. An operator (or an explicit
administrative job) inspects them and decides whether to re-enqueue; the
entry itself stays, marked with the id of the replacement job.

Redis key layout (base = "{prefix}:{name}"):
  {base}:entries   HASH  entry_id → entry JSON
  {base}:order     ZSET  entry_id scored by failed-at epoch seconds
  {base}:by_job    HASH  job_id → entry_id (one entry per job)
"""
from __future__ import annotations

import asyncio
import copy
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from models.schemas import JobStatus
from job_queue.errors import InvalidJobState, broker_errors
from job_queue.message_queue import (
    Clock, Job, describe_error, format_trace, utcnow, _iso, _parse_dt,
)

logger = structlog.get_logger()


@dataclass
class DeadLetterEntry:
    """Terminal failure record with the full job snapshot."""
    original_job: Job
    error_message: str
    error_trace: str = ""
    attempts_made: int = 0
    failed_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    requeued_job_id: str = ""
    entry_id: str = ""

    def __post_init__(self):
        if not self.entry_id:
            self.entry_id = f"dlq_{uuid.uuid4().hex}"
        if self.failed_at is None:
            self.failed_at = utcnow()

    @property
    def job_id(self) -> str:
        return self.original_job.job_id

    @property
    def job_type(self) -> str:
        return self.original_job.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "original_job": self.original_job.to_dict(),
            "error": {"message": self.error_message, "trace": self.error_trace},
            "attempts_made": self.attempts_made,
            "failed_at": _iso(self.failed_at),
            "reviewed_at": _iso(self.reviewed_at),
            "requeued_job_id": self.requeued_job_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeadLetterEntry:
        error = data.get("error") or {}
        return cls(
            entry_id=data["entry_id"],
            original_job=Job.from_dict(data["original_job"]),
            error_message=error.get("message", ""),
            error_trace=error.get("trace", ""),
            attempts_made=int(data.get("attempts_made", 0)),
            failed_at=_parse_dt(data.get("failed_at")),
            reviewed_at=_parse_dt(data.get("reviewed_at")),
            requeued_job_id=data.get("requeued_job_id", ""),
        )


@dataclass
class DeadLetterFilter:
    job_type: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    reviewed: Optional[bool] = None
    requeued: Optional[bool] = None
    limit: int = 100

    def matches(self, entry: DeadLetterEntry) -> bool:
        if self.job_type is not None and entry.job_type != self.job_type:
            return False
        if self.since is not None and entry.failed_at < self.since:
            return False
        if self.until is not None and entry.failed_at > self.until:
            return False
        if self.reviewed is not None and (entry.reviewed_at is not None) != self.reviewed:
            return False
        if self.requeued is not None and bool(entry.requeued_job_id) != self.requeued:
            return False
        return True


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class DeadLetterStore(ABC):
    """Append-only dead-letter persistence."""

    def __init__(self, name: str = "dead-letters", clock: Clock = utcnow):
        self.name = name
        self._clock = clock

    def _new_entry(self, job: Job, error: Union[BaseException, str], attempts_made: int) -> DeadLetterEntry:
        if job.status not in (JobStatus.FAILED, JobStatus.DEAD_LETTERED):
            raise InvalidJobState(
                f"Job {job.job_id} is {job.status.value}; only failed jobs are dead-lettered", self.name
            )
        return DeadLetterEntry(
            original_job=copy.deepcopy(job),
            error_message=describe_error(error),
            error_trace=format_trace(error),
            attempts_made=attempts_made,
            failed_at=self._clock(),
        )

    @abstractmethod
    async def connect(self):
        ...

    @abstractmethod
    async def close(self):
        ...

    @abstractmethod
    async def record(self, job: Job, error: Union[BaseException, str], attempts_made: int) -> str:
        """Append one entry for `job`. Recording the same job again returns the existing entry id."""
        ...

    @abstractmethod
    async def list(self, filter: Optional[DeadLetterFilter] = None) -> list[DeadLetterEntry]:
        """Entries matching `filter`, oldest first."""
        ...

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def mark_reviewed(self, entry_id: str) -> Optional[DeadLetterEntry]:
        ...

    @abstractmethod
    async def mark_requeued(self, entry_id: str, new_job_id: str) -> Optional[DeadLetterEntry]:
        ...

    @abstractmethod
    async def purge(self) -> int:
        """Administrative wipe of every entry."""
        ...


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryDeadLetterStore(DeadLetterStore):

    def __init__(self, name: str = "dead-letters", clock: Clock = utcnow):
        super().__init__(name, clock)
        self._entries: dict[str, DeadLetterEntry] = {}
        self._by_job: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def connect(self):
        logger.info("inmemory_dead_letter_store_connected", store=self.name)

    async def close(self):
        pass

    async def record(self, job: Job, error: Union[BaseException, str], attempts_made: int) -> str:
        async with self._lock:
            existing = self._by_job.get(job.job_id)
            if existing:
                logger.info("dead_letter_already_recorded", job_id=job.job_id, entry_id=existing)
                return existing
            entry = self._new_entry(job, error, attempts_made)
            self._entries[entry.entry_id] = entry
            self._by_job[job.job_id] = entry.entry_id
        logger.warning("job_moved_to_dlq",
                       store=self.name,
                       job_id=job.job_id,
                       job_type=job.name,
                       entry_id=entry.entry_id,
                       attempts=attempts_made,
                       error=entry.error_message)
        return entry.entry_id

    async def list(self, filter: Optional[DeadLetterFilter] = None) -> list[DeadLetterEntry]:
        filter = filter or DeadLetterFilter()
        matched = [e for e in self._entries.values() if filter.matches(e)]
        matched.sort(key=lambda e: e.failed_at)
        return [copy.deepcopy(e) for e in matched[:filter.limit]]

    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        entry = self._entries.get(entry_id)
        return copy.deepcopy(entry) if entry else None

    async def count(self) -> int:
        return len(self._entries)

    async def mark_reviewed(self, entry_id: str) -> Optional[DeadLetterEntry]:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            if entry.reviewed_at is None:
                entry.reviewed_at = self._clock()
            return copy.deepcopy(entry)

    async def mark_requeued(self, entry_id: str, new_job_id: str) -> Optional[DeadLetterEntry]:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            entry.requeued_job_id = new_job_id
            return copy.deepcopy(entry)

    async def purge(self) -> int:
        async with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._by_job.clear()
        logger.warning("dead_letters_purged", store=self.name, removed=removed)
        return removed


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisDeadLetterStore(DeadLetterStore):

    def __init__(self, name: str = "dead-letters", redis_url: str = "redis://localhost:6379",
                 key_prefix: str = "notify", redis=None, clock: Clock = utcnow):
        super().__init__(name, clock)
        self._redis_url = redis_url
        self._redis = redis
        self._owns_client = redis is None
        base = f"{key_prefix}:{name}"
        self.keys = {
            "entries": f"{base}:entries",
            "order": f"{base}:order",
            "by_job": f"{base}:by_job",
        }

    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        async with broker_errors(self.name, "connect"):
            await self._redis.ping()
        logger.info("redis_dead_letter_store_connected", store=self.name)

    async def close(self):
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None

    async def _load(self, entry_id: str) -> Optional[DeadLetterEntry]:
        raw = await self._redis.hget(self.keys["entries"], entry_id)
        return DeadLetterEntry.from_dict(json.loads(raw)) if raw else None

    async def _save(self, entry: DeadLetterEntry):
        await self._redis.hset(self.keys["entries"], entry.entry_id, json.dumps(entry.to_dict(), default=str))

    async def record(self, job: Job, error: Union[BaseException, str], attempts_made: int) -> str:
        entry = self._new_entry(job, error, attempts_made)
        async with broker_errors(self.name, "record"):
            # HSETNX claims the job id so a duplicate record() cannot add a second entry
            claimed = await self._redis.hsetnx(self.keys["by_job"], job.job_id, entry.entry_id)
            if not claimed:
                existing = await self._redis.hget(self.keys["by_job"], job.job_id)
                logger.info("dead_letter_already_recorded", job_id=job.job_id, entry_id=existing)
                return existing
            pipe = self._redis.pipeline(transaction=True)
            pipe.hset(self.keys["entries"], entry.entry_id, json.dumps(entry.to_dict(), default=str))
            pipe.zadd(self.keys["order"], {entry.entry_id: entry.failed_at.timestamp()})
            await pipe.execute()
        logger.warning("job_moved_to_dlq",
                       store=self.name,
                       job_id=job.job_id,
                       job_type=job.name,
                       entry_id=entry.entry_id,
                       attempts=attempts_made,
                       error=entry.error_message)
        return entry.entry_id

    async def list(self, filter: Optional[DeadLetterFilter] = None) -> list[DeadLetterEntry]:
        filter = filter or DeadLetterFilter()
        low = filter.since.timestamp() if filter.since else "-inf"
        high = filter.until.timestamp() if filter.until else "+inf"
        async with broker_errors(self.name, "list"):
            ids = await self._redis.zrangebyscore(self.keys["order"], low, high)
            if not ids:
                return []
            raw = await self._redis.hmget(self.keys["entries"], ids)
        entries = [DeadLetterEntry.from_dict(json.loads(r)) for r in raw if r]
        return [e for e in entries if filter.matches(e)][:filter.limit]

    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        async with broker_errors(self.name, "get"):
            return await self._load(entry_id)

    async def count(self) -> int:
        async with broker_errors(self.name, "count"):
            return await self._redis.zcard(self.keys["order"])

    async def mark_reviewed(self, entry_id: str) -> Optional[DeadLetterEntry]:
        async with broker_errors(self.name, "mark_reviewed"):
            entry = await self._load(entry_id)
            if entry is not None and entry.reviewed_at is None:
                entry.reviewed_at = self._clock()
                await self._save(entry)
        return entry

    async def mark_requeued(self, entry_id: str, new_job_id: str) -> Optional[DeadLetterEntry]:
        async with broker_errors(self.name, "mark_requeued"):
            entry = await self._load(entry_id)
            if entry is not None:
                entry.requeued_job_id = new_job_id
                await self._save(entry)
        return entry

    async def purge(self) -> int:
        async with broker_errors(self.name, "purge"):
            removed = await self._redis.zcard(self.keys["order"])
            await self._redis.delete(*self.keys.values())
        logger.warning("dead_letters_purged", store=self.name, removed=removed)
        return removed


def create_dead_letter_store(name: str, queue_config: dict[str, Any] = None, **kwargs) -> DeadLetterStore:
    """Factory: create the dead letter store matching the queue backend."""
    config = queue_config or {}
    if config.get("backend", "memory") == "redis":
        return RedisDeadLetterStore(
            name,
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            key_prefix=config.get("key_prefix", "notify"),
            **kwargs,
        )
    return InMemoryDeadLetterStore(name, **kwargs)


# ──────────────────────────────────────────────────────────────
#  Reviewer
# ──────────────────────────────────────────────────────────────

class DeadLetterReviewer:
    """
    Background loop that surfaces new dead letters in the logs and marks them
    reviewed. It never re-enqueues anything.
    """

    def __init__(self, store: DeadLetterStore, interval_seconds: float = 60.0, batch_size: int = 100):
        self.store = store
        self.interval = interval_seconds
        self.batch_size = batch_size
        self._task: Optional[asyncio.Task] = None

    async def review_once(self) -> int:
        pending = await self.store.list(DeadLetterFilter(reviewed=False, limit=self.batch_size))
        for entry in pending:
            logger.warning("dead_letter_pending_review",
                           entry_id=entry.entry_id,
                           job_id=entry.job_id,
                           job_type=entry.job_type,
                           recipient=entry.original_job.payload.get("recipient"),
                           attempts=entry.attempts_made,
                           failed_at=_iso(entry.failed_at),
                           error=entry.error_message)
            await self.store.mark_reviewed(entry.entry_id)
        return len(pending)

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("dead_letter_reviewer_started", interval=self.interval)
        while True:
            try:
                await self.review_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("dead_letter_review_error", error=str(e))
            await asyncio.sleep(self.interval)
