"""
Message Queue — Durable priority queue with in-memory and Redis backends.

Job lifecycle:
  waiting ──claim──▶ active ──ack──▶ completed
     ▲                 │ (lease expires: counts as a failed attempt)
     │   delayed ◀─────┤ fail (attempts left; gated by backoff)
     │      │          │
     └──────┘ promote  └─ fail (attempts exhausted) ─▶ failed ─▶ dead_lettered

Ordering: among ready jobs the lowest priority ordinal is claimed first,
ties broken by enqueue sequence (FIFO). A job is ready once both its
`not_before` (set at enqueue, immutable) and its `retry_at` (backoff gate,
set on each retryable failure) have passed.

A claim holds a lease of `lock_duration` seconds. A worker that dies or loses
the broker mid-job stops renewing it, and recover_stalled() later returns the
job to delayed (or failed once its attempts are used up).

Redis key layout (per queue, base = "{prefix}:{name}"):
  {base}:jobs           HASH   job_id → job JSON
  {base}:waiting        ZSET   score = priority * PRIORITY_SPAN + sequence
  {base}:delayed        ZSET   score = eligible-at epoch seconds
  {base}:active         ZSET   score = lease expiry epoch seconds
  {base}:completed      ZSET   score = finished-at epoch seconds
  {base}:failed         ZSET   score = failed-at epoch seconds
  {base}:dead_lettered  ZSET   score = moved-at epoch seconds
  {base}:seq            STRING enqueue sequence counter
  {base}:paused         STRING present while paused
"""
from __future__ import annotations

import asyncio
import copy
import heapq
import json
import traceback
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Union

from tenacity import retry, stop_after_attempt, wait_exponential

from models.schemas import JobPriority, JobStatus
from job_queue.errors import (
    InvalidJobOptions, InvalidJobState, InvalidPayload, JobNotFound,
    UnknownJobType, broker_errors,
)

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def describe_error(error: Union[BaseException, str]) -> str:
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return str(error)


def format_trace(error: Union[BaseException, str]) -> str:
    if isinstance(error, BaseException):
        return "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return ""


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class BackoffPolicy:
    """Retry delay policy. Exponential: delay * 2^(attempt-1)."""
    type: str = "exponential"
    delay: float = 2.0  # seconds

    def delay_for(self, attempt: int) -> timedelta:
        """Delay applied after the `attempt`-th failed attempt (1-based)."""
        attempt = max(attempt, 1)
        if self.type == "fixed":
            return timedelta(seconds=self.delay)
        return timedelta(seconds=self.delay * (2 ** (attempt - 1)))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "delay": self.delay}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> BackoffPolicy:
        data = data or {}
        return cls(type=data.get("type", "exponential"), delay=float(data.get("delay", 2.0)))


@dataclass
class JobOptions:
    """Per-enqueue delivery options. Unset fields fall back to queue defaults."""
    priority: Optional[int] = None
    delay: Optional[Union[float, timedelta]] = None
    not_before: Optional[datetime] = None
    max_attempts: Optional[int] = None
    backoff: Optional[BackoffPolicy] = None

    def merged(self, defaults: JobOptions) -> JobOptions:
        return JobOptions(
            priority=self.priority if self.priority is not None else defaults.priority,
            delay=self.delay if self.delay is not None else defaults.delay,
            not_before=self.not_before if self.not_before is not None else defaults.not_before,
            max_attempts=self.max_attempts if self.max_attempts is not None else defaults.max_attempts,
            backoff=self.backoff if self.backoff is not None else defaults.backoff,
        )


@dataclass
class Job:
    """A unit of deliverable work on the queue."""
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = JobPriority.NORMAL
    not_before: Optional[datetime] = None
    retry_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    status: JobStatus = JobStatus.WAITING
    sequence: int = 0
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: str = ""
    result: Any = None
    queue: str = ""
    job_id: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex}"
        if self.created_at is None:
            self.created_at = utcnow()

    @property
    def eligible_at(self) -> Optional[datetime]:
        gates = [t for t in (self.not_before, self.retry_at) if t is not None]
        return max(gates) if gates else None

    def is_ready(self, now: datetime) -> bool:
        eligible = self.eligible_at
        return eligible is None or eligible <= now

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempts_made, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "name": self.name,
            "payload": self.payload,
            "priority": int(self.priority),
            "not_before": _iso(self.not_before),
            "retry_at": _iso(self.retry_at),
            "locked_until": _iso(self.locked_until),
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "backoff": self.backoff.to_dict(),
            "status": self.status.value,
            "sequence": self.sequence,
            "created_at": _iso(self.created_at),
            "finished_at": _iso(self.finished_at),
            "last_error": self.last_error,
            "result": self.result,
            "queue": self.queue,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        return cls(
            job_id=data["job_id"],
            name=data["name"],
            payload=data.get("payload") or {},
            priority=int(data.get("priority", JobPriority.NORMAL)),
            not_before=_parse_dt(data.get("not_before")),
            retry_at=_parse_dt(data.get("retry_at")),
            locked_until=_parse_dt(data.get("locked_until")),
            attempts_made=int(data.get("attempts_made", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
            backoff=BackoffPolicy.from_dict(data.get("backoff")),
            status=JobStatus(data.get("status", JobStatus.WAITING.value)),
            sequence=int(data.get("sequence", 0)),
            created_at=_parse_dt(data.get("created_at")),
            finished_at=_parse_dt(data.get("finished_at")),
            last_error=data.get("last_error", ""),
            result=data.get("result"),
            queue=data.get("queue", ""),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, raw: str) -> Job:
        return cls.from_dict(json.loads(raw))


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """
    Abstract durable priority queue.

    Backends implement storage and claiming; validation, option defaults and
    the retry/failure transition live here so both backends agree on them.
    """

    def __init__(
        self,
        name: str,
        job_types: Optional[Iterable[str]] = None,
        default_options: Optional[JobOptions] = None,
        completed_max_age: float = 24 * 3600,
        completed_max_count: int = 1000,
        lock_duration: float = 300.0,
        clock: Clock = utcnow,
    ):
        self.name = name
        self.job_types = frozenset(job_types) if job_types is not None else None
        self.default_options = (default_options or JobOptions()).merged(
            JobOptions(priority=JobPriority.NORMAL, max_attempts=3, backoff=BackoffPolicy())
        )
        self.completed_max_age = completed_max_age
        self.completed_max_count = completed_max_count
        self.lock_duration = lock_duration
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _lease(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.lock_duration)

    # ── Lifecycle ─────────────────────────────────────────────

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    # ── Producer side ─────────────────────────────────────────

    async def enqueue(
        self, name: str, payload: dict[str, Any], options: Optional[JobOptions] = None
    ) -> str:
        """Validate and persist one job. Returns its id."""
        job = self._build_job(name, payload, options)
        await self._push([job])
        logger.info("job_enqueued",
                    queue=self.name,
                    job_id=job.job_id,
                    job_type=job.name,
                    priority=int(job.priority),
                    status=job.status.value,
                    not_before=_iso(job.not_before))
        return job.job_id

    async def enqueue_bulk(
        self, name: str, payloads: list[dict[str, Any]], options: Optional[JobOptions] = None
    ) -> list[str]:
        """Validate every payload first, then persist all. Nothing is written if any is invalid."""
        jobs = [self._build_job(name, payload, options) for payload in payloads]
        if jobs:
            await self._push(jobs)
        logger.info("jobs_enqueued_bulk",
                    queue=self.name,
                    job_type=name,
                    count=len(jobs))
        return [job.job_id for job in jobs]

    def _build_job(self, name: str, payload: dict[str, Any], options: Optional[JobOptions]) -> Job:
        if self.job_types is not None and name not in self.job_types:
            raise UnknownJobType(name, self.name)
        if not isinstance(payload, dict):
            raise InvalidPayload(f"Payload for {name!r} must be a mapping", self.name)
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise InvalidPayload(f"Payload for {name!r} is not serializable: {e}", self.name) from e

        opts = (options or JobOptions()).merged(self.default_options)
        try:
            priority = JobPriority(int(opts.priority))
        except (TypeError, ValueError) as e:
            raise InvalidJobOptions(f"Invalid priority {opts.priority!r}", self.name) from e
        if opts.max_attempts is None or int(opts.max_attempts) < 1:
            raise InvalidJobOptions(f"max_attempts must be >= 1, got {opts.max_attempts!r}", self.name)

        now = self._now()
        not_before = opts.not_before
        if opts.delay:
            delay = opts.delay if isinstance(opts.delay, timedelta) else timedelta(seconds=opts.delay)
            if delay.total_seconds() > 0:
                delayed_until = now + delay
                not_before = max(not_before, delayed_until) if not_before else delayed_until
        if not_before is not None and not_before.tzinfo is None:
            not_before = not_before.replace(tzinfo=timezone.utc)

        job = Job(
            name=name,
            payload=payload,
            priority=priority,
            not_before=not_before,
            max_attempts=int(opts.max_attempts),
            backoff=copy.copy(opts.backoff),
            queue=self.name,
            created_at=now,
        )
        job.status = JobStatus.WAITING if job.is_ready(now) else JobStatus.DELAYED
        return job

    @abstractmethod
    async def _push(self, jobs: list[Job]):
        """Assign sequence numbers and persist new jobs."""
        ...

    # ── Consumer side ─────────────────────────────────────────

    @abstractmethod
    async def dequeue_next(self, timeout: float = 0.0) -> Optional[Job]:
        """
        Claim the highest-priority ready job, waiting up to `timeout` seconds.
        Returns None on timeout or while paused.
        """
        ...

    @abstractmethod
    async def ack(self, job_id: str, result: Any = None) -> Job:
        """Mark an active job completed."""
        ...

    @abstractmethod
    async def fail(self, job_id: str, error: Union[BaseException, str], permanent: bool = False) -> Job:
        """
        Record one failed attempt. The job goes back to delayed (gated by
        backoff) while attempts remain, otherwise to failed.
        """
        ...

    @abstractmethod
    async def mark_dead_lettered(self, job_id: str) -> Job:
        """Move a failed job to the terminal dead_lettered status."""
        ...

    @abstractmethod
    async def extend_lock(self, job_id: str) -> bool:
        """Renew the lease on an active job. False if the job is no longer held."""
        ...

    @abstractmethod
    async def recover_stalled(self) -> list[Job]:
        """
        Return active jobs whose lease has expired to the queue, counting
        the lost attempt. Jobs with no attempts left end up failed and are
        returned so the caller can dead-letter them.
        """
        ...

    def _apply_stall(self, job: Job, now: datetime):
        expired = job.locked_until
        # The claim may have died before the job record was marked active
        job.status = JobStatus.ACTIVE
        self._apply_failure(job, f"stalled: lease expired at {_iso(expired) or 'unknown'}", now, permanent=False)

    def _log_stalled(self, job: Job):
        logger.warning("stalled_job_recovered",
                       queue=self.name,
                       job_id=job.job_id,
                       attempts=job.attempts_made,
                       status=job.status.value)

    def _apply_failure(self, job: Job, error: Union[BaseException, str], now: datetime, permanent: bool):
        if job.status != JobStatus.ACTIVE:
            raise InvalidJobState(f"Cannot fail job {job.job_id} in status {job.status.value}", self.name)
        job.locked_until = None
        job.attempts_made += 1
        job.last_error = describe_error(error)
        if job.attempts_made < job.max_attempts and not permanent:
            job.retry_at = now + job.backoff.delay_for(job.attempts_made)
            job.status = JobStatus.DELAYED
        else:
            job.status = JobStatus.FAILED
            job.finished_at = now

    def _apply_ack(self, job: Job, result: Any, now: datetime):
        if job.status != JobStatus.ACTIVE:
            raise InvalidJobState(f"Cannot ack job {job.job_id} in status {job.status.value}", self.name)
        job.status = JobStatus.COMPLETED
        job.locked_until = None
        job.finished_at = now
        job.result = result

    def _apply_dead_letter(self, job: Job):
        if job.status != JobStatus.FAILED:
            raise InvalidJobState(
                f"Only failed jobs can be dead-lettered; {job.job_id} is {job.status.value}", self.name
            )
        job.status = JobStatus.DEAD_LETTERED

    # ── Inspection & administration ───────────────────────────

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[Job]:
        ...

    @abstractmethod
    async def stats(self) -> dict[str, Any]:
        """Counts per status plus the paused flag."""
        ...

    @abstractmethod
    async def pause(self):
        ...

    @abstractmethod
    async def resume(self):
        ...

    @abstractmethod
    async def is_paused(self) -> bool:
        ...

    @abstractmethod
    async def clear(self) -> int:
        """Drain waiting/delayed jobs and purge completed/failed ones. Active jobs are left alone."""
        ...

    @abstractmethod
    async def promote_delayed(self) -> int:
        """Move delayed jobs whose gate has passed to waiting."""
        ...

    @abstractmethod
    async def prune_completed(self) -> int:
        """Apply the completed-job retention window (age and count)."""
        ...


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by heaps under an asyncio lock.
    Single-process only, no persistence.
    """

    _POLL_SLICE = 0.25

    def __init__(self, name: str, **kwargs):
        super().__init__(name, **kwargs)
        self._jobs: dict[str, Job] = {}
        self._ready: list[tuple[int, int, str]] = []      # (priority, sequence, job_id)
        self._delayed: list[tuple[float, int, str]] = []  # (eligible_ts, sequence, job_id)
        self._completed: deque[str] = deque()
        self._sequence = 0
        self._paused = False
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()

    async def connect(self):
        logger.info("inmemory_queue_connected", queue=self.name)

    async def close(self):
        self._wakeup.set()

    async def _push(self, jobs: list[Job]):
        async with self._lock:
            now = self._now()
            for job in jobs:
                self._sequence += 1
                job.sequence = self._sequence
                self._jobs[job.job_id] = job
                self._schedule(job, now)
        self._wakeup.set()

    def _schedule(self, job: Job, now: datetime):
        if job.is_ready(now):
            job.status = JobStatus.WAITING
            heapq.heappush(self._ready, (int(job.priority), job.sequence, job.job_id))
        else:
            job.status = JobStatus.DELAYED
            heapq.heappush(self._delayed, (job.eligible_at.timestamp(), job.sequence, job.job_id))

    def _promote(self, now: datetime) -> int:
        promoted = 0
        cutoff = now.timestamp()
        while self._delayed and self._delayed[0][0] <= cutoff:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.DELAYED:
                continue  # cleared or already moved
            job.status = JobStatus.WAITING
            heapq.heappush(self._ready, (int(job.priority), job.sequence, job.job_id))
            promoted += 1
        return promoted

    def _claim(self, now: datetime) -> Optional[Job]:
        if self._paused:
            return None
        self._promote(now)
        while self._ready:
            _, _, job_id = heapq.heappop(self._ready)
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.WAITING:
                continue
            job.status = JobStatus.ACTIVE
            job.locked_until = self._lease(now)
            return job
        return None

    async def dequeue_next(self, timeout: float = 0.0) -> Optional[Job]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout, 0.0)
        while True:
            async with self._lock:
                job = self._claim(self._now())
                if job is None:
                    self._wakeup.clear()
                else:
                    claimed = copy.deepcopy(job)
            if job is not None:
                logger.debug("job_claimed",
                             queue=self.name,
                             job_id=claimed.job_id,
                             priority=int(claimed.priority),
                             attempt=claimed.attempts_made + 1)
                return claimed

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=min(remaining, self._POLL_SLICE))
            except asyncio.TimeoutError:
                pass

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id, self.name)
        return job

    async def ack(self, job_id: str, result: Any = None) -> Job:
        async with self._lock:
            now = self._now()
            job = self._require(job_id)
            self._apply_ack(job, result, now)
            self._completed.append(job_id)
            snapshot = copy.deepcopy(job)
            self._prune(now)
        logger.info("job_completed", queue=self.name, job_id=job_id, attempts=snapshot.attempts_made + 1)
        return snapshot

    async def fail(self, job_id: str, error: Union[BaseException, str], permanent: bool = False) -> Job:
        async with self._lock:
            now = self._now()
            job = self._require(job_id)
            self._apply_failure(job, error, now, permanent)
            if job.status == JobStatus.DELAYED:
                self._schedule(job, now)
            snapshot = copy.deepcopy(job)
        if snapshot.status == JobStatus.FAILED:
            logger.warning("job_failed",
                           queue=self.name,
                           job_id=job_id,
                           attempts=snapshot.attempts_made,
                           error=snapshot.last_error)
        else:
            logger.info("job_scheduled_for_retry",
                        queue=self.name,
                        job_id=job_id,
                        attempt=snapshot.attempts_made,
                        retry_at=_iso(snapshot.retry_at))
        self._wakeup.set()
        return snapshot

    async def mark_dead_lettered(self, job_id: str) -> Job:
        async with self._lock:
            job = self._require(job_id)
            self._apply_dead_letter(job)
            return copy.deepcopy(job)

    async def extend_lock(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.ACTIVE:
                return False
            job.locked_until = self._lease(self._now())
            return True

    async def recover_stalled(self) -> list[Job]:
        async with self._lock:
            now = self._now()
            stalled = [
                job for job in self._jobs.values()
                if job.status == JobStatus.ACTIVE and job.locked_until is not None and job.locked_until <= now
            ]
            for job in stalled:
                self._apply_stall(job, now)
                if job.status == JobStatus.DELAYED:
                    self._schedule(job, now)
            recovered = [copy.deepcopy(job) for job in stalled]
        for job in recovered:
            self._log_stalled(job)
        if recovered:
            self._wakeup.set()
        return recovered

    def _prune(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=self.completed_max_age)
        removed = 0
        while self._completed:
            oldest = self._jobs.get(self._completed[0])
            too_many = len(self._completed) > self.completed_max_count
            too_old = oldest is not None and oldest.finished_at is not None and oldest.finished_at < cutoff
            if not (oldest is None or too_many or too_old):
                break
            job_id = self._completed.popleft()
            if oldest is not None and oldest.status == JobStatus.COMPLETED:
                del self._jobs[job_id]
                removed += 1
        return removed

    async def prune_completed(self) -> int:
        async with self._lock:
            removed = self._prune(self._now())
        if removed:
            logger.debug("completed_jobs_pruned", queue=self.name, count=removed)
        return removed

    async def promote_delayed(self) -> int:
        async with self._lock:
            promoted = self._promote(self._now())
        if promoted:
            logger.info("delayed_jobs_promoted", queue=self.name, count=promoted)
            self._wakeup.set()
        return promoted

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[Job]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.sequence)
        return [copy.deepcopy(j) for j in jobs[:limit]]

    async def stats(self) -> dict[str, Any]:
        counts = {s.value: 0 for s in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        counts["paused"] = self._paused
        return counts

    async def pause(self):
        self._paused = True
        logger.info("queue_paused", queue=self.name)

    async def resume(self):
        self._paused = False
        self._wakeup.set()
        logger.info("queue_resumed", queue=self.name)

    async def is_paused(self) -> bool:
        return self._paused

    async def clear(self) -> int:
        purge = {JobStatus.WAITING, JobStatus.DELAYED, JobStatus.COMPLETED, JobStatus.FAILED}
        async with self._lock:
            doomed = [jid for jid, job in self._jobs.items() if job.status in purge]
            for job_id in doomed:
                del self._jobs[job_id]
            self._ready.clear()
            self._delayed.clear()
            self._completed.clear()
        logger.warning("queue_cleared", queue=self.name, removed=len(doomed))
        return len(doomed)


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

# Sequence numbers stay below this, so priority dominates the score
# while remaining exact in a double (4 * 10**13 + seq < 2**53).
PRIORITY_SPAN = 10 ** 13

# KEYS: waiting, active, jobs, paused   ARGV: lease expiry (epoch seconds)
CLAIM_NEXT_JOB = """
if redis.call('EXISTS', KEYS[4]) == 1 then
  return false
end
local popped = redis.call('ZPOPMIN', KEYS[1])
if #popped == 0 then
  return false
end
redis.call('ZADD', KEYS[2], ARGV[1], popped[1])
return {popped[1], redis.call('HGET', KEYS[3], popped[1])}
"""


def priority_score(priority: int, sequence: int) -> float:
    return float(int(priority) * PRIORITY_SPAN + sequence)


class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis sorted sets.

    - Ready jobs live in one sorted set scored by (priority, sequence). A Lua
      script pops the lowest score and records it in the active set in one
      step, so any number of competing workers can claim safely.
    - The active set is scored by lease expiry. recover_stalled() hands jobs
      whose lease ran out back to the queue.
    - Delayed and retrying jobs wait in a third sorted set scored by their
      eligibility time until promote_delayed() moves them across.
    """

    _POLL_SLICE = 0.25

    def __init__(self, name: str, redis_url: str = "redis://localhost:6379",
                 key_prefix: str = "notify", redis=None, **kwargs):
        super().__init__(name, **kwargs)
        self._redis_url = redis_url
        self._redis = redis
        self._owns_client = redis is None
        self._claim_script = None
        base = f"{key_prefix}:{name}"
        self.keys = {
            "jobs": f"{base}:jobs",
            "waiting": f"{base}:waiting",
            "delayed": f"{base}:delayed",
            "active": f"{base}:active",
            "completed": f"{base}:completed",
            "failed": f"{base}:failed",
            "dead_lettered": f"{base}:dead_lettered",
            "seq": f"{base}:seq",
            "paused": f"{base}:paused",
        }

    def _broker(self, op: str):
        return broker_errors(self.name, op)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=5), reraise=True)
    async def _ping(self):
        await self._redis.ping()

    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
        async with self._broker("connect"):
            await self._ping()
        logger.info("redis_queue_connected", queue=self.name, url=self._redis_url)

    async def close(self):
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None
            self._claim_script = None

    async def _load(self, job_id: str) -> Optional[Job]:
        raw = await self._redis.hget(self.keys["jobs"], job_id)
        return Job.from_json(raw) if raw else None

    async def _require(self, job_id: str) -> Job:
        job = await self._load(job_id)
        if job is None:
            raise JobNotFound(job_id, self.name)
        return job

    async def _push(self, jobs: list[Job]):
        async with self._broker("enqueue"):
            last = await self._redis.incrby(self.keys["seq"], len(jobs))
            first = last - len(jobs) + 1
            pipe = self._redis.pipeline(transaction=True)
            for offset, job in enumerate(jobs):
                job.sequence = first + offset
                pipe.hset(self.keys["jobs"], job.job_id, job.to_json())
                if job.status == JobStatus.WAITING:
                    pipe.zadd(self.keys["waiting"], {job.job_id: priority_score(job.priority, job.sequence)})
                else:
                    pipe.zadd(self.keys["delayed"], {job.job_id: job.eligible_at.timestamp()})
            await pipe.execute()

    def _requeue(self, pipe, job: Job, now: datetime):
        """Queue the index update for a job coming back from active."""
        if job.status == JobStatus.DELAYED:
            if job.is_ready(now):
                job.status = JobStatus.WAITING
                pipe.zadd(self.keys["waiting"], {job.job_id: priority_score(job.priority, job.sequence)})
            else:
                pipe.zadd(self.keys["delayed"], {job.job_id: job.eligible_at.timestamp()})
        else:
            pipe.zadd(self.keys["failed"], {job.job_id: now.timestamp()})
        pipe.hset(self.keys["jobs"], job.job_id, job.to_json())

    async def promote_delayed(self) -> int:
        async with self._broker("promote_delayed"):
            now = self._now()
            due = await self._redis.zrangebyscore(self.keys["delayed"], "-inf", now.timestamp())
            promoted = 0
            for job_id in due:
                # ZREM decides which promoter owns the move when several run at once
                if not await self._redis.zrem(self.keys["delayed"], job_id):
                    continue
                job = await self._load(job_id)
                if job is None:
                    continue
                job.status = JobStatus.WAITING
                pipe = self._redis.pipeline(transaction=True)
                pipe.hset(self.keys["jobs"], job_id, job.to_json())
                pipe.zadd(self.keys["waiting"], {job_id: priority_score(job.priority, job.sequence)})
                await pipe.execute()
                promoted += 1
        if promoted:
            logger.info("delayed_jobs_promoted", queue=self.name, count=promoted)
        return promoted

    async def recover_stalled(self) -> list[Job]:
        recovered: list[Job] = []
        async with self._broker("recover_stalled"):
            now = self._now()
            expired = await self._redis.zrangebyscore(self.keys["active"], "-inf", now.timestamp())
            for job_id in expired:
                if not await self._redis.zrem(self.keys["active"], job_id):
                    continue
                job = await self._load(job_id)
                if job is None:
                    continue
                self._apply_stall(job, now)
                pipe = self._redis.pipeline(transaction=True)
                self._requeue(pipe, job, now)
                await pipe.execute()
                recovered.append(job)
        for job in recovered:
            self._log_stalled(job)
        return recovered

    async def _claim(self) -> Optional[Job]:
        if self._claim_script is None:
            self._claim_script = self._redis.register_script(CLAIM_NEXT_JOB)
        now = self._now()
        lease = self._lease(now)
        claimed = await self._claim_script(
            keys=[self.keys["waiting"], self.keys["active"], self.keys["jobs"], self.keys["paused"]],
            args=[lease.timestamp()],
        )
        if not claimed:
            return None
        job_id = claimed[0]
        if len(claimed) < 2:
            # Indexed but the record is gone; nothing to run
            await self._redis.zrem(self.keys["active"], job_id)
            logger.warning("claimed_job_missing", queue=self.name, job_id=job_id)
            return None
        job = Job.from_json(claimed[1])
        job.status = JobStatus.ACTIVE
        job.locked_until = lease
        await self._redis.hset(self.keys["jobs"], job_id, job.to_json())
        return job

    async def dequeue_next(self, timeout: float = 0.0) -> Optional[Job]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout, 0.0)
        while True:
            await self.promote_delayed()
            async with self._broker("dequeue"):
                job = await self._claim()
            if job is not None:
                logger.debug("job_claimed",
                             queue=self.name,
                             job_id=job.job_id,
                             priority=int(job.priority),
                             attempt=job.attempts_made + 1)
                return job

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(remaining, self._POLL_SLICE))

    async def extend_lock(self, job_id: str) -> bool:
        async with self._broker("extend_lock"):
            if await self._redis.zscore(self.keys["active"], job_id) is None:
                return False
            lease = self._lease(self._now())
            await self._redis.zadd(self.keys["active"], {job_id: lease.timestamp()}, xx=True)
        return True

    async def _release(self, job_id: str):
        if await self._redis.zscore(self.keys["active"], job_id) is None:
            raise InvalidJobState(f"Job {job_id} is no longer held by a worker; its lease expired", self.name)

    async def ack(self, job_id: str, result: Any = None) -> Job:
        async with self._broker("ack"):
            now = self._now()
            job = await self._require(job_id)
            self._apply_ack(job, result, now)
            await self._release(job_id)
            pipe = self._redis.pipeline(transaction=True)
            pipe.hset(self.keys["jobs"], job_id, job.to_json())
            pipe.zrem(self.keys["active"], job_id)
            pipe.zadd(self.keys["completed"], {job_id: now.timestamp()})
            await pipe.execute()
        logger.info("job_completed", queue=self.name, job_id=job_id, attempts=job.attempts_made + 1)
        await self.prune_completed()
        return job

    async def fail(self, job_id: str, error: Union[BaseException, str], permanent: bool = False) -> Job:
        async with self._broker("fail"):
            now = self._now()
            job = await self._require(job_id)
            self._apply_failure(job, error, now, permanent)
            await self._release(job_id)
            pipe = self._redis.pipeline(transaction=True)
            pipe.zrem(self.keys["active"], job_id)
            self._requeue(pipe, job, now)
            await pipe.execute()
        if job.status == JobStatus.FAILED:
            logger.warning("job_failed",
                           queue=self.name,
                           job_id=job_id,
                           attempts=job.attempts_made,
                           error=job.last_error)
        else:
            logger.info("job_scheduled_for_retry",
                        queue=self.name,
                        job_id=job_id,
                        attempt=job.attempts_made,
                        retry_at=_iso(job.retry_at))
        return job

    async def mark_dead_lettered(self, job_id: str) -> Job:
        async with self._broker("mark_dead_lettered"):
            job = await self._require(job_id)
            self._apply_dead_letter(job)
            pipe = self._redis.pipeline(transaction=True)
            pipe.hset(self.keys["jobs"], job_id, job.to_json())
            pipe.zrem(self.keys["failed"], job_id)
            pipe.zadd(self.keys["dead_lettered"], {job_id: self._now().timestamp()})
            await pipe.execute()
        return job

    async def prune_completed(self) -> int:
        async with self._broker("prune_completed"):
            cutoff = (self._now() - timedelta(seconds=self.completed_max_age)).timestamp()
            expired = await self._redis.zrangebyscore(self.keys["completed"], "-inf", cutoff)
            overflow = await self._redis.zrange(self.keys["completed"], 0, -(self.completed_max_count + 1))
            doomed = set(expired) | set(overflow)
            if doomed:
                pipe = self._redis.pipeline(transaction=True)
                pipe.zrem(self.keys["completed"], *doomed)
                pipe.hdel(self.keys["jobs"], *doomed)
                await pipe.execute()
        if doomed:
            logger.debug("completed_jobs_pruned", queue=self.name, count=len(doomed))
        return len(doomed)

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._broker("get_job"):
            return await self._load(job_id)

    def _status_key(self, status: JobStatus) -> str:
        return self.keys[status.value]

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[Job]:
        async with self._broker("list_jobs"):
            if status is None:
                raw = await self._redis.hvals(self.keys["jobs"])
                jobs = [Job.from_json(r) for r in raw]
            else:
                ids = await self._redis.zrange(self._status_key(status), 0, -1)
                raw = await self._redis.hmget(self.keys["jobs"], ids) if ids else []
                jobs = [Job.from_json(r) for r in raw if r]
        jobs.sort(key=lambda j: j.sequence)
        return jobs[:limit]

    async def stats(self) -> dict[str, Any]:
        async with self._broker("stats"):
            pipe = self._redis.pipeline(transaction=False)
            pipe.zcard(self.keys["waiting"])
            pipe.zcard(self.keys["active"])
            pipe.zcard(self.keys["delayed"])
            pipe.zcard(self.keys["completed"])
            pipe.zcard(self.keys["failed"])
            pipe.zcard(self.keys["dead_lettered"])
            pipe.exists(self.keys["paused"])
            waiting, active, delayed, completed, failed, dead, paused = await pipe.execute()
        return {
            "waiting": waiting,
            "delayed": delayed,
            "active": active,
            "completed": completed,
            "failed": failed,
            "dead_lettered": dead,
            "paused": bool(paused),
        }

    async def pause(self):
        async with self._broker("pause"):
            await self._redis.set(self.keys["paused"], "1")
        logger.info("queue_paused", queue=self.name)

    async def resume(self):
        async with self._broker("resume"):
            await self._redis.delete(self.keys["paused"])
        logger.info("queue_resumed", queue=self.name)

    async def is_paused(self) -> bool:
        async with self._broker("is_paused"):
            return bool(await self._redis.exists(self.keys["paused"]))

    async def clear(self) -> int:
        purged_sets = [self.keys[k] for k in ("waiting", "delayed", "completed", "failed")]
        async with self._broker("clear"):
            ids: set[str] = set()
            for key in purged_sets:
                ids.update(await self._redis.zrange(key, 0, -1))
            pipe = self._redis.pipeline(transaction=True)
            pipe.delete(*purged_sets)
            if ids:
                pipe.hdel(self.keys["jobs"], *ids)
            await pipe.execute()
        logger.warning("queue_cleared", queue=self.name, removed=len(ids))
        return len(ids)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(name: str, queue_config: dict[str, Any] = None, **kwargs) -> MessageQueue:
    """Factory: create the appropriate queue backend."""
    config = queue_config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        return RedisMessageQueue(
            name,
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            key_prefix=config.get("key_prefix", "notify"),
            **kwargs,
        )
    return InMemoryMessageQueue(name, **kwargs)
