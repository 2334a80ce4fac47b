"""
Queue Consumers — Long-lived loops that claim jobs and drive delivery.

Topology:
  ┌──────────────┐       ┌──────────────────┐       ┌──────────────────┐
  │ Producers    │──enq─▶│ notification     │──────▶│ NotificationWorker│──▶ transport
  │ Event worker │       │ queue (priority) │       │ (throttled)       │
  └──────────────┘       └──────────────────┘       └────────┬─────────┘
                                  ▲                           │ fail
                         ┌────────┴────────┐                  │
                         │ delayed (backoff│◀── retry ────────┤
                         │  gate/promoter) │                  │
                         └─────────────────┘                  │
                         ┌─────────────────┐                  │
                         │ dead letters    │◀── exhausted ────┘
                         └─────────────────┘

Each worker owns a semaphore bounding its in-flight jobs. The notification
worker additionally routes every delivery through a DeliveryThrottle, which
serializes calls to the provider and pauses after each success, so raising
`concurrency` never raises the delivery rate.
"""
from __future__ import annotations

import asyncio
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

from models.schemas import JobStatus
from job_queue.dead_letter import DeadLetterStore
from job_queue.errors import BrokerUnavailable
from job_queue.message_queue import Job, MessageQueue

logger = structlog.get_logger()

ErrorClassifier = Callable[[BaseException], bool]


def always_retryable(error: BaseException) -> bool:
    """Default classification: every failure consumes one attempt and is retried."""
    return False


class QueueWorker(ABC):
    """
    Consumes one queue with bounded concurrency.

    Usage:
        worker = SomeWorker(queue, concurrency=3)
        await worker.run()                  # blocks until stop()
        await worker.start_background()     # returns immediately, runs as task
        await worker.stop()                 # stop claiming, drain in-flight jobs
    """

    def __init__(
        self,
        queue: MessageQueue,
        concurrency: int = 1,
        poll_timeout: float = 1.0,
        is_permanent: Optional[ErrorClassifier] = None,
        name: str = "",
    ):
        self.queue = queue
        self.concurrency = max(1, concurrency)
        self.poll_timeout = poll_timeout
        self.is_permanent = is_permanent or always_retryable
        self.name = name or f"{queue.name}-worker-{uuid.uuid4().hex[:6]}"
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._in_flight: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self._fatal: Optional[BaseException] = None
        self._task: Optional[asyncio.Task] = None
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @abstractmethod
    async def handle(self, job: Job) -> Any:
        """Do the work for one job. Raise to fail the attempt."""
        ...

    async def run(self):
        """Claim and process jobs until stop() is called or the broker fails."""
        self._stopping.clear()
        self._fatal = None
        logger.info("worker_started",
                    worker=self.name,
                    queue=self.queue.name,
                    concurrency=self.concurrency)
        try:
            while not self._stopping.is_set():
                await self._semaphore.acquire()
                if self._stopping.is_set():
                    self._semaphore.release()
                    break
                try:
                    job = await self.queue.dequeue_next(timeout=self.poll_timeout)
                except BaseException:
                    self._semaphore.release()
                    raise
                if job is None:
                    self._semaphore.release()
                    continue
                task = asyncio.create_task(self._process(job))
                self._in_flight.add(task)
                task.add_done_callback(self._on_task_done)
        except BrokerUnavailable as e:
            logger.error("worker_broker_unavailable", worker=self.name, error=str(e))
            raise
        finally:
            await self._drain()
            logger.info("worker_stopped", worker=self.name, processed=self.processed, failed=self.failed)
        if self._fatal is not None:
            raise self._fatal

    def _on_task_done(self, task: asyncio.Task):
        self._in_flight.discard(task)
        self._semaphore.release()

    async def _drain(self):
        if self._in_flight:
            logger.info("worker_draining", worker=self.name, in_flight=len(self._in_flight))
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        """Stop claiming new jobs and wait for in-flight ones to finish."""
        self._stopping.set()
        if self._task is None:
            return
        try:
            await self._task
        except BrokerUnavailable as e:
            logger.error("worker_exited_with_error", worker=self.name, error=str(e))
        finally:
            self._task = None

    async def _process(self, job: Job):
        try:
            await self.process_job(job)
        except BrokerUnavailable as e:
            # Fatal to the loop: stop claiming and let the supervisor restart us
            self._fatal = e
            self._stopping.set()
        except Exception as e:
            logger.error("job_processing_error",
                         worker=self.name,
                         job_id=job.job_id,
                         error=str(e),
                         exc_info=True)

    async def process_job(self, job: Job):
        log = logger.bind(worker=self.name, job_id=job.job_id, job_type=job.name,
                          attempt=job.attempts_made + 1)
        if not await self.queue.extend_lock(job.job_id):
            log.warning("job_lease_lost")
            return
        log.info("processing_job", priority=int(job.priority))
        try:
            result = await self.handle(job)
        except Exception as e:
            log.warning("job_handler_error", error=str(e))
            await self.on_failure(job, e)
            return
        await self.queue.ack(job.job_id, result)
        self.processed += 1
        await self.after_success(job, result)

    async def after_success(self, job: Job, result: Any):
        pass

    async def on_failure(self, job: Job, error: BaseException):
        updated = await self.queue.fail(job.job_id, error, permanent=self.is_permanent(error))
        if updated.status == JobStatus.FAILED:
            self.failed += 1
            await self.on_exhausted(updated, error)

    async def on_exhausted(self, job: Job, error: Union[BaseException, str]):
        logger.warning("job_exhausted",
                       worker=self.name,
                       job_id=job.job_id,
                       attempts=job.attempts_made,
                       error=str(error))


# ──────────────────────────────────────────────────────────────
#  Delivery throttle
# ──────────────────────────────────────────────────────────────

class DeliveryThrottle:
    """
    Serializes deliveries and enforces a minimum gap after each success.

    Holding the throttle grants the exclusive right to call the provider.
    On exit the holder pauses `min_interval` seconds if it recorded a
    success, then releases. Failed attempts release immediately.
    """

    def __init__(self, min_interval: float = 3.0, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.min_interval = min_interval
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._succeeded = False
        self.deliveries = 0
        self.last_delivery_at: Optional[float] = None

    async def __aenter__(self) -> DeliveryThrottle:
        await self._lock.acquire()
        self._succeeded = False
        return self

    def record_success(self):
        self._succeeded = True
        self.deliveries += 1
        self.last_delivery_at = time.monotonic()

    async def __aexit__(self, exc_type, exc, tb):
        try:
            if self._succeeded and self.min_interval > 0:
                logger.debug("rate_limit_pause", seconds=self.min_interval)
                await self._sleep(self.min_interval)
        finally:
            self._succeeded = False
            self._lock.release()


# ──────────────────────────────────────────────────────────────
#  Notification worker
# ──────────────────────────────────────────────────────────────

class NotificationWorker(QueueWorker):
    """
    The single consumer of the notification queue and the only component
    that calls the delivery transport. Exhausted jobs go to the dead letter
    store and are marked dead_lettered.
    """

    def __init__(
        self,
        queue: MessageQueue,
        dead_letters: DeadLetterStore,
        deliver: Callable[[Job], Awaitable[Any]],
        concurrency: int = 1,
        min_delivery_interval: float = 3.0,
        poll_timeout: float = 1.0,
        is_permanent: Optional[ErrorClassifier] = None,
        throttle: Optional[DeliveryThrottle] = None,
        name: str = "",
    ):
        super().__init__(queue, concurrency=concurrency, poll_timeout=poll_timeout,
                         is_permanent=is_permanent, name=name or "notification-worker")
        self.dead_letters = dead_letters
        self._deliver = deliver
        self.throttle = throttle or DeliveryThrottle(min_delivery_interval)

    async def handle(self, job: Job) -> Any:
        return await self._deliver(job)

    async def process_job(self, job: Job):
        async with self.throttle:
            await super().process_job(job)

    async def after_success(self, job: Job, result: Any):
        self.throttle.record_success()
        logger.info("notification_delivered",
                    job_id=job.job_id,
                    job_type=job.name,
                    recipient=job.payload.get("recipient"))

    async def on_exhausted(self, job: Job, error: Union[BaseException, str]):
        entry_id = await self.dead_letters.record(job, error, job.attempts_made)
        await self.queue.mark_dead_lettered(job.job_id)
        logger.warning("notification_dead_lettered",
                       job_id=job.job_id,
                       job_type=job.name,
                       entry_id=entry_id,
                       attempts=job.attempts_made)


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically moves delayed/retry jobs whose gate
    has passed into the ready set, recovers stalled jobs and applies
    completed-job retention.

    dequeue_next() also promotes before claiming; this loop keeps stats
    accurate and retention applied while workers are idle or paused. A
    stalled job that has used up its attempts is handed to the worker that
    owns its queue, exactly as if that worker had failed it.
    """

    def __init__(self, queues: list[MessageQueue], interval_seconds: float = 5.0,
                 workers: Optional[list[QueueWorker]] = None):
        self.queues = queues
        self.interval = interval_seconds
        self._workers = {worker.queue.name: worker for worker in workers or []}
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> int:
        promoted = 0
        for queue in self.queues:
            for job in await queue.recover_stalled():
                if job.status == JobStatus.FAILED:
                    await self._exhausted(job)
            promoted += await queue.promote_delayed()
            await queue.prune_completed()
        return promoted

    async def _exhausted(self, job: Job):
        worker = self._workers.get(job.queue)
        if worker is None:
            logger.warning("stalled_job_failed", queue=job.queue, job_id=job.job_id, attempts=job.attempts_made)
            return
        worker.failed += 1
        await worker.on_exhausted(job, job.last_error)

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
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
