"""
Notification Pipeline — process-level composition root.

Wires the notification queue, event queue, dead letter store, scheduler,
producer, event bus, transport and workers from Settings, and exposes the
administrative operations (stats, pause/resume/clear, dead-letter handling).

Nothing here is a module-level singleton: every process builds its own
pipeline at startup, registers the default handlers on its own bus, and
shuts it down with stop().

Usage:
    pipeline = NotificationPipeline.from_settings(get_settings())
    await pipeline.start()
    await pipeline.publisher.vote_created("fan@example.com", "Ava", "m_1")
    ...
    await pipeline.stop()
"""
from __future__ import annotations

import asyncio
import dataclasses
import structlog
from typing import Any, Optional, Union

from config.settings import Settings, get_settings
from models.schemas import JobStatus, NotificationType
from scheduling.send_time import SendTimeScheduler
from job_queue.consumer import DelayedJobPromoter, ErrorClassifier, NotificationWorker
from job_queue.dead_letter import (
    DeadLetterEntry, DeadLetterFilter, DeadLetterReviewer, DeadLetterStore,
    create_dead_letter_store,
)
from job_queue.errors import InvalidJobState, JobNotFound
from job_queue.message_queue import (
    BackoffPolicy, Clock, JobOptions, MessageQueue, create_message_queue, utcnow,
)
from events.bus import EventBus, EventWorker
from events.handlers import register_default_handlers
from events.publisher import EventPublisher
from notifications.delivery import NotificationDeliverer
from notifications.producer import NotificationProducer
from notifications.transport import DeliveryTransport, create_transport

logger = structlog.get_logger()


class NotificationPipeline:

    def __init__(
        self,
        settings: Settings,
        notifications: MessageQueue,
        events: MessageQueue,
        dead_letters: DeadLetterStore,
        transport: DeliveryTransport,
        scheduler: Optional[SendTimeScheduler] = None,
        is_permanent: Optional[ErrorClassifier] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.notifications = notifications
        self.events = events
        self.dead_letters = dead_letters
        self.transport = transport
        self.scheduler = scheduler or SendTimeScheduler.from_config(settings.schedule)

        self.producer = NotificationProducer(notifications, self.scheduler, clock=clock)
        self.bus = EventBus(events)
        register_default_handlers(self.bus, self.producer, settings.frontend_url)
        self.publisher = EventPublisher(self.bus)

        worker = settings.worker
        self.deliverer = NotificationDeliverer(transport)
        self.notification_worker = NotificationWorker(
            notifications,
            dead_letters,
            self.deliverer,
            concurrency=worker.concurrency,
            min_delivery_interval=worker.min_delivery_interval,
            poll_timeout=worker.poll_timeout,
            is_permanent=is_permanent,
        )
        self.event_worker = EventWorker(self.bus, concurrency=worker.event_concurrency,
                                        poll_timeout=worker.poll_timeout)
        self.promoter = DelayedJobPromoter(
            [notifications, events],
            interval_seconds=worker.promote_interval,
            workers=[self.notification_worker, self.event_worker],
        )
        self.reviewer = DeadLetterReviewer(dead_letters, interval_seconds=worker.dead_letter_review_interval)
        self._started = False
        self._workers_running = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        transport: Optional[DeliveryTransport] = None,
        is_permanent: Optional[ErrorClassifier] = None,
        clock: Clock = utcnow,
    ) -> NotificationPipeline:
        settings = settings or get_settings()
        q = settings.queue
        queue_config = dataclasses.asdict(q)

        notifications = create_message_queue(
            q.notification_queue,
            queue_config,
            job_types=[t.value for t in NotificationType],
            default_options=JobOptions(
                max_attempts=q.max_attempts,
                backoff=BackoffPolicy("exponential", q.backoff_delay),
            ),
            completed_max_age=q.completed_max_age,
            completed_max_count=q.completed_max_count,
            lock_duration=q.lock_duration,
            clock=clock,
        )
        events = create_message_queue(
            q.event_queue,
            queue_config,
            default_options=JobOptions(
                max_attempts=q.event_max_attempts,
                backoff=BackoffPolicy("exponential", q.event_backoff_delay),
            ),
            completed_max_age=q.event_completed_max_age,
            completed_max_count=q.event_completed_max_count,
            lock_duration=q.lock_duration,
            clock=clock,
        )
        dead_letters = create_dead_letter_store(q.dead_letter_queue, queue_config, clock=clock)

        return cls(
            settings,
            notifications,
            events,
            dead_letters,
            transport or create_transport(settings.delivery),
            is_permanent=is_permanent,
            clock=clock,
        )

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self, workers: bool = True):
        """Connect the stores; with `workers`, also launch the consumer and maintenance loops."""
        if not self._started:
            await self.notifications.connect()
            await self.events.connect()
            await self.dead_letters.connect()
            self._started = True
        if workers and not self._workers_running:
            await self.notification_worker.start_background()
            await self.event_worker.start_background()
            await self.promoter.start_background()
            await self.reviewer.start_background()
            self._workers_running = True
        logger.info("pipeline_started",
                    app=self.settings.app_name,
                    backend=self.settings.queue.backend,
                    workers=workers)

    async def stop(self):
        """Stop claiming, drain in-flight jobs and pending publishes, then close connections."""
        if self._workers_running:
            await asyncio.gather(self.notification_worker.stop(), self.event_worker.stop())
            await self.promoter.stop()
            await self.reviewer.stop()
            self._workers_running = False
        await self.publisher.drain()
        await self.transport.close()
        if self._started:
            await self.notifications.close()
            await self.events.close()
            await self.dead_letters.close()
            self._started = False
        logger.info("pipeline_stopped",
                    delivered=self.notification_worker.processed,
                    dead_lettered=self.notification_worker.failed)

    # ── Administration ────────────────────────────────────────

    async def get_queue_stats(self) -> dict[str, Any]:
        return {
            "main": await self.notifications.stats(),
            "dlq": {"count": await self.dead_letters.count()},
        }

    async def get_event_stats(self) -> dict[str, Any]:
        return await self.bus.stats()

    async def pause_queue(self):
        await self.notifications.pause()

    async def resume_queue(self):
        await self.notifications.resume()

    async def clear_queue(self) -> int:
        return await self.notifications.clear()

    async def move_to_dlq(self, job_id: str, error: Union[BaseException, str]) -> str:
        """Record a failed notification job as a dead letter. Repeat calls return the same entry."""
        job = await self.notifications.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id, self.notifications.name)
        if job.status not in (JobStatus.FAILED, JobStatus.DEAD_LETTERED):
            raise InvalidJobState(
                f"Only failed jobs can be moved to the dead letter store; {job_id} is {job.status.value}",
                self.notifications.name,
            )
        entry_id = await self.dead_letters.record(job, error, job.attempts_made)
        if job.status == JobStatus.FAILED:
            await self.notifications.mark_dead_lettered(job_id)
        return entry_id

    async def list_dead_letters(self, filter: Optional[DeadLetterFilter] = None) -> list[DeadLetterEntry]:
        return await self.dead_letters.list(filter)

    async def requeue_dead_letter(self, entry_id: str) -> str:
        """Enqueue a fresh copy of a dead letter's job with a full attempt budget."""
        entry = await self.dead_letters.get(entry_id)
        if entry is None:
            raise JobNotFound(entry_id, self.dead_letters.name)
        if entry.requeued_job_id:
            raise InvalidJobState(
                f"Dead letter {entry_id} was already requeued as {entry.requeued_job_id}",
                self.dead_letters.name,
            )
        original = entry.original_job
        new_job_id = await self.notifications.enqueue(
            original.name,
            original.payload,
            JobOptions(priority=original.priority, max_attempts=original.max_attempts, backoff=original.backoff),
        )
        await self.dead_letters.mark_requeued(entry_id, new_job_id)
        logger.info("dead_letter_requeued", entry_id=entry_id, job_id=original.job_id, new_job_id=new_job_id)
        return new_job_id
