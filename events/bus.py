"""
Event Bus — topic-based publish/subscribe over a durable event queue.

publish() writes one event job to the event queue and returns as soon as the
broker accepts it. The EventWorker claims event jobs and fans each one out to
every handler subscribed to its topic, concurrently and independently. If any
handler fails, the whole event is retried through the queue's backoff and
every handler runs again, including those that already succeeded. The
default handlers are not idempotent: a retried event enqueues its
notifications a second time, so a partly failed `model.rank_changed` sends
duplicate rank updates to every supporter.

The subscriber registry is local to one EventBus instance. Every process that
consumes events must register the same handlers at startup.
"""
from __future__ import annotations

import asyncio
import inspect
import uuid
import structlog
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from models.schemas import EventTopic
from job_queue.consumer import QueueWorker
from job_queue.message_queue import Job, MessageQueue, utcnow, _iso, _parse_dt

logger = structlog.get_logger()

EventHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass
class Event:
    topic: str
    data: dict[str, Any] = field(default_factory=dict)
    published_at: Optional[datetime] = None
    event_id: str = ""

    def __post_init__(self):
        if not self.event_id:
            self.event_id = f"evt_{uuid.uuid4().hex}"
        if self.published_at is None:
            self.published_at = utcnow()

    def to_payload(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "topic": self.topic,
            "data": self.data,
            "published_at": _iso(self.published_at),
        }

    @classmethod
    def from_job(cls, job: Job) -> Event:
        payload = job.payload
        return cls(
            topic=payload.get("topic", job.name),
            data=payload.get("data") or {},
            published_at=_parse_dt(payload.get("published_at")),
            event_id=payload.get("event_id", ""),
        )


@dataclass
class FanOutResult:
    topic: str
    success_count: int = 0
    fail_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.fail_count == 0


class EventFanOutError(Exception):
    """One or more handlers failed; the event job is retried as a whole."""

    def __init__(self, result: FanOutResult):
        self.result = result
        super().__init__(
            f"{result.fail_count} handler(s) failed for {result.topic}: {'; '.join(result.errors)}"
        )


def _topic_key(topic: Union[str, EventTopic]) -> str:
    return topic.value if isinstance(topic, EventTopic) else str(topic)


async def _invoke(handler: EventHandler, data: dict[str, Any]) -> Any:
    outcome = handler(data)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


class EventBus:
    """Named-topic broker plus the in-process subscriber registry."""

    def __init__(self, queue: MessageQueue):
        self.queue = queue
        self._subscribers: dict[str, list[EventHandler]] = {}

    # ── Registry ──────────────────────────────────────────────

    def subscribe(self, topic: Union[str, EventTopic], handler: EventHandler):
        """Register `handler` for `topic`. Registering the same handler twice is a no-op."""
        key = _topic_key(topic)
        handlers = self._subscribers.setdefault(key, [])
        if handler in handlers:
            return
        handlers.append(handler)
        logger.info("event_subscribed",
                    topic=key,
                    handler=getattr(handler, "__name__", repr(handler)),
                    handler_count=len(handlers))

    def unsubscribe(self, topic: Union[str, EventTopic], handler: EventHandler) -> bool:
        handlers = self._subscribers.get(_topic_key(topic), [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def handlers_for(self, topic: Union[str, EventTopic]) -> list[EventHandler]:
        return list(self._subscribers.get(_topic_key(topic), []))

    def topics(self) -> list[str]:
        return sorted(t for t, hs in self._subscribers.items() if hs)

    # ── Publish ───────────────────────────────────────────────

    async def publish(self, topic: Union[str, EventTopic], data: dict[str, Any]) -> str:
        """Persist the event to the event queue. Returns the event id once accepted."""
        event = Event(topic=_topic_key(topic), data=dict(data or {}))
        await self.queue.enqueue(event.topic, event.to_payload())
        logger.info("event_published", topic=event.topic, event_id=event.event_id)
        return event.event_id

    # ── Fan-out ───────────────────────────────────────────────

    async def process(self, event: Event) -> FanOutResult:
        """Run every handler for the event's topic concurrently and aggregate the outcome."""
        handlers = self.handlers_for(event.topic)
        result = FanOutResult(topic=event.topic)
        if not handlers:
            logger.warning("event_no_subscribers", topic=event.topic, event_id=event.event_id)
            return result

        outcomes = await asyncio.gather(
            *(_invoke(handler, dict(event.data)) for handler in handlers),
            return_exceptions=True,
        )
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                result.fail_count += 1
                result.errors.append(f"{type(outcome).__name__}: {outcome}")
                logger.error("event_handler_failed",
                             topic=event.topic,
                             event_id=event.event_id,
                             handler_index=index,
                             handler=getattr(handlers[index], "__name__", repr(handlers[index])),
                             error=str(outcome))
            else:
                result.success_count += 1

        logger.info("event_processed",
                    topic=event.topic,
                    event_id=event.event_id,
                    success_count=result.success_count,
                    fail_count=result.fail_count)
        return result

    # ── Stats ─────────────────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        counts = await self.queue.stats()
        return {
            **counts,
            "subscribers": [
                {"topic": topic, "handler_count": len(handlers)}
                for topic, handlers in sorted(self._subscribers.items())
            ],
        }


class EventWorker(QueueWorker):
    """Consumes the event queue and fans each event out through the bus."""

    def __init__(self, bus: EventBus, concurrency: int = 3, poll_timeout: float = 1.0, name: str = ""):
        super().__init__(bus.queue, concurrency=concurrency, poll_timeout=poll_timeout,
                         name=name or "event-worker")
        self.bus = bus

    async def handle(self, job: Job) -> dict[str, Any]:
        result = await self.bus.process(Event.from_job(job))
        if not result.ok:
            raise EventFanOutError(result)
        return {
            "topic": result.topic,
            "success_count": result.success_count,
            "fail_count": result.fail_count,
        }

    async def on_exhausted(self, job: Job, error: Union[BaseException, str]):
        logger.error("event_processing_failed",
                     topic=job.payload.get("topic", job.name),
                     job_id=job.job_id,
                     attempts=job.attempts_made,
                     error=str(error))
