"""Shared test fixtures for the notification pipeline."""
import fakeredis
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any

from fakeredis import aioredis as fake_aioredis

from models.schemas import NotificationType
from job_queue.dead_letter import InMemoryDeadLetterStore, RedisDeadLetterStore
from job_queue.message_queue import BackoffPolicy, InMemoryMessageQueue, JobOptions, RedisMessageQueue
from notifications.transport import DeliveryError, DeliveryTransport


class FakeClock:
    """Controllable UTC clock. Call it like utcnow()."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2025, 3, 3, 8, 0, tzinfo=timezone.utc)  # a Monday

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class RecordingTransport(DeliveryTransport):
    """Records every delivery; fails the first `fail_times` calls."""

    def __init__(self, fail_times: int = 0, error: Exception = None):
        self.sent: list[dict[str, Any]] = []
        self.attempts = 0
        self.fail_times = fail_times
        self.error = error or DeliveryError("provider unavailable", status_code=503, provider="test")
        self.closed = False

    async def deliver(self, recipient: str, subject: str, html: str, text: str = "") -> str:
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise self.error
        self.sent.append({"to": recipient, "subject": subject, "html": html, "text": text})
        return f"msg_{len(self.sent)}"

    async def close(self):
        self.closed = True


class RecordingSleep:
    """Stands in for asyncio.sleep inside the delivery throttle."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(clock) -> InMemoryMessageQueue:
    return InMemoryMessageQueue(
        "email-notifications",
        job_types=[t.value for t in NotificationType],
        default_options=JobOptions(max_attempts=3, backoff=BackoffPolicy("exponential", 2.0)),
        clock=clock,
    )


@pytest.fixture
def event_queue(clock) -> InMemoryMessageQueue:
    return InMemoryMessageQueue(
        "email-events",
        default_options=JobOptions(max_attempts=3, backoff=BackoffPolicy("exponential", 1.0)),
        completed_max_age=3600,
        completed_max_count=100,
        clock=clock,
    )


@pytest.fixture
def dead_letters(clock) -> InMemoryDeadLetterStore:
    return InMemoryDeadLetterStore("email-dlq", clock=clock)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def vote_payload() -> dict[str, Any]:
    return {
        "recipient": "fan@example.com",
        "data": {"model_name": "Ava", "profile_url": "https://covergirl.com/models/m_1"},
    }


@pytest.fixture
def transport_factory():
    return RecordingTransport


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_redis():
    """In-process Redis with Lua scripting, private to one test."""
    return fake_aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture(params=["memory", "redis"])
def make_queue(request, clock, fake_redis):
    """Builds queues on each backend in turn; Redis ones share the test's fake server."""
    def factory(name: str = "email-notifications", **kwargs):
        kwargs.setdefault("clock", clock)
        if request.param == "redis":
            return RedisMessageQueue(name, redis=fake_redis, **kwargs)
        return InMemoryMessageQueue(name, **kwargs)
    return factory


@pytest.fixture(params=["memory", "redis"])
def make_dead_letter_store(request, clock, fake_redis):
    def factory(name: str = "email-dlq"):
        if request.param == "redis":
            return RedisDeadLetterStore(name, redis=fake_redis, clock=clock)
        return InMemoryDeadLetterStore(name, clock=clock)
    return factory
