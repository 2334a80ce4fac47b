"""Queue error hierarchy and broker error translation."""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager

logger = structlog.get_logger()


class QueueError(Exception):
    """Base exception for all queue operations."""

    def __init__(self, message: str, queue: str = ""):
        self.queue = queue
        super().__init__(message)


class UnknownJobType(QueueError, ValueError):
    def __init__(self, job_type: str, queue: str = ""):
        self.job_type = job_type
        super().__init__(f"Unknown job type {job_type!r}", queue)


class InvalidPayload(QueueError, ValueError):
    """Payload failed validation; the job never entered the queue."""


class InvalidJobOptions(QueueError, ValueError):
    """Priority, attempt budget or backoff outside the accepted range."""


class JobNotFound(QueueError, KeyError):
    def __init__(self, job_id: str, queue: str = ""):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found", queue)

    def __str__(self) -> str:
        return self.args[0]


class InvalidJobState(QueueError):
    """Requested transition is not allowed from the job's current status."""


class BrokerUnavailable(QueueError):
    """The durable store could not be reached. Fatal to the calling worker loop."""


@asynccontextmanager
async def broker_errors(store: str, op: str):
    """Re-raise Redis connection and timeout errors as BrokerUnavailable."""
    from redis.exceptions import ConnectionError as RedisConnectionError
    from redis.exceptions import TimeoutError as RedisTimeoutError
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError, OSError) as e:
        logger.error("broker_unavailable", store=store, op=op, error=str(e))
        raise BrokerUnavailable(f"{op} on {store} failed: {e}", store) from e
