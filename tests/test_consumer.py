"""
Tests for the worker loops.

Covers:
  - Success path: deliver, ack, rate-limit pause
  - Retry with backoff, then success
  - Exhaustion: exactly one dead letter, no further attempts
  - Error classification hook
  - Delivery throttle: serialized, gap only after success
  - Loop lifecycle: drain on stop, broker loss is fatal, lost leases
  - Delayed job promoter and stalled-job recovery
"""
import asyncio

import pytest

from models.schemas import JobStatus
from job_queue.consumer import DelayedJobPromoter, DeliveryThrottle, NotificationWorker, QueueWorker
from job_queue.errors import BrokerUnavailable
from job_queue.message_queue import JobOptions
from notifications.delivery import NotificationDeliverer
from notifications.transport import DeliveryError, is_permanent_delivery_error


async def wait_until(predicate, timeout: float = 3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def _no_sleep(seconds: float):
    pass


def make_worker(queue, dead_letters, transport, sleep=None, **kwargs) -> NotificationWorker:
    throttle = DeliveryThrottle(min_interval=3.0, sleep=sleep or _no_sleep)
    return NotificationWorker(queue, dead_letters, NotificationDeliverer(transport),
                              throttle=throttle, poll_timeout=0.05, **kwargs)


class TestNotificationWorker:
    @pytest.mark.asyncio
    async def test_success_acks_and_pauses(self, queue, dead_letters, transport, vote_payload, recording_sleep):
        sleep = recording_sleep
        worker = make_worker(queue, dead_letters, transport, sleep)
        job_id = await queue.enqueue("vote-confirmation", vote_payload)

        await worker.process_job(await queue.dequeue_next())

        job = await queue.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result["recipient"] == "fan@example.com"
        assert job.result["type"] == "vote-confirmation"
        assert transport.sent[0]["subject"] == "✅ You Made Ava's Day!"
        assert sleep.calls == [3.0]
        assert worker.processed == 1

    @pytest.mark.asyncio
    async def test_failure_retries_with_backoff_then_succeeds(self, queue, dead_letters, vote_payload, clock,
                                                             transport_factory, recording_sleep):
        transport = transport_factory(fail_times=1)
        sleep = recording_sleep
        worker = make_worker(queue, dead_letters, transport, sleep)
        job_id = await queue.enqueue("vote-confirmation", vote_payload)

        await worker.process_job(await queue.dequeue_next())
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.DELAYED
        assert job.attempts_made == 1
        assert (job.retry_at - clock()).total_seconds() == 2.0
        assert sleep.calls == []
        assert await queue.dequeue_next() is None

        clock.advance(2)
        await worker.process_job(await queue.dequeue_next())
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempts_made == 1
        assert len(transport.sent) == 1
        assert sleep.calls == [3.0]

    @pytest.mark.asyncio
    async def test_exhausted_job_dead_lettered_exactly_once(self, queue, dead_letters, vote_payload, clock,
                                                         transport_factory):
        transport = transport_factory(fail_times=100)
        worker = make_worker(queue, dead_letters, transport)
        job_id = await queue.enqueue("vote-confirmation", vote_payload)

        delays = []
        for _ in range(3):
            job = await queue.dequeue_next()
            assert job is not None
            await worker.process_job(job)
            after = await queue.get_job(job_id)
            if after.retry_at and after.status == JobStatus.DELAYED:
                delays.append((after.retry_at - clock()).total_seconds())
                clock.advance(delays[-1])

        job = await queue.get_job(job_id)
        assert delays == [2.0, 4.0]
        assert job.status == JobStatus.DEAD_LETTERED
        assert job.attempts_made == job.max_attempts == 3
        assert transport.attempts == 3
        assert await dead_letters.count() == 1
        entry = (await dead_letters.list())[0]
        assert entry.job_id == job_id
        assert entry.attempts_made == 3
        assert "provider unavailable" in entry.error_message

        clock.advance(3600)
        assert await queue.dequeue_next() is None
        assert transport.attempts == 3
        assert worker.failed == 1

    @pytest.mark.asyncio
    async def test_default_treats_client_errors_as_retryable(self, queue, dead_letters, vote_payload, transport_factory):
        transport = transport_factory(fail_times=1, error=DeliveryError("invalid to", status_code=422))
        worker = make_worker(queue, dead_letters, transport)
        job_id = await queue.enqueue("vote-confirmation", vote_payload)
        await worker.process_job(await queue.dequeue_next())
        assert (await queue.get_job(job_id)).status == JobStatus.DELAYED

    @pytest.mark.asyncio
    async def test_permanent_errors_skip_retries_when_classified(self, queue, dead_letters, vote_payload,
                                                                transport_factory):
        transport = transport_factory(fail_times=1, error=DeliveryError("invalid to", status_code=422))
        worker = make_worker(queue, dead_letters, transport, is_permanent=is_permanent_delivery_error)
        job_id = await queue.enqueue("vote-confirmation", vote_payload)
        await worker.process_job(await queue.dequeue_next())
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.DEAD_LETTERED
        assert job.attempts_made == 1
        assert await dead_letters.count() == 1

    @pytest.mark.asyncio
    async def test_malformed_payload_fails_like_any_error(self, queue, dead_letters, transport):
        worker = make_worker(queue, dead_letters, transport)
        job_id = await queue.enqueue("rank-update", {"recipient": "fan@example.com", "data": {"model_name": "Ava"}},
                                     JobOptions(max_attempts=1))
        await worker.process_job(await queue.dequeue_next())
        assert (await queue.get_job(job_id)).status == JobStatus.DEAD_LETTERED
        assert transport.attempts == 0


class TestDeliveryThrottle:
    @pytest.mark.asyncio
    async def test_pause_only_after_success(self, recording_sleep):
        sleep = recording_sleep
        throttle = DeliveryThrottle(min_interval=3.0, sleep=sleep)
        async with throttle:
            pass
        assert sleep.calls == []
        async with throttle:
            throttle.record_success()
        assert sleep.calls == [3.0]
        assert throttle.deliveries == 1

    @pytest.mark.asyncio
    async def test_lock_released_on_exception(self, recording_sleep):
        throttle = DeliveryThrottle(min_interval=0, sleep=recording_sleep)
        with pytest.raises(RuntimeError):
            async with throttle:
                raise RuntimeError("boom")
        async with throttle:
            pass

    @pytest.mark.asyncio
    async def test_deliveries_serialized_with_minimum_gap(self, queue, dead_letters, vote_payload):
        loop = asyncio.get_running_loop()
        delivered_at = []

        async def deliver(job):
            delivered_at.append(loop.time())
            return {"ok": True}

        gap = 0.05
        worker = NotificationWorker(queue, dead_letters, deliver, concurrency=4,
                                    min_delivery_interval=gap, poll_timeout=0.02)
        for i in range(4):
            await queue.enqueue("vote-confirmation", {**vote_payload, "recipient": f"u{i}@example.com"})

        await worker.start_background()
        await wait_until(lambda: worker.processed == 4)
        await worker.stop()

        gaps = [b - a for a, b in zip(delivered_at, delivered_at[1:])]
        assert len(gaps) == 3
        assert all(g >= gap * 0.9 for g in gaps)


class TestWorkerLoop:
    @pytest.mark.asyncio
    async def test_run_processes_until_stopped(self, queue, dead_letters, transport, vote_payload):
        worker = make_worker(queue, dead_letters, transport)
        for i in range(3):
            await queue.enqueue("vote-confirmation", {**vote_payload, "recipient": f"u{i}@example.com"})

        await worker.start_background()
        assert worker.running
        await wait_until(lambda: worker.processed == 3)
        await worker.stop()
        assert not worker.running
        assert [m["to"] for m in transport.sent] == ["u0@example.com", "u1@example.com", "u2@example.com"]

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_job(self, queue, dead_letters, vote_payload):
        started = asyncio.Event()

        async def slow_deliver(job):
            started.set()
            await asyncio.sleep(0.1)
            return {"ok": True}

        worker = NotificationWorker(queue, dead_letters, slow_deliver, min_delivery_interval=0, poll_timeout=0.02)
        job_id = await queue.enqueue("vote-confirmation", vote_payload)
        await worker.start_background()
        await asyncio.wait_for(started.wait(), timeout=2)
        await worker.stop()
        assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED

    def test_worker_must_implement_handle(self, queue):
        with pytest.raises(TypeError):
            QueueWorker(queue)

    @pytest.mark.asyncio
    async def test_job_whose_lease_was_lost_is_not_delivered(self, queue, dead_letters, transport,
                                                             vote_payload, clock):
        worker = make_worker(queue, dead_letters, transport)
        job_id = await queue.enqueue("vote-confirmation", vote_payload)
        job = await queue.dequeue_next()
        clock.advance(queue.lock_duration + 1)
        await queue.recover_stalled()

        await worker.process_job(job)
        assert transport.attempts == 0
        assert worker.processed == 0
        assert (await queue.get_job(job_id)).status == JobStatus.DELAYED

    @pytest.mark.asyncio
    async def test_broker_loss_is_fatal(self, queue):
        class BrokenQueue:
            name = "broken"

            async def dequeue_next(self, timeout=0.0):
                raise BrokerUnavailable("connection refused", "broken")

        class Noop(QueueWorker):
            async def handle(self, job):
                return None

        worker = Noop(BrokenQueue(), poll_timeout=0.01)
        with pytest.raises(BrokerUnavailable):
            await worker.run()


class TestDelayedJobPromoter:
    @pytest.mark.asyncio
    async def test_run_once_promotes_across_queues(self, queue, event_queue, clock, vote_payload):
        await queue.enqueue("vote-confirmation", vote_payload, JobOptions(delay=5))
        await event_queue.enqueue("vote.created", {"topic": "vote.created", "data": {}}, JobOptions(delay=5))
        promoter = DelayedJobPromoter([queue, event_queue], interval_seconds=5)

        assert await promoter.run_once() == 0
        clock.advance(5)
        assert await promoter.run_once() == 2
        assert (await queue.stats())["waiting"] == 1
        assert (await event_queue.stats())["waiting"] == 1

    @pytest.mark.asyncio
    async def test_stalled_job_out_of_attempts_is_dead_lettered(self, queue, dead_letters, transport,
                                                                vote_payload, clock):
        worker = make_worker(queue, dead_letters, transport)
        job_id = await queue.enqueue("vote-confirmation", vote_payload, JobOptions(max_attempts=1))
        await queue.dequeue_next()
        clock.advance(queue.lock_duration + 1)

        await DelayedJobPromoter([queue], workers=[worker]).run_once()
        assert (await queue.get_job(job_id)).status == JobStatus.DEAD_LETTERED
        [entry] = await dead_letters.list()
        assert entry.job_id == job_id
        assert entry.error_message.startswith("stalled")
        assert worker.failed == 1
        assert transport.attempts == 0

    @pytest.mark.asyncio
    async def test_stalled_job_with_attempts_left_is_retried(self, queue, dead_letters, transport,
                                                             vote_payload, clock):
        worker = make_worker(queue, dead_letters, transport)
        job_id = await queue.enqueue("vote-confirmation", vote_payload)
        await queue.dequeue_next()
        clock.advance(queue.lock_duration + 1)

        promoter = DelayedJobPromoter([queue], interval_seconds=5, workers=[worker])
        await promoter.run_once()
        clock.advance(2)
        await worker.process_job(await queue.dequeue_next())

        job = await queue.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempts_made == 1
        assert transport.sent[0]["to"] == "fan@example.com"

    @pytest.mark.asyncio
    async def test_background_loop_stops(self, queue):
        promoter = DelayedJobPromoter([queue], interval_seconds=0.01)
        task = await promoter.start_background()
        await asyncio.sleep(0.03)
        await promoter.stop()
        assert task.done()
