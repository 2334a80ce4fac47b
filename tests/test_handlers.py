"""Tests for the default event handlers: events in, queued notifications out."""
import pytest
from pydantic import ValidationError

from models.schemas import EventTopic, JobPriority
from events.bus import Event, EventBus
from events.handlers import build_default_handlers, progress_percent, register_default_handlers
from notifications.producer import NotificationProducer

FRONTEND = "https://covergirl.com/"


@pytest.fixture
def producer(queue, clock) -> NotificationProducer:
    return NotificationProducer(queue, clock=clock)


@pytest.fixture
def handlers(producer):
    return build_default_handlers(producer, FRONTEND)


async def queued(queue):
    jobs = []
    while (job := await queue.dequeue_next()) is not None:
        jobs.append(job)
    return jobs


class TestProgressPercent:
    def test_basic(self):
        assert progress_percent(25, 75) == 25

    def test_rounds(self):
        assert progress_percent(1, 2) == 33

    def test_zero_total(self):
        assert progress_percent(0, 0) == 0

    def test_capped(self):
        assert progress_percent(100, 0) == 100


class TestDefaultHandlers:
    def test_one_handler_per_topic(self, handlers):
        assert set(handlers) == set(EventTopic)

    @pytest.mark.asyncio
    async def test_vote_created(self, handlers, queue):
        await handlers[EventTopic.VOTE_CREATED](
            {"voter_email": "fan@example.com", "model_name": "Ava", "model_id": "m_1"})

        [job] = await queued(queue)
        assert job.name == "vote-confirmation"
        assert job.priority == JobPriority.NORMAL
        assert job.payload["recipient"] == "fan@example.com"
        assert job.payload["data"]["profile_url"] == "https://covergirl.com/models/m_1"

    @pytest.mark.asyncio
    async def test_progress_milestone_fans_out_to_subscribers(self, handlers, queue):
        ids = await handlers[EventTopic.MODEL_PROGRESS_MILESTONE]({
            "model_id": "m_1", "model_name": "Ava", "vote_count": 50, "votes_needed": 50,
            "days_left": 3, "subscriber_emails": ["a@example.com", "b@example.com"],
        })
        assert len(ids) == 2

        jobs = await queued(queue)
        assert [j.payload["recipient"] for j in jobs] == ["a@example.com", "b@example.com"]
        assert all(j.name == "progress-update" and j.priority == JobPriority.LOW for j in jobs)
        data = jobs[0].payload["data"]
        assert data["progress_percent"] == 50
        assert data["recipient_email"] == "a@example.com"
        assert jobs[1].payload["data"]["recipient_email"] == "b@example.com"

    @pytest.mark.asyncio
    async def test_progress_milestone_without_subscribers(self, handlers, queue):
        ids = await handlers[EventTopic.MODEL_PROGRESS_MILESTONE](
            {"model_id": "m_1", "model_name": "Ava", "vote_count": 1, "votes_needed": 9})
        assert ids == []
        assert (await queue.stats())["waiting"] == 0

    @pytest.mark.asyncio
    async def test_rank_changed_is_critical(self, handlers, queue):
        await handlers[EventTopic.MODEL_RANK_CHANGED]({
            "model_id": "m_2", "model_name": "Bea", "new_rank": 3, "old_rank": 7,
            "vote_count": 420, "supporter_emails": ["s@example.com"],
        })
        [job] = await queued(queue)
        assert job.name == "rank-update"
        assert job.priority == JobPriority.CRITICAL
        assert job.payload["data"]["rank_position"] == 3
        assert job.payload["data"]["previous_rank"] == 7

    @pytest.mark.asyncio
    async def test_fan_out_skips_undeliverable_supporters(self, handlers, queue):
        supporters = [f"s{i}@example.com" for i in range(200)]
        ids = await handlers[EventTopic.MODEL_RANK_CHANGED]({
            "model_id": "m_2", "model_name": "Bea", "new_rank": 1,
            "supporter_emails": supporters[:100] + ["not-an-address"] + supporters[100:],
        })
        assert len(ids) == 200
        jobs = await queued(queue)
        assert [j.payload["recipient"] for j in jobs] == supporters

    @pytest.mark.asyncio
    async def test_bad_subscriber_does_not_fail_the_event(self, event_queue, producer, queue):
        bus = EventBus(event_queue)
        register_default_handlers(bus, producer, FRONTEND)
        result = await bus.process(Event(topic="model.progress_milestone", data={
            "model_id": "m_1", "model_name": "Ava", "vote_count": 10, "votes_needed": 90,
            "subscriber_emails": ["a@example.com", "@nowhere", "b@example.com"],
        }))
        assert result.ok
        assert (await queue.stats())["waiting"] == 2

    @pytest.mark.asyncio
    async def test_reward_earned_builds_claim_url(self, handlers, queue):
        await handlers[EventTopic.REWARD_EARNED](
            {"user_email": "u@example.com", "reward_id": "r_9", "reward_name": "Signed Photo"})
        [job] = await queued(queue)
        assert job.name == "reward-delivery"
        assert job.priority == JobPriority.HIGH
        assert job.payload["data"]["claim_url"] == "https://covergirl.com/rewards/claim/r_9"

    @pytest.mark.asyncio
    async def test_user_registered_sends_referral_invite(self, handlers, queue):
        await handlers[EventTopic.USER_REGISTERED](
            {"user_email": "new@example.com", "user_name": "Kim", "referral_code": "KIM123"})
        [job] = await queued(queue)
        assert job.name == "referral-join"
        data = job.payload["data"]
        assert data["referral_link"] == "https://covergirl.com/register?ref=KIM123"
        assert data["reward_name"] == "Premium Membership"
        assert data["referrals_needed"] == 5

    @pytest.mark.asyncio
    async def test_referral_milestone(self, handlers, queue):
        await handlers[EventTopic.REFERRAL_MILESTONE]({
            "user_email": "u@example.com", "referral_count": 5, "tier_name": "Gold",
            "reward_id": "r_1", "next_tier_count": 10,
        })
        [job] = await queued(queue)
        assert job.name == "referral-milestone"
        assert job.priority == JobPriority.CRITICAL
        assert job.payload["data"]["claim_url"] == "https://covergirl.com/rewards/claim/r_1"

    @pytest.mark.asyncio
    async def test_invalid_event_data_raises(self, handlers, queue):
        with pytest.raises(ValidationError):
            await handlers[EventTopic.VOTE_CREATED]({"voter_email": "fan@example.com"})
        assert (await queue.stats())["waiting"] == 0


class TestRegistration:
    @pytest.mark.asyncio
    async def test_registered_handlers_run_through_bus(self, event_queue, producer, queue):
        bus = EventBus(event_queue)
        register_default_handlers(bus, producer, FRONTEND)
        assert bus.topics() == sorted(t.value for t in EventTopic)

        result = await bus.process(Event(topic="vote.created", data={
            "voter_email": "fan@example.com", "model_name": "Ava", "model_id": "m_1",
        }))
        assert result.success_count == 1
        assert (await queue.stats())["waiting"] == 1

    def test_registering_twice_keeps_one_handler_per_topic(self, event_queue, producer):
        bus = EventBus(event_queue)
        handlers = register_default_handlers(bus, producer, FRONTEND)
        for topic, handler in handlers.items():
            bus.subscribe(topic, handler)
        assert all(len(bus.handlers_for(t)) == 1 for t in EventTopic)
