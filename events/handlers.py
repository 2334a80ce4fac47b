"""
Default event handlers — turn business events into queued notifications.

Each handler validates its event data, derives links from the frontend URL
and calls the notification producer. Handlers only enqueue, so a retried
event enqueues its notifications again and their recipients get duplicates.
Fan-out handlers drop undeliverable addresses instead of failing the event.
"""
from __future__ import annotations

import structlog
from typing import Any

from pydantic import BaseModel

from models.schemas import (
    EVENT_DATA_MODELS, EventTopic, JobPriority, ModelProgressMilestoneEvent,
    ModelRankChangedEvent, NotificationType, ReferralMilestoneEvent,
    RewardEarnedEvent, UserRegisteredEvent, VoteCreatedEvent,
)
from events.bus import EventBus, EventHandler
from notifications.producer import NotificationProducer

logger = structlog.get_logger()


def progress_percent(vote_count: int, votes_needed: int) -> int:
    total = vote_count + votes_needed
    if total <= 0:
        return 0
    return min(100, round(vote_count / total * 100))


def _parse(topic: EventTopic, data: dict[str, Any]) -> BaseModel:
    return EVENT_DATA_MODELS[topic].model_validate(data)


def build_default_handlers(producer: NotificationProducer, frontend_url: str) -> dict[EventTopic, EventHandler]:
    base = frontend_url.rstrip("/")

    def profile_url(model_id: str) -> str:
        return f"{base}/models/{model_id}"

    async def on_vote_created(data: dict[str, Any]) -> str:
        event: VoteCreatedEvent = _parse(EventTopic.VOTE_CREATED, data)
        return await producer.queue_vote_confirmation(event.voter_email, {
            "model_name": event.model_name,
            "profile_url": profile_url(event.model_id),
        })

    async def on_model_progress_milestone(data: dict[str, Any]) -> list[str]:
        event: ModelProgressMilestoneEvent = _parse(EventTopic.MODEL_PROGRESS_MILESTONE, data)
        if not event.subscriber_emails:
            logger.info("progress_milestone_no_subscribers", model_id=event.model_id)
            return []
        return await producer.queue_bulk(NotificationType.PROGRESS_UPDATE, event.subscriber_emails, {
            "model_name": event.model_name,
            "vote_count": event.vote_count,
            "votes_needed": event.votes_needed,
            "days_left": event.days_left,
            "progress_percent": progress_percent(event.vote_count, event.votes_needed),
            "profile_url": profile_url(event.model_id),
        }, priority=JobPriority.LOW, skip_invalid=True)

    async def on_model_rank_changed(data: dict[str, Any]) -> list[str]:
        event: ModelRankChangedEvent = _parse(EventTopic.MODEL_RANK_CHANGED, data)
        if not event.supporter_emails:
            logger.info("rank_changed_no_supporters", model_id=event.model_id)
            return []
        return await producer.queue_bulk(NotificationType.RANK_UPDATE, event.supporter_emails, {
            "model_name": event.model_name,
            "rank_position": event.new_rank,
            "previous_rank": event.old_rank,
            "vote_count": event.vote_count,
            "profile_url": profile_url(event.model_id),
        }, priority=JobPriority.CRITICAL, skip_invalid=True)

    async def on_reward_earned(data: dict[str, Any]) -> str:
        event: RewardEarnedEvent = _parse(EventTopic.REWARD_EARNED, data)
        return await producer.queue_reward_delivery(event.user_email, {
            "reward_name": event.reward_name,
            "reward_description": event.reward_description,
            "expiry_date": event.expiry_date,
            "claim_url": f"{base}/rewards/claim/{event.reward_id}",
        })

    async def on_user_registered(data: dict[str, Any]) -> str:
        event: UserRegisteredEvent = _parse(EventTopic.USER_REGISTERED, data)
        return await producer.queue_referral_join(event.user_email, {
            "user_name": event.user_name,
            "referral_link": f"{base}/register?ref={event.referral_code}",
            "reward_name": "Premium Membership",
            "referrals_needed": 5,
        })

    async def on_referral_milestone(data: dict[str, Any]) -> str:
        event: ReferralMilestoneEvent = _parse(EventTopic.REFERRAL_MILESTONE, data)
        return await producer.queue_referral_milestone(event.user_email, {
            "user_name": event.user_name,
            "referral_count": event.referral_count,
            "tier_name": event.tier_name,
            "reward_name": event.reward_name,
            "claim_url": f"{base}/rewards/claim/{event.reward_id}" if event.reward_id else "",
            "next_tier_count": event.next_tier_count,
        })

    return {
        EventTopic.VOTE_CREATED: on_vote_created,
        EventTopic.MODEL_PROGRESS_MILESTONE: on_model_progress_milestone,
        EventTopic.MODEL_RANK_CHANGED: on_model_rank_changed,
        EventTopic.REWARD_EARNED: on_reward_earned,
        EventTopic.USER_REGISTERED: on_user_registered,
        EventTopic.REFERRAL_MILESTONE: on_referral_milestone,
    }


def register_default_handlers(bus: EventBus, producer: NotificationProducer, frontend_url: str):
    """Subscribe one handler per topic. Call once per consuming process at startup."""
    handlers = build_default_handlers(producer, frontend_url)
    for topic, handler in handlers.items():
        bus.subscribe(topic, handler)
    logger.info("default_handlers_registered", topics=[t.value for t in handlers])
    return handlers
