"""
Event Publisher — the side channel business code uses to emit events.

notify() never raises: a broker outage or a bad payload is logged and the
caller's own operation carries on. Code that needs to know whether the event
was accepted should call EventBus.publish() directly.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional, Union

from models.schemas import EventTopic
from events.bus import EventBus

logger = structlog.get_logger()


class EventPublisher:

    def __init__(self, bus: EventBus):
        self.bus = bus
        self._pending: set[asyncio.Task] = set()
        self.dropped = 0

    async def notify(self, topic: Union[str, EventTopic], data: dict[str, Any]) -> Optional[str]:
        """Publish best-effort. Returns the event id, or None if publishing failed."""
        try:
            return await self.bus.publish(topic, data)
        except Exception as e:
            self.dropped += 1
            logger.error("event_publish_failed",
                         topic=topic.value if isinstance(topic, EventTopic) else topic,
                         error=str(e),
                         exc_info=True)
            return None

    def notify_background(self, topic: Union[str, EventTopic], data: dict[str, Any]) -> asyncio.Task:
        """Fire-and-forget; the task is held until it finishes."""
        task = asyncio.create_task(self.notify(topic, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self):
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Typed topics ──────────────────────────────────────────

    async def vote_created(self, voter_email: str, model_name: str, model_id: str) -> Optional[str]:
        return await self.notify(EventTopic.VOTE_CREATED, {
            "voter_email": voter_email,
            "model_name": model_name,
            "model_id": model_id,
        })

    async def model_progress_milestone(
        self, model_id: str, model_name: str, vote_count: int, votes_needed: int,
        days_left: int = 0, subscriber_emails: list[str] = None,
    ) -> Optional[str]:
        return await self.notify(EventTopic.MODEL_PROGRESS_MILESTONE, {
            "model_id": model_id,
            "model_name": model_name,
            "vote_count": vote_count,
            "votes_needed": votes_needed,
            "days_left": days_left,
            "subscriber_emails": list(subscriber_emails or []),
        })

    async def model_rank_changed(
        self, model_id: str, model_name: str, new_rank: int, old_rank: Optional[int] = None,
        vote_count: int = 0, supporter_emails: list[str] = None,
    ) -> Optional[str]:
        return await self.notify(EventTopic.MODEL_RANK_CHANGED, {
            "model_id": model_id,
            "model_name": model_name,
            "new_rank": new_rank,
            "old_rank": old_rank,
            "vote_count": vote_count,
            "supporter_emails": list(supporter_emails or []),
        })

    async def reward_earned(
        self, user_email: str, reward_id: str, reward_name: str,
        reward_description: str = "", expiry_date: str = "",
    ) -> Optional[str]:
        return await self.notify(EventTopic.REWARD_EARNED, {
            "user_email": user_email,
            "reward_id": reward_id,
            "reward_name": reward_name,
            "reward_description": reward_description,
            "expiry_date": expiry_date,
        })

    async def user_registered(
        self, user_email: str, referral_code: str, user_name: str = "", user_id: str = "",
    ) -> Optional[str]:
        return await self.notify(EventTopic.USER_REGISTERED, {
            "user_email": user_email,
            "user_name": user_name,
            "user_id": user_id,
            "referral_code": referral_code,
        })

    async def referral_milestone(
        self, user_email: str, referral_count: int, tier_name: str, user_name: str = "",
        reward_name: str = "", reward_id: str = "", next_tier_count: Optional[int] = None,
    ) -> Optional[str]:
        return await self.notify(EventTopic.REFERRAL_MILESTONE, {
            "user_email": user_email,
            "user_name": user_name,
            "referral_count": referral_count,
            "tier_name": tier_name,
            "reward_name": reward_name,
            "reward_id": reward_id,
            "next_tier_count": next_tier_count,
        })
