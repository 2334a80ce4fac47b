"""
Core data models for the notification pipeline.
These are the universal types shared across queue, event bus and delivery.
"""
from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NotificationType(str, Enum):
    VOTE_CONFIRMATION = "vote-confirmation"
    PROGRESS_UPDATE = "progress-update"
    RANK_UPDATE = "rank-update"
    REWARD_DELIVERY = "reward-delivery"
    REFERRAL_JOIN = "referral-join"
    REFERRAL_MILESTONE = "referral-milestone"


class JobPriority(IntEnum):
    """Lower value dequeues first."""
    CRITICAL = 1    # rank updates, milestone celebrations
    HIGH = 2        # reward deliveries
    NORMAL = 3      # vote confirmations
    LOW = 4         # progress updates, referral invites


class JobStatus(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


class EventTopic(str, Enum):
    VOTE_CREATED = "vote.created"
    MODEL_PROGRESS_MILESTONE = "model.progress_milestone"
    MODEL_RANK_CHANGED = "model.rank_changed"
    REWARD_EARNED = "reward.earned"
    USER_REGISTERED = "user.registered"
    REFERRAL_MILESTONE = "referral.milestone"


# ──────────────────────────────────────────────────────────────
#  Notification payloads (one data model per NotificationType)
# ──────────────────────────────────────────────────────────────

class _ModelFields(BaseModel):
    """Base for payloads with `model_*` fields (contest models, not pydantic)."""
    model_config = ConfigDict(protected_namespaces=())


class VoteConfirmationData(_ModelFields):
    model_name: str
    profile_url: str = ""
    recipient_email: str = ""


class ProgressUpdateData(_ModelFields):
    model_name: str
    vote_count: int = Field(ge=0)
    votes_needed: int = Field(ge=0)
    days_left: int = 0
    progress_percent: int = Field(default=0, ge=0, le=100)
    profile_url: str = ""
    recipient_email: str = ""


class RankUpdateData(_ModelFields):
    model_name: str
    rank_position: int = Field(ge=1)
    previous_rank: Optional[int] = None
    vote_count: int = 0
    profile_url: str = ""
    recipient_email: str = ""


class RewardDeliveryData(BaseModel):
    reward_name: str
    reward_description: str = ""
    expiry_date: str = ""
    claim_url: str = ""
    recipient_email: str = ""


class ReferralJoinData(BaseModel):
    user_name: str = ""
    referral_link: str
    reward_name: str = "Premium Membership"
    referrals_needed: int = 5
    recipient_email: str = ""


class ReferralMilestoneData(BaseModel):
    user_name: str = ""
    referral_count: int = Field(ge=0)
    tier_name: str
    reward_name: str = ""
    claim_url: str = ""
    next_tier_count: Optional[int] = None
    recipient_email: str = ""


NOTIFICATION_DATA_MODELS: dict[NotificationType, type[BaseModel]] = {
    NotificationType.VOTE_CONFIRMATION: VoteConfirmationData,
    NotificationType.PROGRESS_UPDATE: ProgressUpdateData,
    NotificationType.RANK_UPDATE: RankUpdateData,
    NotificationType.REWARD_DELIVERY: RewardDeliveryData,
    NotificationType.REFERRAL_JOIN: ReferralJoinData,
    NotificationType.REFERRAL_MILESTONE: ReferralMilestoneData,
}

_missing = set(NotificationType) - set(NOTIFICATION_DATA_MODELS)
if _missing:
    raise RuntimeError(f"Notification types without a data model: {sorted(m.value for m in _missing)}")


class NotificationPayload(BaseModel):
    """What the queue stores for a notification job: recipient + typed data."""
    recipient: str
    data: dict[str, Any] = {}

    @field_validator("recipient")
    @classmethod
    def _recipient_is_address(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError(f"not a deliverable address: {value!r}")
        return value


def parse_notification_data(ntype: NotificationType, data: dict[str, Any]) -> BaseModel:
    """Validate raw notification data against the model for its type."""
    return NOTIFICATION_DATA_MODELS[ntype].model_validate(data)


# ──────────────────────────────────────────────────────────────
#  Domain event payloads (one model per EventTopic)
# ──────────────────────────────────────────────────────────────

class VoteCreatedEvent(_ModelFields):
    voter_email: str
    model_name: str
    model_id: str


class ModelProgressMilestoneEvent(_ModelFields):
    model_id: str
    model_name: str
    vote_count: int
    votes_needed: int
    days_left: int = 0
    subscriber_emails: list[str] = []


class ModelRankChangedEvent(_ModelFields):
    model_id: str
    model_name: str
    new_rank: int
    old_rank: Optional[int] = None
    vote_count: int = 0
    supporter_emails: list[str] = []


class RewardEarnedEvent(BaseModel):
    user_email: str
    reward_id: str
    reward_name: str
    reward_description: str = ""
    expiry_date: str = ""


class UserRegisteredEvent(BaseModel):
    user_email: str
    user_name: str = ""
    user_id: str = ""
    referral_code: str


class ReferralMilestoneEvent(BaseModel):
    user_email: str
    user_name: str = ""
    referral_count: int
    tier_name: str
    reward_name: str = ""
    reward_id: str = ""
    next_tier_count: Optional[int] = None


EVENT_DATA_MODELS: dict[EventTopic, type[BaseModel]] = {
    EventTopic.VOTE_CREATED: VoteCreatedEvent,
    EventTopic.MODEL_PROGRESS_MILESTONE: ModelProgressMilestoneEvent,
    EventTopic.MODEL_RANK_CHANGED: ModelRankChangedEvent,
    EventTopic.REWARD_EARNED: RewardEarnedEvent,
    EventTopic.USER_REGISTERED: UserRegisteredEvent,
    EventTopic.REFERRAL_MILESTONE: ReferralMilestoneEvent,
}
