"""
Notification content — turns typed notification data into a subject line
plus HTML and plain-text bodies.

Rendering is a pure function of (type, data). Every NotificationType has
exactly one renderer; a missing renderer fails at import.
"""
from __future__ import annotations

from dataclasses import dataclass
from html import escape
from typing import Any, Callable, Union

from pydantic import BaseModel

from models.schemas import (
    NotificationType, ProgressUpdateData, RankUpdateData, ReferralJoinData,
    ReferralMilestoneData, RewardDeliveryData, VoteConfirmationData,
    parse_notification_data,
)


@dataclass(frozen=True)
class RenderedNotification:
    subject: str
    html: str
    text: str


def _page(title: str, paragraphs: list[str], cta_label: str = "", cta_url: str = "") -> str:
    body = "\n".join(f"<p>{p}</p>" for p in paragraphs)
    button = ""
    if cta_url:
        button = f'<p><a href="{escape(cta_url, quote=True)}" class="cta">{escape(cta_label)}</a></p>'
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en"><head><meta charset="UTF-8">'
        f"<title>{escape(title)}</title></head>\n"
        f"<body><h1>{escape(title)}</h1>\n{body}\n{button}</body></html>"
    )


def _text(lines: list[str], cta_url: str = "") -> str:
    if cta_url:
        lines = lines + [cta_url]
    return "\n\n".join(lines)


# ──────────────────────────────────────────────────────────────
#  Renderers
# ──────────────────────────────────────────────────────────────

def _vote_confirmation(data: VoteConfirmationData) -> RenderedNotification:
    name = escape(data.model_name)
    return RenderedNotification(
        subject=f"✅ You Made {data.model_name}'s Day!",
        html=_page("Vote Confirmed! 🎉", [
            f"Your vote for <strong>{name}</strong> has been counted.",
            "Share her profile with friends to keep the momentum going.",
        ], "Share Profile", data.profile_url),
        text=_text([
            f"Your vote for {data.model_name} has been counted.",
            "Share her profile with friends to keep the momentum going.",
        ], data.profile_url),
    )


def _progress_update(data: ProgressUpdateData) -> RenderedNotification:
    name = escape(data.model_name)
    days = "day" if data.days_left == 1 else "days"
    return RenderedNotification(
        subject=f"🔥 {data.model_name} is Heating Up!",
        html=_page(f"{data.model_name} is heating up!", [
            f"<strong>{name}</strong> has {data.vote_count:,} votes "
            f"and is {data.votes_needed:,} away from the next milestone ({data.progress_percent}%).",
            f"Only {data.days_left} {days} left.",
        ], "Vote Now", data.profile_url),
        text=_text([
            f"{data.model_name} has {data.vote_count:,} votes and is "
            f"{data.votes_needed:,} away from the next milestone ({data.progress_percent}%).",
            f"Only {data.days_left} {days} left.",
        ], data.profile_url),
    )


def _rank_update(data: RankUpdateData) -> RenderedNotification:
    lines = [f"{data.model_name} is now #{data.rank_position} with {data.vote_count:,} votes."]
    if data.previous_rank and data.previous_rank > data.rank_position:
        lines.append(f"Moved up from #{data.previous_rank}.")
    if data.rank_position <= 3:
        lines.append(f"Incredible! {data.model_name} is in the top 3. Help her reach #1.")
    else:
        lines.append("Every vote counts. Keep pushing her up the leaderboard.")
    return RenderedNotification(
        subject=f"🚀 {data.model_name} Just Hit #{data.rank_position}!",
        html=_page(f"{data.model_name} is now #{data.rank_position}!",
                   [escape(line) for line in lines],
                   "View Leaderboard", data.profile_url),
        text=_text(lines, data.profile_url),
    )


def _reward_delivery(data: RewardDeliveryData) -> RenderedNotification:
    lines = [f"You unlocked {data.reward_name}."]
    if data.reward_description:
        lines.append(data.reward_description)
    if data.expiry_date:
        lines.append(f"Claim before {data.expiry_date}.")
    return RenderedNotification(
        subject=f"🎁 Reward Unlocked: {data.reward_name}",
        html=_page("Reward Unlocked!", [escape(line) for line in lines], "Claim Reward", data.claim_url),
        text=_text(lines, data.claim_url),
    )


def _referral_join(data: ReferralJoinData) -> RenderedNotification:
    greeting = f"Hey {data.user_name}, share" if data.user_name else "Share"
    lines = [
        f"{greeting} the spotlight with your friends!",
        f"Unlock {data.reward_name} after {data.referrals_needed} successful referrals.",
        f"Your referral link: {data.referral_link}",
    ]
    return RenderedNotification(
        subject=f"🌸 Share the Spotlight & Earn {data.reward_name}",
        html=_page("Share the Spotlight", [escape(line) for line in lines], "Invite Friends", data.referral_link),
        text=_text(lines),
    )


def _referral_milestone(data: ReferralMilestoneData) -> RenderedNotification:
    lines = [
        f"Congratulations{', ' + data.user_name if data.user_name else ''}!",
        f"You referred {data.referral_count} new voters and hit {data.tier_name} level.",
    ]
    if data.next_tier_count and data.next_tier_count > data.referral_count:
        lines.append(f"{data.next_tier_count - data.referral_count} more referrals to unlock the next tier.")
    if data.reward_name:
        lines.append(f"Your {data.tier_name} tier reward is ready to claim: {data.reward_name}.")
    return RenderedNotification(
        subject=f"✨ Milestone Unlocked: {data.tier_name} Tier Achieved!",
        html=_page(f"{data.tier_name} Tier Unlocked", [escape(line) for line in lines],
                   "Claim Reward", data.claim_url),
        text=_text(lines, data.claim_url),
    )


RENDERERS: dict[NotificationType, Callable[[Any], RenderedNotification]] = {
    NotificationType.VOTE_CONFIRMATION: _vote_confirmation,
    NotificationType.PROGRESS_UPDATE: _progress_update,
    NotificationType.RANK_UPDATE: _rank_update,
    NotificationType.REWARD_DELIVERY: _reward_delivery,
    NotificationType.REFERRAL_JOIN: _referral_join,
    NotificationType.REFERRAL_MILESTONE: _referral_milestone,
}

_missing = set(NotificationType) - set(RENDERERS)
if _missing:
    raise RuntimeError(f"Notification types without a renderer: {sorted(m.value for m in _missing)}")


def render(ntype: Union[NotificationType, str], data: Union[BaseModel, dict[str, Any]]) -> RenderedNotification:
    """Render a notification. Raw dicts are validated against the type's data model first."""
    ntype = NotificationType(ntype)
    if not isinstance(data, BaseModel):
        data = parse_notification_data(ntype, data)
    return RENDERERS[ntype](data)
