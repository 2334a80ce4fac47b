"""
Notification Producer — typed entry points that put notifications on the queue.

Every call validates the recipient and the type's data model before anything
is written, so a bad request fails in the caller and never reaches a worker.

Default priorities:
  rank-update, referral-milestone   CRITICAL
  reward-delivery                   HIGH
  vote-confirmation                 NORMAL
  progress-update, referral-join    LOW
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from pydantic import ValidationError

from models.schemas import (
    JobPriority, NotificationPayload, NotificationType, parse_notification_data,
)
from job_queue.errors import InvalidPayload, QueueError, UnknownJobType
from job_queue.message_queue import Clock, JobOptions, MessageQueue, utcnow
from scheduling.send_time import SendTimeScheduler

logger = structlog.get_logger()

DEFAULT_PRIORITIES: dict[NotificationType, JobPriority] = {
    NotificationType.VOTE_CONFIRMATION: JobPriority.NORMAL,
    NotificationType.PROGRESS_UPDATE: JobPriority.LOW,
    NotificationType.RANK_UPDATE: JobPriority.CRITICAL,
    NotificationType.REWARD_DELIVERY: JobPriority.HIGH,
    NotificationType.REFERRAL_JOIN: JobPriority.LOW,
    NotificationType.REFERRAL_MILESTONE: JobPriority.CRITICAL,
}


class SchedulingError(QueueError, ValueError):
    """Requested send time is not in the future."""


class NotificationProducer:

    def __init__(
        self,
        queue: MessageQueue,
        scheduler: Optional[SendTimeScheduler] = None,
        clock: Clock = utcnow,
    ):
        self.queue = queue
        self.scheduler = scheduler or SendTimeScheduler()
        self._clock = clock

    # ── Validation ────────────────────────────────────────────

    def _notification_type(self, ntype: Union[NotificationType, str]) -> NotificationType:
        try:
            return NotificationType(ntype)
        except ValueError as e:
            raise UnknownJobType(str(ntype), self.queue.name) from e

    def _build_payload(self, ntype: NotificationType, recipient: str, data: dict[str, Any]) -> dict[str, Any]:
        try:
            payload = NotificationPayload(recipient=recipient, data=data or {})
            model = parse_notification_data(ntype, payload.data)
        except ValidationError as e:
            raise InvalidPayload(f"Invalid {ntype.value} notification: {e}", self.queue.name) from e
        return {"recipient": payload.recipient, "data": model.model_dump(mode="json")}

    def _deliverable(self, ntype: NotificationType, recipient: Any) -> bool:
        try:
            NotificationPayload(recipient=recipient)
        except ValidationError as e:
            logger.warning("invalid_recipient_skipped",
                           queue=self.queue.name,
                           notification_type=ntype.value,
                           recipient=recipient,
                           error=e.errors()[0]["msg"])
            return False
        return True

    # ── Generic ───────────────────────────────────────────────

    async def enqueue(
        self,
        ntype: Union[NotificationType, str],
        recipient: str,
        data: dict[str, Any],
        priority: Optional[int] = None,
        delay: Optional[Union[float, timedelta]] = None,
        not_before: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        ntype = self._notification_type(ntype)
        payload = self._build_payload(ntype, recipient, data)
        options = JobOptions(
            priority=priority if priority is not None else DEFAULT_PRIORITIES[ntype],
            delay=delay,
            not_before=not_before,
            max_attempts=max_attempts,
        )
        return await self.queue.enqueue(ntype.value, payload, options)

    async def queue_bulk(
        self,
        ntype: Union[NotificationType, str],
        recipients: list[str],
        data: dict[str, Any],
        priority: int = JobPriority.NORMAL,
        delay: Optional[Union[float, timedelta]] = None,
        skip_invalid: bool = False,
    ) -> list[str]:
        """
        One job per recipient, each carrying its own `recipient_email` in the data.

        By default one undeliverable address rejects the whole batch. With
        `skip_invalid`, such addresses are logged and dropped and the rest are
        queued; invalid notification data still rejects the batch.
        """
        ntype = self._notification_type(ntype)
        if skip_invalid:
            recipients = [r for r in recipients if self._deliverable(ntype, r)]
        payloads = [
            self._build_payload(ntype, recipient, {**(data or {}), "recipient_email": recipient})
            for recipient in recipients
        ]
        if not payloads:
            return []
        return await self.queue.enqueue_bulk(ntype.value, payloads, JobOptions(priority=priority, delay=delay))

    # ── Scheduling ────────────────────────────────────────────

    async def schedule(
        self,
        ntype: Union[NotificationType, str],
        recipient: str,
        data: dict[str, Any],
        send_at: datetime,
        priority: Optional[int] = None,
    ) -> str:
        if send_at.tzinfo is None:
            send_at = send_at.replace(tzinfo=timezone.utc)
        now = self._clock()
        if send_at <= now:
            raise SchedulingError(
                f"send_at {send_at.isoformat()} is not in the future (now {now.isoformat()})",
                self.queue.name,
            )
        job_id = await self.enqueue(ntype, recipient, data, priority=priority, not_before=send_at)
        logger.info("notification_scheduled", job_id=job_id, type=str(ntype), send_at=send_at.isoformat())
        return job_id

    async def schedule_at_best_time(
        self,
        ntype: Union[NotificationType, str],
        recipient: str,
        data: dict[str, Any],
        priority: Optional[int] = None,
    ) -> str:
        send_at = self.scheduler.next_slot(self._clock())
        return await self.schedule(ntype, recipient, data, send_at, priority=priority)

    # ── Typed helpers ─────────────────────────────────────────

    async def queue_vote_confirmation(self, recipient: str, data: dict[str, Any], **kwargs) -> str:
        return await self.enqueue(NotificationType.VOTE_CONFIRMATION, recipient, data, **kwargs)

    async def queue_progress_update(self, recipient: str, data: dict[str, Any], **kwargs) -> str:
        return await self.enqueue(NotificationType.PROGRESS_UPDATE, recipient, data, **kwargs)

    async def queue_rank_update(self, recipient: str, data: dict[str, Any], **kwargs) -> str:
        return await self.enqueue(NotificationType.RANK_UPDATE, recipient, data, **kwargs)

    async def queue_reward_delivery(self, recipient: str, data: dict[str, Any], **kwargs) -> str:
        return await self.enqueue(NotificationType.REWARD_DELIVERY, recipient, data, **kwargs)

    async def queue_referral_join(self, recipient: str, data: dict[str, Any], **kwargs) -> str:
        return await self.enqueue(NotificationType.REFERRAL_JOIN, recipient, data, **kwargs)

    async def queue_referral_milestone(self, recipient: str, data: dict[str, Any], **kwargs) -> str:
        return await self.enqueue(NotificationType.REFERRAL_MILESTONE, recipient, data, **kwargs)
