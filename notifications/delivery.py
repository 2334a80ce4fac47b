"""Dispatch one notification job to the renderer and the transport."""
from __future__ import annotations

import structlog
from typing import Any

from pydantic import ValidationError

from models.schemas import NotificationPayload, NotificationType, parse_notification_data
from job_queue.errors import InvalidPayload, UnknownJobType
from job_queue.message_queue import Job, utcnow, _iso
from notifications.content import render
from notifications.transport import DeliveryTransport

logger = structlog.get_logger()


class NotificationDeliverer:
    """
    Callable handed to NotificationWorker as its `deliver` function.

    Malformed jobs raise like any other failure, so they follow the normal
    retry path and end in the dead letter store.
    """

    def __init__(self, transport: DeliveryTransport):
        self.transport = transport

    async def __call__(self, job: Job) -> dict[str, Any]:
        try:
            ntype = NotificationType(job.name)
        except ValueError as e:
            raise UnknownJobType(job.name, job.queue) from e
        try:
            payload = NotificationPayload.model_validate(job.payload)
            data = parse_notification_data(ntype, payload.data)
        except ValidationError as e:
            raise InvalidPayload(f"Invalid {ntype.value} payload: {e}", job.queue) from e

        content = render(ntype, data)
        delivery_id = await self.transport.deliver(payload.recipient, content.subject, content.html, content.text)
        return {
            "delivery_id": delivery_id,
            "recipient": payload.recipient,
            "type": ntype.value,
            "sent_at": _iso(utcnow()),
        }
