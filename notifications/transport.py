"""
Delivery transports — the only code that talks to the email provider.

ResendTransport posts to the Resend HTTP API. LogTransport is the
development stand-in: it logs the message and returns a synthetic id.
"""
from __future__ import annotations

import abc
import uuid
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import DeliveryConfig

logger = structlog.get_logger()


class DeliveryError(Exception):
    """The provider rejected or failed the delivery."""

    def __init__(self, message: str, status_code: Optional[int] = None, provider: str = ""):
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500 and self.status_code != 429


def is_permanent_delivery_error(error: BaseException) -> bool:
    """Classifier for NotificationWorker: provider 4xx (except 429) will not succeed on retry."""
    return isinstance(error, DeliveryError) and error.is_client_error


class DeliveryTransport(abc.ABC):

    @abc.abstractmethod
    async def deliver(self, recipient: str, subject: str, html: str, text: str = "") -> str:
        """Send one message. Returns the provider's delivery id."""
        ...

    async def close(self):
        pass


class ResendTransport(DeliveryTransport):

    def __init__(self, config: DeliveryConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client

    @property
    def sender(self) -> str:
        if self.config.from_name:
            return f"{self.config.from_name} <{self.config.from_email}>"
        return self.config.from_email

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                timeout=httpx.Timeout(self.config.timeout, connect=10.0),
            )
        return self._client

    # Connection-level failures only; the provider's own errors go back to the queue
    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post("/emails", json=body)

    async def deliver(self, recipient: str, subject: str, html: str, text: str = "") -> str:
        body = {"from": self.sender, "to": [recipient], "subject": subject, "html": html}
        if text:
            body["text"] = text
        try:
            resp = await self._post(body)
        except httpx.TransportError as e:
            logger.error("resend_transport_error", to=recipient, error=str(e))
            raise DeliveryError(f"Resend unreachable: {e}", provider="resend") from e

        if resp.status_code >= 400:
            logger.error("resend_rejected", to=recipient, status=resp.status_code, body=resp.text[:500])
            raise DeliveryError(
                f"Resend returned {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
                provider="resend",
            )

        delivery_id = resp.json().get("id", "")
        logger.info("email_sent", to=recipient, subject=subject, delivery_id=delivery_id)
        return delivery_id

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()


class LogTransport(DeliveryTransport):
    """Logs instead of sending. Keeps the sent messages for inspection."""

    def __init__(self, config: DeliveryConfig = None):
        self.config = config or DeliveryConfig()
        self.sent: list[dict[str, Any]] = []

    async def deliver(self, recipient: str, subject: str, html: str, text: str = "") -> str:
        delivery_id = f"log_{uuid.uuid4().hex[:12]}"
        self.sent.append({"id": delivery_id, "to": recipient, "subject": subject, "html": html, "text": text})
        logger.info("email_logged", to=recipient, subject=subject, delivery_id=delivery_id)
        return delivery_id


def create_transport(config: DeliveryConfig) -> DeliveryTransport:
    """Factory: pick the transport named by `delivery.provider`."""
    if config.provider == "resend":
        if not config.api_key or "${" in config.api_key:
            raise ValueError("delivery.api_key must be set when delivery.provider is 'resend'")
        return ResendTransport(config)
    if config.provider == "log":
        return LogTransport(config)
    raise ValueError(f"Unknown delivery provider: {config.provider!r}")
