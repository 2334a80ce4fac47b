"""Tests for delivery transports and the transport factory."""
import json

import httpx
import pytest

from config.settings import DeliveryConfig
from notifications.transport import (
    DeliveryError, LogTransport, ResendTransport, create_transport, is_permanent_delivery_error,
)


def resend_with(handler) -> ResendTransport:
    config = DeliveryConfig(provider="resend", api_key="re_test", from_email="hi@x.test", from_name="Contest")
    client = httpx.AsyncClient(
        base_url=config.base_url,
        headers={"Authorization": f"Bearer {config.api_key}"},
        transport=httpx.MockTransport(handler),
    )
    return ResendTransport(config, client=client)


class TestFactory:
    def test_log_provider(self):
        assert isinstance(create_transport(DeliveryConfig(provider="log")), LogTransport)

    def test_resend_requires_key(self):
        with pytest.raises(ValueError):
            create_transport(DeliveryConfig(provider="resend", api_key=""))

    def test_unsubstituted_key_rejected(self):
        with pytest.raises(ValueError):
            create_transport(DeliveryConfig(provider="resend", api_key="${RESEND_API_KEY}"))

    def test_resend_with_key(self):
        transport = create_transport(DeliveryConfig(provider="resend", api_key="re_live"))
        assert isinstance(transport, ResendTransport)

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="carrier-pigeon"):
            create_transport(DeliveryConfig(provider="carrier-pigeon"))


class TestClassifier:
    def test_client_errors_are_permanent(self):
        assert is_permanent_delivery_error(DeliveryError("bad address", status_code=422))

    def test_rate_limit_is_retryable(self):
        assert not is_permanent_delivery_error(DeliveryError("slow down", status_code=429))

    def test_server_and_network_errors_are_retryable(self):
        assert not is_permanent_delivery_error(DeliveryError("oops", status_code=502))
        assert not is_permanent_delivery_error(DeliveryError("unreachable"))
        assert not is_permanent_delivery_error(TimeoutError())


class TestLogTransport:
    @pytest.mark.asyncio
    async def test_records_messages(self):
        transport = LogTransport()
        delivery_id = await transport.deliver("fan@example.com", "Hi", "<p>Hi</p>", "Hi")
        assert delivery_id.startswith("log_")
        assert transport.sent[0]["to"] == "fan@example.com"


class TestResendTransport:
    @pytest.mark.asyncio
    async def test_posts_email(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "re_msg_1"})

        transport = resend_with(handler)
        assert await transport.deliver("fan@example.com", "Hi", "<p>Hi</p>", "Hi") == "re_msg_1"
        await transport.close()

        [request] = requests
        assert request.url.path == "/emails"
        assert request.headers["Authorization"] == "Bearer re_test"
        body = json.loads(request.content)
        assert body == {"from": "Contest <hi@x.test>", "to": ["fan@example.com"],
                        "subject": "Hi", "html": "<p>Hi</p>", "text": "Hi"}

    @pytest.mark.asyncio
    async def test_rejection_raises_delivery_error(self):
        transport = resend_with(lambda request: httpx.Response(422, json={"message": "invalid `to`"}))
        with pytest.raises(DeliveryError) as exc:
            await transport.deliver("fan@example.com", "Hi", "<p>Hi</p>")
        assert exc.value.status_code == 422
        assert exc.value.provider == "resend"
        assert exc.value.is_client_error
        await transport.close()

    @pytest.mark.asyncio
    async def test_server_error_is_not_client_error(self):
        transport = resend_with(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(DeliveryError) as exc:
            await transport.deliver("fan@example.com", "Hi", "<p>Hi</p>")
        assert not exc.value.is_client_error
        await transport.close()

    def test_sender_without_name(self):
        transport = ResendTransport(DeliveryConfig(from_email="hi@x.test", from_name=""))
        assert transport.sender == "hi@x.test"
