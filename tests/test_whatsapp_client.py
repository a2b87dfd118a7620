"""
Tests for the outbound WhatsApp Cloud API client
"""
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from crmbot.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from crmbot.core.exceptions import WhatsAppError
from crmbot.domain.services.whatsapp_client import WhatsAppCloudClient, send_replies


def _client(handler, max_retries: int = 3) -> WhatsAppCloudClient:
    breaker = CircuitBreaker("whatsapp-test", CircuitBreakerConfig(failure_threshold=10))
    return WhatsAppCloudClient(
        circuit_breaker=breaker,
        max_retries=max_retries,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def no_sleep():
    with patch("crmbot.domain.services.whatsapp_client.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


class TestSendText:

    @pytest.mark.unit
    async def test_payload(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"messages": [{"id": "wamid.out"}]})

        await _client(handler).send_text("+15550001111", "Hello", phone_number_id="42")

        assert len(seen) == 1
        assert seen[0].url.path.endswith("/42/messages")
        body = json.loads(seen[0].content)
        assert body["to"] == "15550001111"
        assert body["text"]["body"] == "Hello"
        assert seen[0].headers["Authorization"].startswith("Bearer ")

    @pytest.mark.unit
    async def test_transient_errors_are_retried(self, no_sleep):
        statuses = iter([503, 429, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(statuses))

        await _client(handler).send_text("+1555", "Hello", phone_number_id="42")

        assert [c.args[0] for c in no_sleep.await_args_list] == [1, 2]

    @pytest.mark.unit
    async def test_client_errors_are_not_retried(self, no_sleep):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, json={"error": {"message": "bad"}})

        with pytest.raises(WhatsAppError) as exc_info:
            await _client(handler).send_text("+1555", "Hello", phone_number_id="42")

        assert len(calls) == 1
        assert exc_info.value.details["upstream_status"] == 400
        no_sleep.assert_not_awaited()

    @pytest.mark.unit
    async def test_timeouts_exhaust_retries(self, no_sleep):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(WhatsAppError):
            await _client(handler, max_retries=2).send_text("+1555", "Hello", phone_number_id="42")

        assert no_sleep.await_count == 1


class TestSendReplies:

    @pytest.mark.unit
    async def test_replies_are_sent_in_order(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content)["text"]["body"])
            return httpx.Response(200)

        sent = await send_replies("+1555", ["one", "two", "three"], client=_client(handler))

        assert sent == 3
        assert bodies == ["one", "two", "three"]

    @pytest.mark.unit
    async def test_stops_at_first_failure(self, no_sleep):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)["text"]["body"]
            bodies.append(body)
            return httpx.Response(400 if body == "two" else 200)

        sent = await send_replies("+1555", ["one", "two", "three"], client=_client(handler))

        assert sent == 1
        assert bodies == ["one", "two"]
