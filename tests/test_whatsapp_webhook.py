"""
Tests for the WhatsApp Cloud API webhook adapter
"""
import hashlib
import hmac
import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from crmbot.api.webhooks.whatsapp import _extract_text_from_message, _try_acquire_message
from crmbot.core.config import settings
from crmbot.db.database import utcnow
from crmbot.db.models.webhook_event import WebhookEvent
from crmbot.state_machine.session_store import SessionStore
from tests.conftest import TENANT_ID, edge, flow, node

PHONE_NUMBER_ID = "1098765"
SENDER = "15550001111"

SIMPLE_FLOW = flow(
    [
        node("start", "start", y=0),
        node("welcome", "message", message="Hi! Welcome to Acme."),
        node("ask", "input", prompt="How can we help?", variableName="topic"),
    ],
    [edge("start", "welcome"), edge("welcome", "ask")],
)


def _payload(*messages: dict, phone_number_id: str = PHONE_NUMBER_ID) -> bytes:
    return json.dumps({
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "waba-1",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"phone_number_id": phone_number_id},
                    "messages": list(messages),
                },
            }],
        }],
    }).encode()


def _text(body: str, message_id: str = "wamid.1", sender: str = SENDER) -> dict:
    return {"from": sender, "id": message_id, "type": "text", "text": {"body": body}}


def _signed(body: bytes) -> dict[str, str]:
    digest = hmac.new(b"test-app-secret", body, hashlib.sha256).hexdigest()
    return {"X-Hub-Signature-256": f"sha256={digest}", "Content-Type": "application/json"}


async def _post(test_client, body: bytes):
    return await test_client.post("/api/whatsapp/webhook", content=body, headers=_signed(body))


class TestVerification:

    @pytest.mark.integration
    async def test_challenge_is_echoed(self, test_client):
        response = await test_client.get(
            "/api/whatsapp/webhook",
            params={
                "hub.mode": "subscribe",
                "hub.challenge": "1158201444",
                "hub.verify_token": "test-verify-token",
            },
        )

        assert response.status_code == 200
        assert response.json() == 1158201444

    @pytest.mark.integration
    async def test_wrong_token(self, test_client):
        response = await test_client.get(
            "/api/whatsapp/webhook",
            params={"hub.mode": "subscribe", "hub.challenge": "1", "hub.verify_token": "guess"},
        )
        assert response.status_code == 403

    @pytest.mark.integration
    async def test_non_numeric_challenge(self, test_client):
        response = await test_client.get(
            "/api/whatsapp/webhook",
            params={
                "hub.mode": "subscribe",
                "hub.challenge": "abc",
                "hub.verify_token": "test-verify-token",
            },
        )
        assert response.status_code == 400


class TestSignature:

    @pytest.mark.integration
    async def test_missing_signature(self, test_client):
        response = await test_client.post("/api/whatsapp/webhook", content=_payload(_text("hi")))
        assert response.status_code == 403

    @pytest.mark.integration
    async def test_tampered_body(self, test_client):
        headers = _signed(_payload(_text("hi")))
        response = await test_client.post(
            "/api/whatsapp/webhook", content=_payload(_text("bye")), headers=headers
        )
        assert response.status_code == 403

    @pytest.mark.integration
    async def test_unset_secret_rejects_everything(self, test_client):
        body = _payload(_text("hi"))
        with patch.object(settings, "WHATSAPP_CLOUD_API_APP_SECRET", ""):
            response = await test_client.post("/api/whatsapp/webhook", content=body, headers=_signed(body))
        assert response.status_code == 403

    @pytest.mark.integration
    async def test_invalid_json(self, test_client):
        response = await _post(test_client, b"{not json")
        assert response.status_code == 400


class TestMessageProcessing:

    @pytest.mark.scenario
    async def test_message_runs_a_turn_and_sends_replies(
        self, test_client, db_session, activation_factory, channel_factory
    ):
        activation = await activation_factory(SIMPLE_FLOW)
        await channel_factory(PHONE_NUMBER_ID, default_activation_id=activation.id)

        with patch("crmbot.api.webhooks.whatsapp.send_replies", new=AsyncMock()) as sender:
            response = await _post(test_client, _payload(_text("hello")))

        assert response.status_code == 200
        processed = response.json()["processed"]
        assert len(processed) == 1
        assert processed[0]["message_id"] == "wamid.1"
        assert processed[0]["session_status"] == "waiting_input"
        assert processed[0]["replies"] == 2

        sender.assert_awaited_once_with(
            SENDER,
            ["Hi! Welcome to Acme.", "How can we help?"],
            phone_number_id=PHONE_NUMBER_ID,
        )

        session = await SessionStore(db_session).get_session(processed[0]["session_id"])
        assert session.tenant_id == TENANT_ID
        assert session.user_channel_id == "+15550001111"
        assert session.channel_type == "whatsapp"

        db_session.expunge_all()
        event = await db_session.get(WebhookEvent, "wamid.1")
        assert event.status == "completed"

    @pytest.mark.integration
    async def test_redelivery_is_skipped(self, test_client, db_session, activation_factory):
        await activation_factory(SIMPLE_FLOW)
        body = _payload(_text("hello"))

        with patch.object(settings, "WHATSAPP_DEFAULT_TENANT_ID", TENANT_ID), \
             patch("crmbot.api.webhooks.whatsapp.send_replies", new=AsyncMock()) as sender:
            first = await _post(test_client, body)
            # Production requests each get their own session
            db_session.expunge_all()
            second = await _post(test_client, body)

        assert len(first.json()["processed"]) == 1
        assert second.json()["processed"] == []
        assert sender.await_count == 1

    @pytest.mark.integration
    async def test_unknown_number_without_default_tenant(self, test_client, db_session):
        with patch.object(settings, "WHATSAPP_DEFAULT_TENANT_ID", None), \
             patch("crmbot.api.webhooks.whatsapp.send_replies", new=AsyncMock()) as sender:
            response = await _post(test_client, _payload(_text("hello")))

        assert response.status_code == 200
        assert response.json()["processed"] == []
        sender.assert_not_awaited()

    @pytest.mark.integration
    async def test_media_messages_are_ignored(self, test_client, activation_factory):
        await activation_factory(SIMPLE_FLOW)
        image = {"from": SENDER, "id": "wamid.img", "type": "image", "image": {"id": "media-1"}}

        with patch.object(settings, "WHATSAPP_DEFAULT_TENANT_ID", TENANT_ID), \
             patch("crmbot.api.webhooks.whatsapp.send_replies", new=AsyncMock()) as sender:
            response = await _post(test_client, _payload(image))

        assert response.json()["processed"] == []
        sender.assert_not_awaited()

    @pytest.mark.integration
    async def test_status_callbacks_are_ignored(self, test_client):
        body = json.dumps({
            "entry": [{"changes": [{"value": {
                "messaging_product": "whatsapp",
                "metadata": {"phone_number_id": PHONE_NUMBER_ID},
                "statuses": [{"id": "wamid.1", "status": "delivered"}],
            }}]}],
        }).encode()

        response = await _post(test_client, body)

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "processed": []}


class TestIdempotency:

    @pytest.mark.integration
    async def test_stale_processing_message_is_retried(self, db_session):
        db_session.add(WebhookEvent(
            message_id="wamid.stale",
            channel_type="whatsapp",
            status="processing",
            created_at=utcnow() - timedelta(minutes=10),
        ))
        await db_session.commit()
        db_session.expunge_all()

        assert await _try_acquire_message(db_session, "wamid.stale") is True

    @pytest.mark.integration
    async def test_fresh_processing_message_is_skipped(self, db_session):
        db_session.add(WebhookEvent(
            message_id="wamid.busy",
            channel_type="whatsapp",
            status="processing",
            created_at=utcnow(),
        ))
        await db_session.commit()
        db_session.expunge_all()

        assert await _try_acquire_message(db_session, "wamid.busy") is False

    @pytest.mark.integration
    async def test_message_without_id_is_always_processed(self, db_session):
        assert await _try_acquire_message(db_session, "") is True
        rows = (await db_session.execute(select(WebhookEvent))).scalars().all()
        assert rows == []


class TestTextExtraction:

    @pytest.mark.unit
    @pytest.mark.parametrize("message,expected", [
        ({"type": "text", "text": {"body": "hola"}}, "hola"),
        (
            {"type": "interactive", "interactive": {
                "type": "button_reply", "button_reply": {"id": "btn-1", "title": "Book"}}},
            "Book",
        ),
        (
            {"type": "interactive", "interactive": {
                "type": "list_reply", "list_reply": {"id": "row-2"}}},
            "row-2",
        ),
        ({"type": "button", "button": {"text": "Yes", "payload": "YES"}}, "Yes"),
        ({"type": "image", "image": {"id": "x"}}, ""),
        ({}, ""),
    ])
    def test_extract(self, message, expected):
        assert _extract_text_from_message(message) == expected
