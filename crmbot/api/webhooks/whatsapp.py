"""
WhatsApp Cloud API Webhook - channel adapter in front of the flow engine.

Meta -> verify signature -> dedupe by message id -> tenant lookup ->
FlowEngine.process_message -> replies sent in the background.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from crmbot.core.config import settings
from crmbot.core.logging import get_logger
from crmbot.core.validation import TextSanitizer, UserChannelId
from crmbot.db.database import get_db, utcnow
from crmbot.db.models.chatbot_template import ChatbotChannel
from crmbot.db.models.webhook_event import WebhookEvent
from crmbot.domain.services.whatsapp_client import send_replies
from crmbot.state_machine.flow_engine import FlowEngine

logger = get_logger(__name__)

CHANNEL_TYPE = "whatsapp"

# A message stuck in "processing" longer than this may be retried
_STALE_PROCESSING_SECONDS = 120

router = APIRouter()


# ──────────────────────────────────────────────
#  Idempotency - DB backed. A row is inserted as "processing" before the
#  turn runs and flipped to "completed" after; Meta redeliveries of a
#  completed message are skipped.
# ──────────────────────────────────────────────


async def _try_acquire_message(db: AsyncSession, message_id: str) -> bool:
    """True when this message id is new (or stale) and may be processed"""
    if not message_id:
        return True

    try:
        async with db.begin_nested():
            db.add(WebhookEvent(
                message_id=message_id,
                channel_type=CHANNEL_TYPE,
                status="processing",
                created_at=utcnow(),
            ))
        # Commit right away so a crash mid-turn still blocks immediate redelivery
        await db.commit()
        return True
    except IntegrityError:
        pass

    result = await db.execute(
        select(WebhookEvent.status, WebhookEvent.created_at)
        .where(WebhookEvent.message_id == message_id)
    )
    row = result.one_or_none()
    if not row:
        return False

    if row.status == "completed":
        logger.info(
            "Skipping completed duplicate message",
            extra_data={"message_id": message_id},
        )
        return False

    threshold = utcnow() - timedelta(seconds=_STALE_PROCESSING_SECONDS)
    update_result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.message_id == message_id,
            WebhookEvent.status == "processing",
            WebhookEvent.created_at < threshold,
        )
        .values(created_at=utcnow())
    )
    if update_result.rowcount > 0:
        await db.commit()
        logger.warning(
            "Retrying stale processing message",
            extra_data={"message_id": message_id},
        )
        return True

    logger.info(
        "Skipping in-progress message",
        extra_data={"message_id": message_id},
    )
    return False


async def _mark_message_completed(db: AsyncSession, message_id: str) -> None:
    if not message_id:
        return
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.message_id == message_id)
        .values(status="completed")
    )
    await db.commit()


# ──────────────────────────────────────────────
#  Meta verification & signature
# ──────────────────────────────────────────────


@router.get("/webhook", summary="Cloud API Webhook Verification", tags=["Webhooks"])
async def cloud_api_verify(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
) -> int:
    """Echo hub.challenge when the verify token matches"""
    if (
        hub_mode == "subscribe"
        and hub_challenge
        and hub_verify_token
        and settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN
        and hmac.compare_digest(hub_verify_token, settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN)
    ):
        logger.info("Cloud API webhook verified successfully")
        try:
            return int(hub_challenge)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid challenge")

    logger.warning(
        "Cloud API webhook verification failed",
        extra_data={"hub_mode": hub_mode},
    )
    raise HTTPException(status_code=403, detail="Verification failed")


def _verify_signature(body: bytes, signature_header: str) -> bool:
    """HMAC-SHA256 of the raw body with the app secret"""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(
        settings.WHATSAPP_CLOUD_API_APP_SECRET.encode(),
        body,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(signature_header[7:], expected)


# ──────────────────────────────────────────────
#  Payload extraction
# ──────────────────────────────────────────────


def _extract_text_from_message(msg: dict) -> str:
    """Text body, or the title of a tapped button / list row"""
    msg_type = msg.get("type", "")

    if msg_type == "text":
        return msg.get("text", {}).get("body", "")

    if msg_type == "interactive":
        interactive = msg.get("interactive", {})
        interactive_type = interactive.get("type", "")
        if interactive_type == "button_reply":
            reply = interactive.get("button_reply", {})
            return reply.get("title") or reply.get("id", "")
        if interactive_type == "list_reply":
            reply = interactive.get("list_reply", {})
            return reply.get("title") or reply.get("id", "")

    # Template quick-reply button
    if msg_type == "button":
        return msg.get("button", {}).get("text", "")

    return ""


async def _resolve_tenant_id(db: AsyncSession, phone_number_id: Optional[str]) -> Optional[str]:
    """Tenant owning the business number the message was sent to"""
    if phone_number_id:
        result = await db.execute(
            select(ChatbotChannel.tenant_id).where(
                ChatbotChannel.channel_type == CHANNEL_TYPE,
                ChatbotChannel.channel_identifier == phone_number_id,
                ChatbotChannel.is_active.is_(True),
            ).limit(1)
        )
        tenant_id = result.scalar_one_or_none()
        if tenant_id:
            return tenant_id
    return settings.WHATSAPP_DEFAULT_TENANT_ID


# ──────────────────────────────────────────────
#  Webhook handler
# ──────────────────────────────────────────────


@router.post(
    "/webhook",
    summary="Cloud API Webhook",
    responses={
        200: {"description": "Payload accepted"},
        403: {"description": "Invalid signature"},
    },
    tags=["Webhooks"],
)
async def cloud_api_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = await request.body()
    signature = request.headers.get("X-Hub-Signature-256", "")

    if not settings.WHATSAPP_CLOUD_API_APP_SECRET:
        logger.error("Cloud API webhook: WHATSAPP_CLOUD_API_APP_SECRET is not set, rejecting")
        raise HTTPException(status_code=403, detail="Signature cannot be verified")

    if not _verify_signature(body, signature):
        logger.warning("Cloud API webhook: invalid signature")
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    processed: list[dict] = []

    # entry[] -> changes[] -> value.messages[]
    for entry in payload.get("entry", []):
        for change in entry.get("changes", []):
            value = change.get("value", {})
            if value.get("messaging_product") != "whatsapp":
                continue

            phone_number_id = value.get("metadata", {}).get("phone_number_id")
            for msg in value.get("messages", []):
                result = await _process_cloud_message(
                    db, msg, phone_number_id, background_tasks
                )
                if result:
                    processed.append(result)

    return {"status": "ok", "processed": processed}


async def _process_cloud_message(
    db: AsyncSession,
    msg: dict,
    phone_number_id: Optional[str],
    background_tasks: BackgroundTasks,
) -> Optional[dict]:
    message_id = msg.get("id", "")
    sender = msg.get("from", "")
    if not sender:
        return None

    if not await _try_acquire_message(db, message_id):
        return None

    text = TextSanitizer.sanitize(_extract_text_from_message(msg))
    if not text:
        logger.info(
            "Ignoring non-text WhatsApp message",
            extra_data={"message_id": message_id, "type": msg.get("type")},
        )
        await _mark_message_completed(db, message_id)
        return None

    tenant_id = await _resolve_tenant_id(db, phone_number_id)
    if not tenant_id:
        logger.error(
            "No tenant configured for WhatsApp number",
            extra_data={"phone_number_id": phone_number_id, "message_id": message_id},
        )
        await _mark_message_completed(db, message_id)
        return None

    user_channel_id = UserChannelId.normalize_whatsapp(sender)
    turn = await FlowEngine(db).process_message(
        tenant_id, user_channel_id, text,
        channel_type=CHANNEL_TYPE, channel_identifier=phone_number_id,
    )

    background_tasks.add_task(
        send_replies, sender, list(turn.responses), phone_number_id=phone_number_id
    )
    await _mark_message_completed(db, message_id)

    logger.info(
        "WhatsApp message processed",
        extra_data={
            "message_id": message_id,
            "from": UserChannelId.mask(user_channel_id),
            "session_id": turn.session_id,
            "replies": len(turn.responses),
        },
    )
    return {
        "message_id": message_id,
        "session_id": turn.session_id,
        "session_status": turn.session_status,
        "replies": len(turn.responses),
    }
