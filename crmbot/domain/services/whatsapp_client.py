"""
WhatsApp Cloud API client - sends the flow engine's replies back to users.
"""
import asyncio
from typing import Iterable, Optional

import httpx

from crmbot.core.circuit_breaker import CircuitBreaker, get_whatsapp_circuit_breaker
from crmbot.core.config import settings
from crmbot.core.exceptions import AppException, WhatsAppError
from crmbot.core.logging import get_logger
from crmbot.core.validation import UserChannelId

logger = get_logger(__name__)

_TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


class WhatsAppCloudClient:
    """
    Thin wrapper over POST /{phone_number_id}/messages.

    Transient failures (timeouts, 429, 5xx) are retried with exponential
    backoff; every call goes through the shared WhatsApp circuit breaker.
    """

    def __init__(
        self,
        circuit_breaker: Optional[CircuitBreaker] = None,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._circuit_breaker = circuit_breaker or get_whatsapp_circuit_breaker()
        self._max_retries = max_retries
        self._transport = transport
        self._base_url = settings.WHATSAPP_CLOUD_API_URL.rstrip("/")

    def _messages_url(self, phone_number_id: Optional[str]) -> str:
        return f"{self._base_url}/{phone_number_id or settings.WHATSAPP_CLOUD_API_PHONE_ID}/messages"

    async def send_text(
        self,
        to: str,
        text: str,
        phone_number_id: Optional[str] = None,
    ) -> None:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to.lstrip("+"),
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        await self._circuit_breaker.execute(
            self._post, self._messages_url(phone_number_id), payload, to
        )

    async def _post(self, url: str, payload: dict, to: str) -> None:
        headers = {"Authorization": f"Bearer {settings.WHATSAPP_CLOUD_API_TOKEN}"}
        masked = UserChannelId.mask(to)

        async with httpx.AsyncClient(
            timeout=settings.WHATSAPP_SEND_TIMEOUT_SECONDS,
            transport=self._transport,
        ) as client:
            for attempt in range(self._max_retries):
                try:
                    response = await client.post(url, json=payload, headers=headers)
                except httpx.TimeoutException:
                    if attempt < self._max_retries - 1:
                        backoff = 2 ** attempt
                        logger.warning(
                            "WhatsApp send timeout, retrying",
                            extra_data={"to": masked, "attempt": attempt + 1, "backoff_seconds": backoff},
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise WhatsAppError("WhatsApp Cloud API timeout after retries")

                if response.status_code < 400:
                    return

                if (
                    response.status_code in _TRANSIENT_STATUS_CODES
                    and attempt < self._max_retries - 1
                ):
                    backoff = 2 ** attempt
                    logger.warning(
                        "Transient WhatsApp error, retrying",
                        extra_data={
                            "to": masked,
                            "status_code": response.status_code,
                            "attempt": attempt + 1,
                            "backoff_seconds": backoff,
                        },
                    )
                    await asyncio.sleep(backoff)
                    continue

                logger.error(
                    "WhatsApp Cloud API rejected message",
                    extra_data={
                        "to": masked,
                        "status_code": response.status_code,
                        "body": response.text[:500],
                    },
                )
                raise WhatsAppError(
                    f"WhatsApp Cloud API returned status {response.status_code}",
                    status_code=response.status_code,
                )


async def send_replies(
    to: str,
    replies: Iterable[str],
    phone_number_id: Optional[str] = None,
    client: Optional[WhatsAppCloudClient] = None,
) -> int:
    """
    Send replies in order; stops at the first failure so users never get a
    conversation with a hole in it. Returns how many were sent.
    """
    client = client or WhatsAppCloudClient()
    sent = 0
    for text in replies:
        try:
            await client.send_text(to, text, phone_number_id=phone_number_id)
        except AppException as e:
            logger.error(
                "Failed to deliver chatbot reply",
                extra_data={
                    "to": UserChannelId.mask(to),
                    "sent": sent,
                    "error": e.message,
                    "error_code": e.error_code.value,
                },
            )
            break
        sent += 1
    return sent
