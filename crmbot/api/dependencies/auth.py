"""
API key check for the chatbot endpoints called by the web-chat widget and
back-office tools.

Usage:
    @router.post("/message")
    async def post_message(
        _: None = Depends(require_chatbot_api_key),
    ):
        ...
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from crmbot.core.config import settings
from crmbot.core.logging import get_logger

logger = get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_chatbot_api_key(
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """
    401 when the key is missing, 403 when it does not match.
    With CHATBOT_API_KEY unset the endpoints are closed entirely.
    """
    if not settings.CHATBOT_API_KEY:
        logger.warning("Chatbot API request rejected - CHATBOT_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="CHATBOT_API_KEY is not configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key - X-API-Key header is required",
        )

    if not hmac.compare_digest(api_key, settings.CHATBOT_API_KEY):
        logger.warning("Chatbot API request rejected - wrong API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
