"""
Redis Client - shared async client for the flow graph cache and readiness probe.

Connects lazily to REDIS_URL on first use. Socket timeouts are short: every
caller treats Redis as optional and falls back to the database.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from crmbot.core.config import settings
from crmbot.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """redis://:secret@host:6379 -> redis://:****@host:6379"""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "redis://****"
    if not parsed.password:
        return url
    return url.replace(f":{parsed.password}@", ":****@")


async def get_redis() -> aioredis.Redis:
    """Shared client; raises when Redis cannot be reached"""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        )
        try:
            await client.ping()
        except Exception:
            # Do not keep a half-open pool around; the next call retries
            await client.aclose()
            logger.warning("Redis unreachable", extra_data={
                "url": _mask_redis_url(settings.REDIS_URL),
            })
            raise

        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """App shutdown hook"""
    global _redis_client
    if _redis_client is None:
        return
    await _redis_client.aclose()
    _redis_client = None
    logger.info("Redis connection closed")
