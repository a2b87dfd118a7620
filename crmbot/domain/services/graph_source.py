"""
Graph Source - which published flow answers a conversation, and its graph.

Parsed {nodes, edges} JSON is cached in Redis per activation. The cache is an
optimisation only: any Redis failure is logged and the database is read.
"""
import json
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crmbot.core.config import settings
from crmbot.core.exceptions import ChatbotNotConfiguredError, FlowDefinitionError
from crmbot.core.logging import get_logger
from crmbot.core.redis_client import get_redis
from crmbot.db.models.chatbot_template import (
    ChatbotActivation,
    ChatbotChannel,
    ChatbotTemplate,
)
from crmbot.state_machine.graph import FlowGraph

logger = get_logger(__name__)

_CACHE_PREFIX = "chatbot:graph:"


def _cache_key(activation_id: str) -> str:
    return f"{_CACHE_PREFIX}{activation_id}"


class GraphCache:
    """Redis-backed cache of raw flow JSON keyed by activation id"""

    def __init__(
        self,
        redis_getter: Optional[Callable[[], Awaitable[Any]]] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self._redis_getter = redis_getter or get_redis
        self.ttl_seconds = ttl_seconds or settings.GRAPH_CACHE_TTL_SECONDS

    async def get(self, activation_id: str) -> Optional[dict]:
        try:
            redis = await self._redis_getter()
            raw = await redis.get(_cache_key(activation_id))
        except Exception as e:
            logger.warning(
                "Graph cache read failed, falling back to database",
                extra_data={"activation_id": activation_id, "error": str(e)},
            )
            return None

        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(
                "Discarding unreadable graph cache entry",
                extra_data={"activation_id": activation_id},
            )
            return None

    async def set(self, activation_id: str, payload: dict) -> None:
        try:
            redis = await self._redis_getter()
            await redis.set(
                _cache_key(activation_id),
                json.dumps(payload, ensure_ascii=False),
                ex=self.ttl_seconds,
            )
        except Exception as e:
            logger.warning(
                "Graph cache write failed",
                extra_data={"activation_id": activation_id, "error": str(e)},
            )

    async def invalidate(self, activation_id: str) -> bool:
        """Drop a cached graph; returns True when an entry was removed"""
        try:
            redis = await self._redis_getter()
            removed = await redis.delete(_cache_key(activation_id))
        except Exception as e:
            logger.warning(
                "Graph cache invalidation failed",
                extra_data={"activation_id": activation_id, "error": str(e)},
            )
            return False
        return bool(removed)


class GraphSource:
    """Resolves activations and loads their graphs"""

    def __init__(self, db: AsyncSession, cache: Optional[GraphCache] = None):
        self.db = db
        if cache is None and settings.GRAPH_CACHE_ENABLED:
            cache = GraphCache()
        self.cache = cache

    async def resolve_activation_id(
        self,
        tenant_id: str,
        channel_type: str,
        channel_identifier: Optional[str] = None,
    ) -> str:
        """
        Activation for a new session: the channel's default if one is
        configured, otherwise the tenant's most recently activated flow.
        """
        channel_query = select(ChatbotChannel.default_activation_id).where(
            ChatbotChannel.tenant_id == tenant_id,
            ChatbotChannel.channel_type == channel_type,
            ChatbotChannel.is_active.is_(True),
            ChatbotChannel.default_activation_id.is_not(None),
        )
        if channel_identifier:
            channel_query = channel_query.order_by(
                (ChatbotChannel.channel_identifier == channel_identifier).desc()
            )
        result = await self.db.execute(channel_query.limit(1))
        default_activation_id = result.scalar_one_or_none()

        if default_activation_id:
            active = await self.db.execute(
                select(ChatbotActivation.id).where(
                    ChatbotActivation.id == default_activation_id,
                    ChatbotActivation.is_active.is_(True),
                )
            )
            if active.scalar_one_or_none():
                return default_activation_id

        result = await self.db.execute(
            select(ChatbotActivation.id)
            .where(
                ChatbotActivation.tenant_id == tenant_id,
                ChatbotActivation.is_active.is_(True),
            )
            .order_by(ChatbotActivation.activated_at.desc())
            .limit(1)
        )
        activation_id = result.scalar_one_or_none()
        if not activation_id:
            raise ChatbotNotConfiguredError(tenant_id, channel_type)
        return activation_id

    async def load(self, activation_id: str) -> FlowGraph:
        if self.cache:
            cached = await self.cache.get(activation_id)
            if cached is not None:
                return FlowGraph.from_json(cached, activation_id)

        result = await self.db.execute(
            select(ChatbotTemplate.react_flow_json)
            .join(ChatbotActivation, ChatbotActivation.template_id == ChatbotTemplate.id)
            .where(ChatbotActivation.id == activation_id)
        )
        payload = result.scalar_one_or_none()
        if payload is None:
            raise FlowDefinitionError("Activation has no flow template", activation_id)
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError:
                raise FlowDefinitionError("Flow template is not valid JSON", activation_id)

        graph = FlowGraph.from_json(payload, activation_id)
        if self.cache:
            await self.cache.set(activation_id, payload)
        return graph

    async def load_for_session(self, session: Any) -> FlowGraph:
        activation_id = session.active_chatbot_activation_id
        if not activation_id:
            raise ChatbotNotConfiguredError(session.tenant_id, session.channel_type)
        return await self.load(activation_id)
