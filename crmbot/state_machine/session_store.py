"""
Session Store - persistence of conversation sessions, messages and transitions
"""
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crmbot.core.exceptions import InvalidSessionTransitionError, SessionNotFoundError
from crmbot.core.logging import get_logger
from crmbot.db.database import utcnow
from crmbot.db.models.conversation_message import (
    ContentType,
    ConversationMessage,
    NodeTransition,
)
from crmbot.db.models.conversation_session import ConversationSession
from crmbot.state_machine.states import OPEN_STATUSES, SessionStatus, can_transition

logger = get_logger(__name__)

_UNSET: Any = object()

# Gaps longer than this are treated as the user walking away, not bot latency
RESPONSE_TIME_OUTLIER_SECONDS = 30


class SessionStore:
    """
    CRUD over conversation sessions.

    JSON columns are always reassigned with a NEW dict so SQLAlchemy detects
    the change; callers pass deltas and the store merges them.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_active_session(
        self,
        tenant_id: str,
        user_channel_id: str,
        channel_type: str,
    ) -> Optional[ConversationSession]:
        result = await self.db.execute(
            select(ConversationSession)
            .where(
                ConversationSession.tenant_id == tenant_id,
                ConversationSession.user_channel_id == user_channel_id,
                ConversationSession.channel_type == channel_type,
                ConversationSession.status.in_([s.value for s in OPEN_STATUSES]),
            )
            .order_by(ConversationSession.last_interaction_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_session(self, session_id: str) -> Optional[ConversationSession]:
        result = await self.db.execute(
            select(ConversationSession).where(ConversationSession.id == session_id)
        )
        return result.scalar_one_or_none()

    async def require_session(self, session_id: str) -> ConversationSession:
        session = await self.get_session(session_id)
        if not session:
            raise SessionNotFoundError(session_id)
        return session

    async def create_session(
        self,
        tenant_id: str,
        user_channel_id: str,
        channel_type: str,
        activation_id: Optional[str],
        current_node_id: Optional[str] = None,
        state_data: Optional[dict] = None,
        status: SessionStatus = SessionStatus.ACTIVE,
        metadata: Optional[dict] = None,
    ) -> ConversationSession:
        now = utcnow()
        session = ConversationSession(
            tenant_id=tenant_id,
            user_channel_id=user_channel_id,
            channel_type=channel_type,
            active_chatbot_activation_id=activation_id,
            current_node_id=current_node_id,
            state_data=dict(state_data or {}),
            status=status.value,
            session_metadata=dict(metadata or {}),
            created_at=now,
            last_interaction_at=now,
        )
        self.db.add(session)
        await self.db.commit()
        await self.db.refresh(session)

        logger.info(
            "Conversation session created",
            extra_data={
                "session_id": session.id,
                "tenant_id": tenant_id,
                "channel_type": channel_type,
                "activation_id": activation_id,
            },
        )
        return session

    async def update_session(
        self,
        session_id: str,
        *,
        status: Optional[SessionStatus] = None,
        current_node_id: Optional[str] = _UNSET,
        state_data: Optional[dict] = None,
        state_updates: Optional[dict] = None,
        metadata_updates: Optional[dict] = None,
    ) -> ConversationSession:
        """
        Partial update. ``state_data`` replaces the whole map, ``state_updates``
        and ``metadata_updates`` are merged into what is stored.
        """
        session = await self.require_session(session_id)

        if status is not None:
            status = SessionStatus(status)
        if status is not None and status.value != session.status:
            if not can_transition(session.status, status.value):
                raise InvalidSessionTransitionError(session_id, session.status, status.value)
            session.status = status.value

        if current_node_id is not _UNSET:
            session.current_node_id = current_node_id

        if state_data is not None or state_updates:
            merged = dict(state_data if state_data is not None else (session.state_data or {}))
            merged.update(state_updates or {})
            session.state_data = merged

        if metadata_updates:
            metadata = dict(session.session_metadata or {})
            metadata.update(metadata_updates)
            session.session_metadata = metadata

        session.last_interaction_at = utcnow()
        await self.db.commit()
        return session

    async def add_message(
        self,
        session_id: str,
        content: str,
        is_from_user: bool,
        content_type: str = ContentType.TEXT.value,
        node_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ConversationMessage:
        message = ConversationMessage(
            session_id=session_id,
            content=content,
            content_type=content_type,
            is_from_user=is_from_user,
            node_id=node_id,
            message_metadata=dict(metadata or {}),
            created_at=utcnow(),
        )
        self.db.add(message)

        session = await self.get_session(session_id)
        if session:
            session.last_interaction_at = utcnow()

        await self.db.commit()
        return message

    async def get_messages(
        self,
        session_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ConversationMessage]:
        """Messages in chronological order"""
        result = await self.db.execute(
            select(ConversationMessage)
            .where(ConversationMessage.session_id == session_id)
            .order_by(ConversationMessage.created_at.asc(), ConversationMessage.id.asc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def log_node_transition(
        self,
        session_id: str,
        from_node_id: Optional[str],
        to_node_id: str,
        trigger_type: str = "system",
        metadata: Optional[dict] = None,
    ) -> None:
        """Best effort: a failed insert is logged and never fails the turn"""
        try:
            self.db.add(
                NodeTransition(
                    session_id=session_id,
                    from_node_id=from_node_id,
                    to_node_id=to_node_id,
                    trigger_type=trigger_type,
                    transition_metadata=dict(metadata or {}),
                    transition_time=utcnow(),
                )
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning(
                "Failed to log node transition",
                extra_data={
                    "session_id": session_id,
                    "from_node_id": from_node_id,
                    "to_node_id": to_node_id,
                    "error": str(e),
                },
            )

    async def end_session(
        self,
        session_id: str,
        status: SessionStatus = SessionStatus.COMPLETED,
        reason: Optional[str] = None,
    ) -> ConversationSession:
        metadata_updates: dict[str, Any] = {"ended_at": utcnow().isoformat()}
        if reason:
            metadata_updates["end_reason"] = reason

        session = await self.update_session(
            session_id, status=status, metadata_updates=metadata_updates
        )
        logger.info(
            "Conversation session ended",
            extra_data={"session_id": session_id, "status": status.value, "reason": reason},
        )
        return session

    async def rollback(self) -> None:
        await self.db.rollback()

    async def analyze_session(self, session_id: str) -> dict[str, Any]:
        """Counts, average bot response time and the nodes the session went through"""
        session = await self.require_session(session_id)
        messages = await self.get_messages(session_id, limit=10_000)

        user_count = sum(1 for m in messages if m.is_from_user)
        response_times = []
        last_user_at: Optional[datetime] = None
        for message in messages:
            if message.is_from_user:
                last_user_at = message.created_at
            elif last_user_at is not None:
                gap = (message.created_at - last_user_at).total_seconds()
                if 0 <= gap <= RESPONSE_TIME_OUTLIER_SECONDS:
                    response_times.append(gap)
                last_user_at = None

        visited_nodes: list[str] = []
        for message in messages:
            if message.node_id and message.node_id not in visited_nodes:
                visited_nodes.append(message.node_id)

        duration_minutes = 0.0
        if messages:
            span = messages[-1].created_at - messages[0].created_at
            duration_minutes = round(span.total_seconds() / 60, 2)

        return {
            "session_id": session.id,
            "status": session.status,
            "total_messages": len(messages),
            "user_messages": user_count,
            "bot_messages": len(messages) - user_count,
            "average_response_seconds": (
                round(sum(response_times) / len(response_times), 3) if response_times else None
            ),
            "duration_minutes": duration_minutes,
            "visited_nodes": visited_nodes,
            "current_node_id": session.current_node_id,
        }
