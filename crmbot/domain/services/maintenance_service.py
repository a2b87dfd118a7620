"""
Session Maintenance Service - batch upkeep of conversation data.

Expires sessions nobody answered for a while and prunes old messages and
closed sessions. Runs from Celery beat; the flow engine never calls it.
"""
from datetime import timedelta
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from crmbot.core.logging import get_logger
from crmbot.db.database import utcnow
from crmbot.db.models.conversation_message import ConversationMessage, NodeTransition
from crmbot.db.models.conversation_session import ConversationSession
from crmbot.state_machine.states import OPEN_STATUSES, SessionStatus, is_open

logger = get_logger(__name__)

DEFAULT_CLEANUP_STATUSES = (
    SessionStatus.COMPLETED,
    SessionStatus.EXPIRED,
    SessionStatus.FAILED,
)


class SessionMaintenanceService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def mark_inactive_sessions(
        self,
        inactivity_minutes: int,
        tenant_id: Optional[str] = None,
        new_status: SessionStatus = SessionStatus.EXPIRED,
    ) -> int:
        """Close open sessions idle for longer than inactivity_minutes"""
        cutoff = utcnow() - timedelta(minutes=inactivity_minutes)
        query = select(ConversationSession).where(
            ConversationSession.status.in_([s.value for s in OPEN_STATUSES]),
            ConversationSession.last_interaction_at < cutoff,
        )
        if tenant_id:
            query = query.where(ConversationSession.tenant_id == tenant_id)

        result = await self.db.execute(query)
        sessions = result.scalars().all()

        now = utcnow()
        for session in sessions:
            session.status = new_status.value
            metadata = dict(session.session_metadata or {})
            metadata.update({
                "expired_reason": "inactivity",
                "expired_at": now.isoformat(),
            })
            session.session_metadata = metadata

        await self.db.commit()
        logger.info(
            "Marked inactive sessions",
            extra_data={
                "count": len(sessions),
                "inactivity_minutes": inactivity_minutes,
                "tenant_id": tenant_id,
                "new_status": new_status.value,
            },
        )
        return len(sessions)

    async def cleanup_old_messages(
        self,
        days: int,
        tenant_id: Optional[str] = None,
    ) -> int:
        cutoff = utcnow() - timedelta(days=days)
        statement = delete(ConversationMessage).where(ConversationMessage.created_at < cutoff)
        if tenant_id:
            statement = statement.where(
                ConversationMessage.session_id.in_(
                    select(ConversationSession.id).where(
                        ConversationSession.tenant_id == tenant_id
                    )
                )
            )

        result = await self.db.execute(statement)
        await self.db.commit()
        logger.info(
            "Cleaned up old conversation messages",
            extra_data={"deleted": result.rowcount, "cutoff_days": days, "tenant_id": tenant_id},
        )
        return result.rowcount

    async def cleanup_old_sessions(
        self,
        days: int,
        tenant_id: Optional[str] = None,
        statuses: Iterable[SessionStatus] = DEFAULT_CLEANUP_STATUSES,
    ) -> int:
        """Delete closed sessions (with their messages and transitions)"""
        cutoff = utcnow() - timedelta(days=days)
        status_values = [SessionStatus(s).value for s in statuses]
        if any(is_open(s) for s in status_values):
            raise ValueError("Open sessions cannot be cleaned up")

        query = select(ConversationSession.id).where(
            ConversationSession.status.in_(status_values),
            ConversationSession.last_interaction_at < cutoff,
        )
        if tenant_id:
            query = query.where(ConversationSession.tenant_id == tenant_id)

        result = await self.db.execute(query)
        session_ids = list(result.scalars().all())
        if not session_ids:
            return 0

        await self.db.execute(
            delete(ConversationMessage).where(ConversationMessage.session_id.in_(session_ids))
        )
        await self.db.execute(
            delete(NodeTransition).where(NodeTransition.session_id.in_(session_ids))
        )
        await self.db.execute(
            delete(ConversationSession).where(ConversationSession.id.in_(session_ids))
        )
        await self.db.commit()

        logger.info(
            "Cleaned up old conversation sessions",
            extra_data={"deleted": len(session_ids), "cutoff_days": days, "tenant_id": tenant_id},
        )
        return len(session_ids)
