"""
Conversation Session Model - Flow Position and Memory per User Channel
"""
import uuid

from sqlalchemy import Column, String, DateTime, JSON, Index

from crmbot.db.database import Base, utcnow


def _new_session_id() -> str:
    return str(uuid.uuid4())


class ConversationSession(Base):
    """One user's conversation with a tenant's chatbot on one channel"""
    __tablename__ = "conversation_sessions"

    id = Column(String(36), primary_key=True, default=_new_session_id)
    tenant_id = Column(String(64), nullable=False, index=True)
    user_channel_id = Column(String(100), nullable=False)  # phone number, web visitor id...
    channel_type = Column(String(20), nullable=False)  # whatsapp, webchat

    # Published flow bound to this session
    active_chatbot_activation_id = Column(String(36), nullable=True)

    # Flow position - NULL means not started yet (or nothing left to run)
    current_node_id = Column(String(200), nullable=True)

    # Variables collected during the conversation (graph-author defined keys)
    state_data = Column(JSON, default=dict)

    # SessionStatus value
    status = Column(String(20), nullable=False, default="active", index=True)

    # "metadata" is reserved on declarative classes
    session_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=utcnow)
    last_interaction_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index(
            "ix_conversation_sessions_lookup",
            "tenant_id", "user_channel_id", "channel_type", "status",
        ),
    )
