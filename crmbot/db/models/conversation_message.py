"""
Conversation Message Model - immutable inbound/outbound turn log
"""
import enum

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, JSON

from crmbot.db.database import Base, utcnow


class ContentType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    SYSTEM = "system"  # never shown to the user
    BUTTONS = "buttons"
    LIST = "list"
    LOCATION = "location"
    CONTACT = "contact"


class ConversationMessage(Base):
    """A single message written by the user or produced by a flow node"""
    __tablename__ = "conversation_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(
        String(36), ForeignKey("conversation_sessions.id"), nullable=False, index=True
    )
    content = Column(Text, nullable=False)
    content_type = Column(String(20), nullable=False, default=ContentType.TEXT.value)
    is_from_user = Column(Boolean, nullable=False, default=False)

    # Node that produced the message (bot messages only)
    node_id = Column(String(200), nullable=True)

    message_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, index=True)


class NodeTransition(Base):
    """Observability log of node-to-node moves inside a session"""

    __tablename__ = "node_transition_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), nullable=False, index=True)
    from_node_id = Column(String(200), nullable=True)
    to_node_id = Column(String(200), nullable=False)
    trigger_type = Column(String(20), nullable=False, default="system")
    transition_metadata = Column("metadata", JSON, default=dict)
    transition_time = Column(DateTime, default=utcnow)
