"""
Chatbot Template Models - published flow graphs and their tenant activations
"""
import uuid

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, JSON

from crmbot.db.database import Base, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class ChatbotTemplate(Base):
    """A flow graph authored in the visual builder ({nodes, edges} JSON)"""
    __tablename__ = "chatbot_templates"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(200), nullable=False)
    react_flow_json = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
    )


class ChatbotActivation(Base):
    """A template enabled for one tenant"""

    __tablename__ = "tenant_chatbot_activations"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(64), nullable=False, index=True)
    template_id = Column(String(36), ForeignKey("chatbot_templates.id"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    activated_at = Column(DateTime, default=utcnow)


class ChatbotChannel(Base):
    """Channel-level override of which activation answers a given identifier"""

    __tablename__ = "tenant_chatbot_channels"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(64), nullable=False, index=True)
    channel_type = Column(String(20), nullable=False)
    channel_identifier = Column(String(100), nullable=False)
    default_activation_id = Column(
        String(36), ForeignKey("tenant_chatbot_activations.id"), nullable=True
    )
    is_active = Column(Boolean, nullable=False, default=True)
