"""
Webhook Event Model - idempotency record for inbound channel messages.

Meta redelivers WhatsApp webhooks on timeouts; a message id that reached
status=completed is never run through the flow engine a second time.
"""
from sqlalchemy import Column, String, DateTime, Index

from crmbot.db.database import Base, utcnow


class WebhookEvent(Base):
    """An inbound channel message keyed by the provider's message id"""

    __tablename__ = "webhook_events"

    message_id = Column(String(200), primary_key=True)
    channel_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="processing")
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )
