"""
Database Models
"""
from crmbot.db.models.conversation_session import ConversationSession
from crmbot.db.models.conversation_message import ConversationMessage, ContentType, NodeTransition
from crmbot.db.models.chatbot_template import ChatbotTemplate, ChatbotActivation, ChatbotChannel
from crmbot.db.models.lead import Lead, LeadActivity, LeadStage, Appointment, AppointmentStatus
from crmbot.db.models.webhook_event import WebhookEvent

__all__ = [
    "ConversationSession",
    "ConversationMessage",
    "ContentType",
    "NodeTransition",
    "ChatbotTemplate",
    "ChatbotActivation",
    "ChatbotChannel",
    "Lead",
    "LeadActivity",
    "LeadStage",
    "Appointment",
    "AppointmentStatus",
    "WebhookEvent",
]
