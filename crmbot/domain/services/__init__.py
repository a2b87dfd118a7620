"""
Domain Services
"""
from crmbot.domain.services.business_actions import (
    ActionResult,
    BusinessActionAdapter,
    BusinessActionRegistry,
)
from crmbot.domain.services.graph_source import GraphCache, GraphSource
from crmbot.domain.services.maintenance_service import SessionMaintenanceService
from crmbot.domain.services.whatsapp_client import WhatsAppCloudClient, send_replies

__all__ = [
    "ActionResult",
    "BusinessActionAdapter",
    "BusinessActionRegistry",
    "GraphCache",
    "GraphSource",
    "SessionMaintenanceService",
    "WhatsAppCloudClient",
    "send_replies",
]
