"""
API Routes
"""
from fastapi import APIRouter

from crmbot.api.routes.chatbot import router as chatbot_router
from crmbot.api.webhooks.whatsapp import router as whatsapp_router

router = APIRouter()

router.include_router(chatbot_router, prefix="/chatbot", tags=["chatbot"])
router.include_router(whatsapp_router, prefix="/whatsapp", tags=["webhooks"])
