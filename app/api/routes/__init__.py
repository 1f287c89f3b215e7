"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin_debug import router as admin_router
from app.api.routes.agents import router as agents_router
from app.api.routes.chatbot import router as chatbot_router
from app.api.routes.connections import router as connections_router
from app.api.routes.messages import router as messages_router
from app.api.routes.tickets import router as tickets_router
from app.api.webhooks.gateway import router as gateway_router

router = APIRouter()

router.include_router(connections_router, prefix="/connections", tags=["Connections"])
router.include_router(tickets_router, prefix="/tickets", tags=["Tickets"])
router.include_router(messages_router, prefix="/messages", tags=["Messages"])
router.include_router(chatbot_router, prefix="/chatbot", tags=["Chatbot"])
router.include_router(agents_router, prefix="/agents", tags=["Agents"])
router.include_router(admin_router, prefix="/admin", tags=["Admin Debug"])
router.include_router(gateway_router, prefix="/gateway", tags=["Webhooks"])
