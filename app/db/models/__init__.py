"""
Database Models
"""
from app.db.models.connection import Connection, ConnectionQueue, ConnectionStatus
from app.db.models.queue import Queue
from app.db.models.user import User, UserQueue, UserRole
from app.db.models.ticket import Ticket, TicketStatus
from app.db.models.message import Message, MessageSender
from app.db.models.pending_selection import PendingQueueSelection, PendingMessage
from app.db.models.bot_cooldown import BotCooldown
from app.db.models.chatbot_config import ChatbotConfig
from app.db.models.webhook_event import WebhookEvent

__all__ = [
    "Connection",
    "ConnectionQueue",
    "ConnectionStatus",
    "Queue",
    "User",
    "UserQueue",
    "UserRole",
    "Ticket",
    "TicketStatus",
    "Message",
    "MessageSender",
    "PendingQueueSelection",
    "PendingMessage",
    "BotCooldown",
    "ChatbotConfig",
    "WebhookEvent",
]
