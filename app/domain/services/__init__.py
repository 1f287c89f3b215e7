"""
Domain Services
"""
from app.domain.services.cooldown_service import CooldownService
from app.domain.services.notification_service import NotificationService
from app.domain.services.outbound_service import OutboundService
from app.domain.services.queue_service import QueueService
from app.domain.services.ticket_service import TicketService

__all__ = [
    "CooldownService",
    "NotificationService",
    "OutboundService",
    "QueueService",
    "TicketService",
]
