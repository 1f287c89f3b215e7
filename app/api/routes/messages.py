"""
Message Routes - שליחה חוזרת של הודעה שלא יצאה
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_agent
from app.db.database import get_db
from app.db.models.user import User
from app.domain.services.service_factory import get_notifier, get_session_manager
from app.domain.services.ticket_service import TicketService

router = APIRouter()


class ResendResponse(BaseModel):
    message_id: int
    sent_via_whatsapp: bool
    wa_message_id: str | None


@router.post("/{message_id}/resend", response_model=ResendResponse)
async def resend_message(
    message_id: int,
    agent: User = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
) -> ResendResponse:
    service = TicketService(db, get_notifier(), get_session_manager())
    message, sent = await service.resend_message(message_id, agent)
    return ResendResponse(
        message_id=message.id,
        sent_via_whatsapp=sent,
        wa_message_id=message.wa_message_id,
    )
