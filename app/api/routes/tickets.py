"""
Ticket Routes - מעברי סטטוס, תשובות נציג והעברה בין מחלקות
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_agent
from app.core.logging import get_logger
from app.core.validation import message_text_validator
from app.db.database import get_db
from app.db.models.ticket import Ticket, TicketStatus
from app.db.models.user import User
from app.domain.services.service_factory import get_notifier, get_session_manager
from app.domain.services.ticket_service import TicketService

logger = get_logger(__name__)

router = APIRouter()


class TicketStatusUpdate(BaseModel):
    status: TicketStatus
    on_hold: Optional[bool] = None


class TicketMessageCreate(BaseModel):
    body: str

    @field_validator("body")
    @classmethod
    def validate_body(cls, v: str) -> str:
        v = message_text_validator(v)
        if not v:
            raise ValueError("Message body is empty")
        return v


class TicketTransfer(BaseModel):
    queue_id: int
    user_id: Optional[int] = None
    keep_history: bool = True


class TicketResponse(BaseModel):
    id: int
    status: TicketStatus
    is_on_hold: bool
    user_id: Optional[int]
    queue_id: Optional[int]
    connection_id: Optional[int]
    contact_number: str
    protocol_number: Optional[str]
    unread_messages: int

    class Config:
        from_attributes = True


class TicketActionResponse(BaseModel):
    success: bool
    message: str
    ticket: TicketResponse


class MessageResponse(BaseModel):
    id: int
    ticket_id: int
    body: str
    timestamp: datetime
    sent_via_whatsapp: bool
    wa_message_id: Optional[str]
    delivered: bool

    class Config:
        from_attributes = True


def _ticket_service(db: AsyncSession) -> TicketService:
    return TicketService(db, get_notifier(), get_session_manager())


def _ticket_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


@router.put(
    "/{ticket_id}/status",
    response_model=TicketActionResponse,
    responses={
        400: {"description": "Invalid status transition"},
        403: {"description": "Agent may not modify this ticket"},
        404: {"description": "Ticket not found"},
        409: {"description": "Ticket already claimed by another agent"},
    },
)
async def update_ticket_status(
    ticket_id: int,
    payload: TicketStatusUpdate,
    agent: User = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
) -> TicketActionResponse:
    success, message, ticket = await _ticket_service(db).update_status(
        ticket_id, agent, payload.status, on_hold=payload.on_hold
    )
    if not success:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=message)
    return TicketActionResponse(success=True, message=message, ticket=_ticket_response(ticket))


@router.post(
    "/{ticket_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_ticket_message(
    ticket_id: int,
    payload: TicketMessageCreate,
    agent: User = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    """
    Reply to the contact.

    The message is stored even when WhatsApp delivery fails;
    ``sent_via_whatsapp`` tells the caller whether it went out.
    """
    message, _ = await _ticket_service(db).agent_send_message(ticket_id, agent, payload.body)
    return MessageResponse.model_validate(message)


@router.post("/{ticket_id}/transfer", response_model=TicketActionResponse)
async def transfer_ticket(
    ticket_id: int,
    payload: TicketTransfer,
    agent: User = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
) -> TicketActionResponse:
    ticket, message = await _ticket_service(db).transfer(
        ticket_id,
        agent,
        payload.queue_id,
        target_user_id=payload.user_id,
        keep_history=payload.keep_history,
    )
    return TicketActionResponse(success=True, message=message, ticket=_ticket_response(ticket))
