"""
Chatbot Config Routes - טקסטי הבוט
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_agent, require_admin_agent
from app.core.validation import TextSanitizer
from app.db.database import get_db
from app.db.models.user import User
from app.domain.services.chatbot_service import ChatbotConfigService

router = APIRouter()


class ChatbotTexts(BaseModel):
    welcome_message: str
    queue_selection_message: str
    invalid_choice_message: str
    reminder_message: str
    closing_message: str
    confirmation_message: str


class ChatbotTextsUpdate(BaseModel):
    welcome_message: Optional[str] = None
    queue_selection_message: Optional[str] = None
    invalid_choice_message: Optional[str] = None
    reminder_message: Optional[str] = None
    closing_message: Optional[str] = None
    confirmation_message: Optional[str] = None

    @field_validator("*")
    @classmethod
    def sanitize(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = TextSanitizer.sanitize(v)
        if not v:
            raise ValueError("Text cannot be empty")
        return v


@router.get("/config", response_model=ChatbotTexts)
async def get_chatbot_config(
    _: User = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
) -> ChatbotTexts:
    return ChatbotTexts(**await ChatbotConfigService(db).get_texts())


@router.put("/config", response_model=ChatbotTexts)
async def update_chatbot_config(
    payload: ChatbotTextsUpdate,
    _: User = Depends(require_admin_agent),
    db: AsyncSession = Depends(get_db),
) -> ChatbotTexts:
    texts = await ChatbotConfigService(db).update_texts(**payload.model_dump())
    return ChatbotTexts(**texts)
