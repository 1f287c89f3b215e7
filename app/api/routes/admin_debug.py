"""
Admin Debug Endpoints - endpoints דיאגנוסטיים לניטור ותחזוקה ללא גישה ישירה ל-DB.

ארבעה כלים עיקריים:
1. מצב sessions של חיבורים (מונים של כשלונות ושגיאות קריטיות)
2. טיימרים פעילים של דיאלוגי בחירת מחלקה
3. ניקוי ידני של cooldowns שפג תוקפם
4. הנפקת טוקן לנציג
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.auth import create_access_token
from app.core.clock import utcnow
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.user import User
from app.domain.services.cooldown_service import CooldownService
from app.domain.services.service_factory import get_session_manager, get_timer_service

logger = get_logger(__name__)

router = APIRouter()


# ─── Pydantic models ────────────────────────────────────────────────────────

class SessionStatusResponse(BaseModel):
    """מצב session של חיבור בודד"""
    connection_id: int
    lifecycle: str = Field(description="IDLE | INITIALIZING | QR_PENDING | CONNECTED | DISCONNECTED")
    registered: bool
    provider: Optional[str]
    initializing: bool
    failures: int
    seconds_since_last_failure: Optional[float]
    last_failure_reason: Optional[str]
    critical_errors: int
    has_qr: bool


class PendingTimerResponse(BaseModel):
    """טיימרים של דיאלוג בחירת מחלקה"""
    contact: str
    record_id: int
    generation: int
    active: list[str]


class CooldownSweepResponse(BaseModel):
    deleted: int


class AgentTokenRequest(BaseModel):
    expires_minutes: Optional[int] = Field(default=None, ge=1, le=60 * 24 * 30)


class AgentTokenResponse(BaseModel):
    user_id: int
    role: str
    access_token: str
    token_type: str = "bearer"
    issued_at: datetime


# ─── 1. Sessions ─────────────────────────────────────────────────────────────

@router.get(
    "/sessions",
    response_model=list[SessionStatusResponse],
    summary="מצב sessions של חיבורים",
    responses={
        200: {"description": "כל החיבורים המוכרים למנהל ה-sessions"},
        401: {"description": "חסר מפתח API"},
        403: {"description": "מפתח API שגוי"},
    },
)
async def get_sessions(
    _: None = Depends(require_admin_api_key),
) -> list[SessionStatusResponse]:
    return [SessionStatusResponse(**row) for row in get_session_manager().snapshot()]


# ─── 2. טיימרים ──────────────────────────────────────────────────────────────

@router.get(
    "/timers",
    response_model=list[PendingTimerResponse],
    summary="טיימרים פעילים של דיאלוגי בחירת מחלקה",
)
async def get_pending_timers(
    _: None = Depends(require_admin_api_key),
) -> list[PendingTimerResponse]:
    return [PendingTimerResponse(**row) for row in get_timer_service().snapshot()]


# ─── 3. Cooldowns ────────────────────────────────────────────────────────────

@router.post(
    "/cooldowns/sweep",
    response_model=CooldownSweepResponse,
    summary="ניקוי ידני של cooldowns שפג תוקפם",
)
async def sweep_cooldowns(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> CooldownSweepResponse:
    deleted = await CooldownService(db).sweep_expired()
    await db.commit()
    logger.info("Manual cooldown sweep", extra_data={"deleted": deleted})
    return CooldownSweepResponse(deleted=deleted)


# ─── 4. טוקן לנציג ───────────────────────────────────────────────────────────

@router.post(
    "/agents/{user_id}/token",
    response_model=AgentTokenResponse,
    summary="הנפקת access token לנציג",
    responses={
        404: {"description": "נציג לא נמצא או לא פעיל"},
    },
)
async def issue_agent_token(
    user_id: int,
    payload: AgentTokenRequest | None = None,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> AgentTokenResponse:
    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="נציג לא נמצא או לא פעיל",
        )
    expires = payload.expires_minutes if payload else None
    token = create_access_token(user.id, user.role.value, expires_minutes=expires)
    return AgentTokenResponse(
        user_id=user.id,
        role=user.role.value,
        access_token=token,
        issued_at=utcnow(),
    )
