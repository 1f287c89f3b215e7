"""
Agent Routes - heartbeat של נציג מחובר
"""
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.dependencies.auth import get_current_agent
from app.db.models.user import User

router = APIRouter()


class HeartbeatResponse(BaseModel):
    user_id: int
    last_activity_at: datetime | None


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(agent: User = Depends(get_current_agent)) -> HeartbeatResponse:
    """
    Keep the agent ranked as active for auto-assignment.

    The authentication dependency already refreshed ``last_activity_at``.
    """
    return HeartbeatResponse(user_id=agent.id, last_activity_at=agent.last_activity_at)
