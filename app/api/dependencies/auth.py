"""
FastAPI dependency לאימות נציגים (Bearer JWT).

שימוש:
    @router.put("/{ticket_id}/status")
    async def update_status(
        agent: User = Depends(get_current_agent),
        db: AsyncSession = Depends(get_db),
    ):
        ...
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import verify_token
from app.core.clock import utcnow
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.user import User

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_agent(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the calling agent from the bearer token.

    The user is reloaded from the database on every request, so a
    deactivated agent loses access immediately. Refreshes
    ``last_activity_at``, which ranks agents for auto-assignment.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="חסר טוקן הרשאה",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = verify_token(credentials.credentials)
    if token_data is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="טוקן לא תקין או שפג תוקפו",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await db.get(User, token_data.user_id)
    if user is None or not user.is_active:
        logger.warning(
            "Agent access denied, user inactive",
            extra_data={
                "user_id": token_data.user_id,
                "user_found": user is not None,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="חשבון הנציג אינו פעיל",
        )

    user.last_activity_at = utcnow()
    await db.commit()
    return user


async def require_admin_agent(agent: User = Depends(get_current_agent)) -> User:
    """נציג בתפקיד admin בלבד (ניהול חיבורים והגדרות בוט)"""
    if not agent.is_admin:
        logger.warning(
            "Admin-only endpoint denied",
            extra_data={"user_id": agent.id, "role": agent.role.value},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="נדרשת הרשאת admin",
        )
    return agent
