"""
אימות JWT לנציגים - יצירת ואימות access tokens.

הטוקן מונפק ע"י אדמין (POST /api/admin/agents/{id}/token) ונשלח בכל בקשה
כ-Bearer. התפקיד בטוקן הוא רק רמז: ה-dependency טוען את המשתמש מה-DB
ומאמת שהוא פעיל, כך שהשבתת נציג חוסמת אותו מיד.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt as pyjwt
from pydantic import BaseModel

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

AGENT_ROLES = frozenset({"agent", "admin"})


class TokenPayload(BaseModel):
    """תוכן ה-JWT token"""
    user_id: int
    role: str
    exp: int  # Unix timestamp


def create_access_token(user_id: int, role: str, expires_minutes: int | None = None) -> str:
    """יצירת JWT token לנציג"""
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY לא מוגדר, אי אפשר ליצור טוקן")
    if role not in AGENT_ROLES:
        raise ValueError(f"unknown role: {role}")
    minutes = expires_minutes or settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {
        "user_id": user_id,
        "role": role,
        "exp": int(expire.timestamp()),
    }
    encoded = pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    logger.info(
        "JWT token created",
        extra_data={"user_id": user_id, "role": role, "expires_minutes": minutes},
    )
    return encoded


def verify_token(token: str) -> Optional[TokenPayload]:
    """אימות JWT token. מחזיר None אם לא תקין או פג תוקף"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY ריק, טוקנים לא יאומתו")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return TokenPayload(**payload)
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None
    except (KeyError, ValueError) as e:
        logger.warning("JWT payload malformed", extra_data={"error": str(e)})
        return None
