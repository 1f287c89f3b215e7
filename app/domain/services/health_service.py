"""
שירות בדיקת בריאות - בדיקות תלויות (DB, Redis, WhatsApp Gateway, Celery broker).

שתי רמות בדיקה:
- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקה מקיפה של כל התלויות החיצוניות
"""
from typing import Any, Optional

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import ping_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות, ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_GATEWAY = "error: gateway_unavailable"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    """SELECT 1 על session חדש"""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except (SQLAlchemyError, OSError) as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    return _CHECK_OK if await ping_redis() else _ERROR_REDIS


async def _check_gateway() -> str:
    """
    זמינות ה-gateway עצמו. מצב החיבור של כל session נבדק בנפרד
    (ראו sessions ב-check_readiness), כי gateway אחד משרת הרבה חיבורים.
    """
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{settings.WHATSAPP_GATEWAY_URL}/health")
        if response.status_code != 200:
            logger.warning(
                "WhatsApp Gateway החזיר סטטוס לא תקין",
                extra_data={"status_code": response.status_code},
            )
            return _ERROR_GATEWAY
        return _CHECK_OK
    except httpx.HTTPError as e:
        logger.warning(
            "בדיקת בריאות WhatsApp Gateway נכשלה",
            extra_data={"error": str(e)},
        )
        return _ERROR_GATEWAY


async def _check_celery() -> str:
    """ping ל-broker של Celery"""
    client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
    try:
        await client.ping()
        return _CHECK_OK
    except (RedisError, OSError) as e:
        logger.warning("בדיקת בריאות Celery נכשלה", extra_data={"error": str(e)})
        return _ERROR_CELERY
    finally:
        await client.aclose()


def _session_summary(snapshot: Optional[list[dict[str, Any]]]) -> dict[str, int]:
    summary = {"registered": 0, "connected": 0, "initializing": 0}
    for row in snapshot or []:
        if row.get("registered"):
            summary["registered"] += 1
        if row.get("lifecycle") == "CONNECTED":
            summary["connected"] += 1
        if row.get("initializing"):
            summary["initializing"] += 1
    return summary


async def check_readiness(session_snapshot: Optional[list[dict[str, Any]]] = None) -> dict[str, Any]:
    """
    בדיקת מוכנות מקיפה.

    מחזיר dict עם:
    - status: "healthy" אם כל התלויות תקינות, אחרת "degraded"
    - db / redis / whatsapp_gateway / celery: "ok" או "error: ..."
    - sessions: ספירת חיבורים רשומים / מחוברים / באתחול (מידע בלבד, לא משפיע על status)
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "whatsapp_gateway": await _check_gateway(),
        "celery": await _check_celery(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("בדיקת מוכנות - המערכת במצב degraded", extra_data=checks)

    return {
        "status": overall_status,
        **checks,
        "sessions": _session_summary(session_snapshot),
    }
