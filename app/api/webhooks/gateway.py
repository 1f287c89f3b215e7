"""
Gateway Webhook - אירועי lifecycle והודעות נכנסות מה-WhatsApp gateway.

הגטוויי שולח POST לכל אירוע:
    {"session": "<prefix><connection_id>", "event": "qr" | "ready" | ..., "data": {...}}

האירוע מועבר ל-GatewayTransportClient הרשום לחיבור. אירוע לחיבור בלי
קליינט חי (או לקליינט שהוחלף) מתעלם.
"""
from datetime import timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import verify_gateway_webhook_token
from app.core.clock import utcnow
from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.service_factory import get_session_manager
from app.domain.services.transport.gateway_transport import GatewayTransportClient

logger = get_logger(__name__)

router = APIRouter()

# ──────────────────────────────────────────────
#  idempotency להודעות נכנסות, מבוסס DB.
#  הרשומה נוצרת כ-processing ומסומנת completed רק אחרי עיבוד מלא.
#  processing ישן מ-_STALE_PROCESSING_SECONDS מאפשר retry.
# ──────────────────────────────────────────────
_STALE_PROCESSING_SECONDS = 120


class GatewayWebhookPayload(BaseModel):
    session: str
    event: str
    data: dict[str, Any] = Field(default_factory=dict)


def parse_session_name(session: str) -> Optional[int]:
    """'<prefix>42' → 42; שם שלא שייך לנו → None"""
    prefix = settings.WHATSAPP_SESSION_PREFIX
    if not session or not session.startswith(prefix):
        return None
    suffix = session[len(prefix):]
    if not suffix.isdecimal():
        return None
    return int(suffix)


def _message_event_id(session: str, data: dict[str, Any]) -> Optional[str]:
    raw_id = data.get("id")
    if isinstance(raw_id, dict):
        raw_id = raw_id.get("_serialized")
    if not raw_id:
        return None
    return f"{session}:{raw_id}"[:200]


async def _try_acquire_event(db: AsyncSession, event_id: str, session: str, event_type: str) -> bool:
    """
    ניסיון לרכוש אירוע לעיבוד.
    מחזיר True אם האירוע חדש (או תקוע), False אם כפול.
    """
    try:
        async with db.begin_nested():
            db.add(WebhookEvent(
                event_id=event_id,
                session=session,
                event_type=event_type,
                status="processing",
                created_at=utcnow(),
            ))
        await db.commit()
        return True
    except IntegrityError:
        pass  # האירוע כבר קיים - בדיקה אם completed או stale

    result = await db.execute(
        select(WebhookEvent.status).where(WebhookEvent.event_id == event_id)
    )
    row_status = result.scalar_one_or_none()
    if row_status is None:
        return False
    if row_status == "completed":
        logger.info("Skipping completed duplicate event", extra_data={"event_id": event_id})
        return False

    threshold = utcnow() - timedelta(seconds=_STALE_PROCESSING_SECONDS)
    update_result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.event_id == event_id,
            WebhookEvent.status == "processing",
            WebhookEvent.created_at < threshold,
        )
        .values(created_at=utcnow())
    )
    if update_result.rowcount > 0:
        await db.commit()
        logger.warning("Retrying stale processing event", extra_data={"event_id": event_id})
        return True

    logger.info("Skipping in-progress event", extra_data={"event_id": event_id})
    return False


async def _mark_event_completed(db: AsyncSession, event_id: str) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .values(status="completed")
    )
    await db.commit()


@router.post(
    "/webhook",
    summary="Webhook - WhatsApp gateway (אירועי session והודעות נכנסות)",
)
async def gateway_webhook(
    payload: GatewayWebhookPayload,
    _: None = Depends(verify_gateway_webhook_token),
    db: AsyncSession = Depends(get_db),
) -> dict[str, str]:
    connection_id = parse_session_name(payload.session)
    if connection_id is None:
        logger.warning(
            "Gateway event for unknown session",
            extra_data={"session": payload.session, "event": payload.event},
        )
        return {"status": "ignored", "reason": "unknown_session"}

    client = get_session_manager().get_client(connection_id)
    if not isinstance(client, GatewayTransportClient) or client.session_name != payload.session:
        logger.info(
            "Gateway event without live client ignored",
            extra_data={"connection_id": connection_id, "event": payload.event},
        )
        return {"status": "ignored", "reason": "no_live_client"}

    event_id = None
    if payload.event == "message":
        event_id = _message_event_id(payload.session, payload.data)
        if event_id is not None and not await _try_acquire_event(
            db, event_id, payload.session, payload.event
        ):
            return {"status": "duplicate"}

    handled = await client.dispatch_gateway_event(payload.event, payload.data)

    if event_id is not None:
        await _mark_event_completed(db, event_id)

    return {"status": "ok" if handled else "ignored"}
