"""
Notification Service - פרסום אירועי domain ל-Redis Pub/Sub.

הדשבורד מאזין לערוץ NOTIFICATION_CHANNEL. ה-core רק מפרסם ולא צורך
דבר בחזרה. פרסום הוא best-effort: כשלון נרשם בלוג ולא עוצר את הפעולה.

אירועים:
- connection_update: {id, status}
- ticket_update: {id, status, user_id, queue_id, ...}
- new-message: {id, ticket_id, sender, body, ...}
- message_update: {id, delivered | sent_via_whatsapp}
"""
from __future__ import annotations

import enum
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from app.core.config import settings
from app.core.logging import get_correlation_id, get_logger
from app.core.redis_client import get_redis

logger = get_logger(__name__)


class NotificationEvent(str, enum.Enum):
    CONNECTION_UPDATE = "connection_update"
    TICKET_UPDATE = "ticket_update"
    NEW_MESSAGE = "new-message"
    MESSAGE_UPDATE = "message_update"


class NotificationService:
    """Best-effort publisher of domain events"""

    def __init__(
        self,
        channel: str | None = None,
        redis_getter: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        self.channel = channel or settings.NOTIFICATION_CHANNEL
        self._redis_getter = redis_getter or get_redis

    async def publish(self, event: NotificationEvent, data: dict[str, Any]) -> bool:
        """
        Publish one event.

        Returns:
            True when the message reached Redis.
        """
        payload = {
            "event": event.value,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "correlation_id": get_correlation_id(),
        }
        try:
            redis = await self._redis_getter()
            await redis.publish(self.channel, json.dumps(payload, ensure_ascii=False, default=str))
        except Exception as e:
            # כשלון בפרסום לא צריך לעצור את הפעולה העסקית
            logger.error(
                "כשלון בפרסום אירוע",
                extra_data={"event": event.value, "error": str(e)},
            )
            return False

        logger.debug("אירוע פורסם", extra_data={"event": event.value})
        return True

    async def connection_update(self, connection_id: int, status: str, **extra: Any) -> bool:
        return await self.publish(
            NotificationEvent.CONNECTION_UPDATE, {"id": connection_id, "status": status, **extra}
        )

    async def ticket_update(self, ticket_data: dict[str, Any]) -> bool:
        return await self.publish(NotificationEvent.TICKET_UPDATE, ticket_data)

    async def new_message(self, message_data: dict[str, Any]) -> bool:
        return await self.publish(NotificationEvent.NEW_MESSAGE, message_data)

    async def message_update(self, message_id: int, **fields: Any) -> bool:
        return await self.publish(NotificationEvent.MESSAGE_UPDATE, {"id": message_id, **fields})
