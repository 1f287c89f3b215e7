"""
ממשק בסיסי ל-Transport Client - session אחד של WhatsApp לכל חיבור.

ה-core לא מממש את ה-transport עצמו (אימות, QR, רשת): הוא צורך אותו דרך
הממשק הזה בלבד. מימוש = יכולות (initialize/destroy/get_state/send_message)
ו-event emitter לאירועי lifecycle ואירועים נכנסים.
"""
from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from app.core.clock import utcnow
from app.core.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]


class TransportEvent(str, enum.Enum):
    """Events a transport client emits"""

    # lifecycle
    AUTHENTICATED = "authenticated"
    READY = "ready"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"
    QR = "qr"
    # inbound
    MESSAGE = "message"
    DELIVERY_ACK = "delivery_ack"


# מצב "מחובר" כפי שה-session מדווח עליו ב-get_state()
CONNECTED_STATE = "CONNECTED"


@dataclass
class InboundMessage:
    """Normalized inbound message"""

    connection_id: int
    chat_id: str
    contact_number: str
    body: str
    wa_message_id: Optional[str] = None
    contact_name: Optional[str] = None
    from_me: bool = False
    is_group: bool = False
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class DeliveryAck:
    """Delivery acknowledgement for an outbound message"""

    connection_id: int
    wa_message_id: str
    # 1 = server, 2 = device, 3 = read (כמו ב-WhatsApp Web)
    ack_level: int


class BaseTransportClient(ABC):
    """
    Transport client for a single connection.

    Implementations must make ``destroy()`` idempotent: a repeat destroy, or a
    destroy of a session the remote side no longer knows, is a no-op success.
    """

    def __init__(self, connection_id: int) -> None:
        self.connection_id = connection_id
        self.destroyed = False
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    # ── event emitter ──

    def on(self, event: TransportEvent | str, handler: EventHandler) -> None:
        self._handlers[TransportEvent(event).value].append(handler)

    def off(self, event: TransportEvent | str, handler: EventHandler | None = None) -> None:
        """הסרת handler; בלי handler - הסרת כל המאזינים לאירוע"""
        key = TransportEvent(event).value
        if handler is None:
            self._handlers.pop(key, None)
            return
        handlers = self._handlers.get(key, [])
        if handler in handlers:
            handlers.remove(handler)

    def remove_all_listeners(self) -> None:
        self._handlers.clear()

    def listener_count(self, event: TransportEvent | str) -> int:
        return len(self._handlers.get(TransportEvent(event).value, []))

    async def emit(self, event: TransportEvent | str, payload: Any = None) -> None:
        """
        Deliver an event to its handlers in registration order.

        A failing handler is logged and does not stop the others.
        """
        key = TransportEvent(event).value
        for handler in list(self._handlers.get(key, [])):
            try:
                await handler(payload)
            except Exception as exc:
                logger.error(
                    "Transport event handler failed",
                    extra_data={
                        "connection_id": self.connection_id,
                        "event": key,
                        "error": str(exc),
                    },
                    exc_info=True,
                )

    # ── capabilities ──

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """שם הספק ללוגים ודיאגנוסטיקה"""

    @abstractmethod
    async def initialize(self) -> None:
        """
        Start the session.

        Returns once the start request was accepted; the outcome arrives later
        as ``qr``, ``ready`` or ``auth_failure`` events.
        """

    @abstractmethod
    async def destroy(self) -> None:
        """Release the session without logging out. Idempotent."""

    @abstractmethod
    async def logout(self) -> None:
        """Unpair the device from the account."""

    @abstractmethod
    async def get_state(self) -> Optional[str]:
        """Current session state (``CONNECTED`` when usable), None if unknown"""

    @abstractmethod
    async def send_message(self, target: str, payload: str) -> Optional[str]:
        """
        Send a text message.

        Returns:
            The WhatsApp message id when the transport reports one.

        Raises:
            TransportError: transient failure, after local retries.
            TransportFatalError: the session is likely unusable.
        """
