"""
Gateway Transport - מימוש BaseTransportClient מעל WhatsApp gateway חיצוני.

הגטוויי (Node.js) מחזיק את ה-sessions בפועל ומספק:
- POST   /sessions/{name}/start   - הפעלת session (QR / שחזור אימות)
- POST   /sessions/{name}/logout  - ניתוק המכשיר מהחשבון
- GET    /sessions/{name}/state   - מצב ה-session
- POST   /sessions/{name}/send    - שליחת הודעת טקסט
- DELETE /sessions/{name}         - שחרור משאבים (404 = כבר לא קיים)

אירועים חוזרים אלינו דרך POST /api/gateway/webhook ומופצים ל-client
הרשום ע"י dispatch_gateway_event().
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import (
    TransportError,
    TransportFatalError,
    TransportUnavailableError,
    is_critical_transport_error,
)
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator, convert_html_to_whatsapp
from app.domain.services.transport.base_transport import (
    BaseTransportClient,
    DeliveryAck,
    InboundMessage,
    TransportEvent,
)

logger = get_logger(__name__)

# ack של WhatsApp Web: 2 = נמסר למכשיר
DELIVERED_ACK_LEVEL = 2


class GatewayTransportClient(BaseTransportClient):
    """Transport client backed by the HTTP gateway"""

    def __init__(
        self,
        connection_id: int,
        *,
        gateway_url: str | None = None,
        token: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(connection_id)
        self.session_name = f"{settings.WHATSAPP_SESSION_PREFIX}{connection_id}"
        self._gateway_url = gateway_url or settings.WHATSAPP_GATEWAY_URL
        self._token = settings.WHATSAPP_GATEWAY_TOKEN if token is None else token
        self._timeout = timeout
        self._max_retries = settings.WHATSAPP_MAX_RETRIES
        self._transient_status_codes = {
            int(code.strip())
            for code in settings.WHATSAPP_TRANSIENT_STATUS_CODES.split(",")
            if code.strip()
        }

    @property
    def provider_name(self) -> str:
        return "gateway"

    def _headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    # ── retry helper פנימי ──

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: dict | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response:
        """בקשה לגטוויי עם retry ו-exponential backoff לשגיאות זמניות.

        תשובה שהטקסט שלה מעיד על session מת זורקת TransportFatalError מיד,
        בלי retry. כשל אחרי כל הניסיונות זורק TransportError.
        """
        url = f"{self._gateway_url}/sessions/{self.session_name}{path}"

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for attempt in range(self._max_retries):
                try:
                    response = await client.request(
                        method, url, json=json, headers=self._headers()
                    )
                except httpx.TimeoutException:
                    if attempt < self._max_retries - 1:
                        await self._backoff(operation, attempt, reason="timeout")
                        continue
                    raise TransportError(
                        f"{operation} timeout after retries",
                        details={
                            "operation": operation,
                            "timeout": True,
                            "attempts": self._max_retries,
                        },
                    )
                except httpx.RequestError as exc:
                    if is_critical_transport_error(exc):
                        raise TransportFatalError(
                            f"{operation} failed: {exc}",
                            details={"operation": operation},
                        )
                    if attempt < self._max_retries - 1:
                        await self._backoff(operation, attempt, reason=str(exc))
                        continue
                    raise TransportError(
                        f"{operation} network error: {exc}",
                        details={
                            "operation": operation,
                            "network_error": True,
                            "attempts": self._max_retries,
                        },
                    )

                if response.is_success:
                    return response
                if allow_not_found and response.status_code == 404:
                    return response

                if is_critical_transport_error(response.text or ""):
                    raise TransportFatalError(
                        f"{operation} returned status {response.status_code}",
                        details={
                            "operation": operation,
                            "status_code": response.status_code,
                            "response_text": (response.text or "")[:500],
                        },
                    )

                if (
                    response.status_code in self._transient_status_codes
                    and attempt < self._max_retries - 1
                ):
                    await self._backoff(
                        operation, attempt, reason=f"status {response.status_code}"
                    )
                    continue

                raise TransportError.from_response(operation, response)

        # לא אמור לקרות: range(max_retries) עם max_retries >= 1 תמיד חוזר או זורק
        raise TransportError(f"{operation} exhausted retries")

    async def _backoff(self, operation: str, attempt: int, *, reason: str) -> None:
        backoff = 2 ** attempt
        logger.warning(
            f"שגיאה זמנית ב-{operation}, מנסה שוב",
            extra_data={
                "connection_id": self.connection_id,
                "reason": reason,
                "attempt": attempt + 1,
                "max_retries": self._max_retries,
                "backoff_seconds": backoff,
            },
        )
        await asyncio.sleep(backoff)

    # ── capabilities ──

    async def initialize(self) -> None:
        if self.destroyed:
            raise TransportUnavailableError(self.connection_id, state="DESTROYED")
        await self._request("POST", "/start", "start", json={"session": self.session_name})
        logger.info(
            "Gateway session start requested",
            extra_data={"connection_id": self.connection_id, "session": self.session_name},
        )

    async def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        response = await self._request("DELETE", "", "destroy", allow_not_found=True)
        logger.info(
            "Gateway session destroyed",
            extra_data={
                "connection_id": self.connection_id,
                "already_gone": response.status_code == 404,
            },
        )

    async def logout(self) -> None:
        if self.destroyed:
            return
        await self._request("POST", "/logout", "logout", allow_not_found=True)

    async def get_state(self) -> Optional[str]:
        if self.destroyed:
            return None
        response = await self._request("GET", "/state", "state", allow_not_found=True)
        if response.status_code == 404:
            return None
        try:
            state = response.json().get("state")
        except ValueError:
            return None
        return str(state).upper() if state else None

    async def send_message(self, target: str, payload: str) -> Optional[str]:
        if self.destroyed:
            raise TransportUnavailableError(self.connection_id, state="DESTROYED")

        response = await self._request(
            "POST",
            "/send",
            "send",
            json={
                "to": PhoneNumberValidator.to_chat_id(target),
                "message": convert_html_to_whatsapp(payload),
            },
        )
        try:
            body = response.json()
        except ValueError:
            return None
        message_id = body.get("id") if isinstance(body, dict) else None
        if isinstance(message_id, dict):
            message_id = message_id.get("_serialized")
        return message_id

    # ── אירועים מהגטוויי ──

    def parse_inbound(self, data: dict[str, Any]) -> InboundMessage:
        """נרמול payload של הודעה נכנסת (בפורמט WhatsApp Web)"""
        chat_id = str(data.get("from") or "")
        raw_id = data.get("id")
        if isinstance(raw_id, dict):
            raw_id = raw_id.get("_serialized")

        timestamp = data.get("timestamp")
        if isinstance(timestamp, (int, float)):
            received_at = datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)
        else:
            received_at = None

        message = InboundMessage(
            connection_id=self.connection_id,
            chat_id=chat_id,
            contact_number=PhoneNumberValidator.normalize(chat_id),
            body=str(data.get("body") or ""),
            wa_message_id=raw_id,
            contact_name=data.get("notifyName") or data.get("pushname"),
            from_me=bool(data.get("fromMe", False)),
            is_group=PhoneNumberValidator.is_group(chat_id) or bool(data.get("isGroupMsg")),
        )
        if received_at is not None:
            message.timestamp = received_at
        return message

    async def dispatch_gateway_event(self, event: str, data: dict[str, Any] | None) -> bool:
        """
        Translate a raw gateway event into the client's own event.

        Returns:
            False when the event type is unknown.
        """
        data = data or {}
        if event == "qr":
            await self.emit(TransportEvent.QR, data.get("qr") or data.get("code"))
        elif event == "authenticated":
            await self.emit(TransportEvent.AUTHENTICATED)
        elif event == "ready":
            await self.emit(TransportEvent.READY)
        elif event == "auth_failure":
            await self.emit(TransportEvent.AUTH_FAILURE, data.get("reason"))
        elif event == "disconnected":
            await self.emit(TransportEvent.DISCONNECTED, data.get("reason"))
        elif event == "message":
            await self.emit(TransportEvent.MESSAGE, self.parse_inbound(data))
        elif event == "ack":
            raw_id = data.get("id")
            if isinstance(raw_id, dict):
                raw_id = raw_id.get("_serialized")
            if not raw_id:
                return True
            await self.emit(
                TransportEvent.DELIVERY_ACK,
                DeliveryAck(
                    connection_id=self.connection_id,
                    wa_message_id=str(raw_id),
                    ack_level=int(data.get("ack") or 0),
                ),
            )
        else:
            logger.debug(
                "Unknown gateway event ignored",
                extra_data={"connection_id": self.connection_id, "event": event},
            )
            return False
        return True
