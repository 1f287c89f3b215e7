"""
Session Lifecycle Manager - מחזור החיים של session ה-WhatsApp לכל חיבור.

אחריות:
- לכל היותר Transport Client חי אחד לכל חיבור
- single-flight לאתחול, timeout, backoff אחרי כשלונות רצופים
- טיפול באירועי lifecycle (qr / ready / auth_failure / disconnected)
- מונה שגיאות קריטיות בשליחה ופירוק session שמת בפועל
- ניתוק מסודר (logout + destroy) וביטול (destroy בלבד), שניהם אידמפוטנטיים

כל המצב המשותף (registry, מונים, טיימרים) נכתב ע"י בעלים לוגי אחד
לכל חיבור, על event loop אחד. קליינט חדש נרשם ב-registry לפני כל await
שאחרי יצירתו, כך שקורא מקביל לא יכול להתחיל אתחול כפול.
"""
from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import (
    ConnectionNotFoundError,
    InitializationBackoffError,
    InitializationInProgressError,
    TransportError,
    TransportFatalError,
    TransportUnavailableError,
    is_critical_transport_error,
)
from app.core.logging import correlation_scope, get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.connection import Connection, ConnectionStatus
from app.domain.services.notification_service import NotificationService
from app.domain.services.qr_store import QrArtifact, QrCodeStore
from app.domain.services.session_registry import SessionRegistry
from app.domain.services.transport.base_transport import (
    BaseTransportClient,
    CONNECTED_STATE,
    DeliveryAck,
    InboundMessage,
    TransportEvent,
)
from app.state_machine.states import (
    ConnectionLifecycleState,
    is_valid_lifecycle_transition,
)

logger = get_logger(__name__)

ClientFactory = Callable[[int], BaseTransportClient]
InboundHandler = Callable[[InboundMessage], Awaitable[Any]]
AckHandler = Callable[[DeliveryAck], Awaitable[Any]]
TeardownListener = Callable[[int], Awaitable[Any]]


class QrPollStatus(str, enum.Enum):
    AVAILABLE = "available"
    WAITING = "waiting"
    UNAVAILABLE = "unavailable"


@dataclass
class FailureRecord:
    count: int = 0
    last_failure_at: Optional[float] = None
    last_reason: Optional[str] = None


def _default_client_factory(connection_id: int) -> BaseTransportClient:
    from app.domain.services.transport.gateway_transport import GatewayTransportClient

    return GatewayTransportClient(connection_id)


class SessionLifecycleManager:
    """Owns the connection id → transport client map and its lifecycle"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: SessionRegistry,
        qr_store: QrCodeStore,
        notifier: NotificationService,
        client_factory: ClientFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self.registry = registry
        self.qr_store = qr_store
        self.notifier = notifier
        self._client_factory = client_factory or _default_client_factory
        self._clock = clock

        self._initializing: set[int] = set()
        self._failures: dict[int, FailureRecord] = {}
        self._critical_errors: dict[int, int] = {}
        self._timeouts: dict[int, asyncio.Task] = {}
        self._lifecycle: dict[int, ConnectionLifecycleState] = {}

        self._inbound_handler: Optional[InboundHandler] = None
        self._ack_handler: Optional[AckHandler] = None
        self._teardown_listeners: list[TeardownListener] = []

    # ── wiring ──

    def set_inbound_handler(self, handler: InboundHandler) -> None:
        self._inbound_handler = handler

    def set_ack_handler(self, handler: AckHandler) -> None:
        self._ack_handler = handler

    def add_teardown_listener(self, listener: TeardownListener) -> None:
        self._teardown_listeners.append(listener)

    # ── שאילתות מצב ──

    def lifecycle_state(self, connection_id: int) -> ConnectionLifecycleState:
        return self._lifecycle.get(connection_id, ConnectionLifecycleState.IDLE)

    def is_initializing(self, connection_id: int) -> bool:
        return connection_id in self._initializing

    def failure_count(self, connection_id: int) -> int:
        record = self._failures.get(connection_id)
        return record.count if record else 0

    def critical_error_count(self, connection_id: int) -> int:
        return self._critical_errors.get(connection_id, 0)

    def get_client(self, connection_id: int) -> Optional[BaseTransportClient]:
        return self.registry.get(connection_id)

    def poll_qr(self, connection_id: int) -> tuple[QrPollStatus, Optional[QrArtifact], Optional[str]]:
        """
        QR polling: (status, artifact, last error).

        AVAILABLE while a code is cached, WAITING while an initialization is in
        flight without a code yet, UNAVAILABLE otherwise.
        """
        artifact = self.qr_store.get(connection_id)
        if artifact is not None:
            return QrPollStatus.AVAILABLE, artifact, None
        if connection_id in self._initializing:
            return QrPollStatus.WAITING, None, None
        return QrPollStatus.UNAVAILABLE, None, self.qr_store.last_error(connection_id)

    # ── אתחול ──

    async def initialize_connection(self, connection_id: int) -> BaseTransportClient:
        """
        Start a transport session for a connection.

        Returns once the transport accepted the start request; the outcome
        arrives later as lifecycle events.

        Raises:
            InitializationInProgressError: another initialization is in flight.
            InitializationBackoffError: too many recent failures.
            ConnectionNotFoundError: unknown connection id.
            TransportError: the transport refused to start.
            TransportUnavailableError: the session was aborted before
                initialize returned.
        """
        if connection_id in self._initializing:
            logger.warning(
                "Initialization already in progress",
                extra_data={"connection_id": connection_id},
            )
            raise InitializationInProgressError(connection_id)

        self._check_backoff(connection_id)

        # single-flight: נתפס סינכרונית לפני ה-await הראשון
        self._initializing.add(connection_id)
        try:
            await self._ensure_connection_exists(connection_id)

            stale = self.registry.remove(connection_id)
            if stale is not None:
                logger.info(
                    "Destroying stale client before re-initialization",
                    extra_data={"connection_id": connection_id},
                )
                self._cancel_timeout(connection_id)
                await self._destroy_quietly(connection_id, stale)

            client = self._client_factory(connection_id)
            self._bind_lifecycle_handlers(client)
            self.registry.set(connection_id, client)
            self.qr_store.clear(connection_id)
            self.qr_store.clear_error(connection_id)
            self._critical_errors[connection_id] = 0
            self._set_lifecycle(connection_id, ConnectionLifecycleState.INITIALIZING)
            self._arm_timeout(connection_id, client)
        except BaseException:
            self._initializing.discard(connection_id)
            raise

        logger.info(
            "Initializing connection",
            extra_data={
                "connection_id": connection_id,
                "provider": client.provider_name,
                "timeout_seconds": settings.SESSION_INIT_TIMEOUT_SECONDS,
            },
        )

        try:
            await client.initialize()
        except Exception as exc:
            if not self.registry.is_current(connection_id, client):
                # בוטל בינתיים (abort) - הכשלון כבר לא רלוונטי
                raise
            reason = f"initialize failed: {exc}"
            logger.error(
                "Connection initialization failed",
                extra_data={"connection_id": connection_id, "error": str(exc)},
            )
            self._record_failure(connection_id, reason)
            self.qr_store.record_error(connection_id, reason)
            await self._teardown(connection_id, client, reason="initialize_failed")
            raise

        if not self.registry.is_current(connection_id, client):
            # abort או אתחול מחדש החליפו את הקליינט בזמן ה-initialize
            logger.warning(
                "Initialization aborted while starting",
                extra_data={"connection_id": connection_id},
            )
            raise TransportUnavailableError(connection_id, state="ABORTED")

        return client

    async def _ensure_connection_exists(self, connection_id: int) -> None:
        async with self._session_factory() as db:
            connection = await db.get(Connection, connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)

    def _check_backoff(self, connection_id: int) -> None:
        record = self._failures.get(connection_id)
        if record is None or record.count < settings.SESSION_MAX_INIT_FAILURES:
            return
        window = settings.SESSION_INIT_BACKOFF_WINDOW_SECONDS
        elapsed = self._clock() - (record.last_failure_at or 0.0)
        if elapsed < window:
            logger.warning(
                "Initialization refused, backoff active",
                extra_data={
                    "connection_id": connection_id,
                    "failures": record.count,
                    "retry_after_seconds": round(window - elapsed, 1),
                },
            )
            raise InitializationBackoffError(connection_id, window - elapsed, record.count)
        # החלון עבר - מתחילים לספור מחדש
        self._failures.pop(connection_id, None)

    def _record_failure(self, connection_id: int, reason: str) -> None:
        record = self._failures.setdefault(connection_id, FailureRecord())
        record.count += 1
        record.last_failure_at = self._clock()
        record.last_reason = reason

    def _arm_timeout(self, connection_id: int, client: BaseTransportClient) -> None:
        self._cancel_timeout(connection_id)
        self._timeouts[connection_id] = asyncio.create_task(
            self._init_timeout(connection_id, client),
            name=f"session-init-timeout-{connection_id}",
        )

    def _cancel_timeout(self, connection_id: int) -> None:
        task = self._timeouts.pop(connection_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _init_timeout(self, connection_id: int, client: BaseTransportClient) -> None:
        await asyncio.sleep(settings.SESSION_INIT_TIMEOUT_SECONDS)
        if not self.registry.is_current(connection_id, client):
            return
        if connection_id not in self._initializing:
            return
        self._timeouts.pop(connection_id, None)
        reason = "initialization timed out"
        logger.error(
            "Connection initialization timed out",
            extra_data={
                "connection_id": connection_id,
                "timeout_seconds": settings.SESSION_INIT_TIMEOUT_SECONDS,
            },
        )
        self._record_failure(connection_id, reason)
        self.qr_store.record_error(connection_id, reason)
        await self._teardown(connection_id, client, reason="init_timeout")

    # ── אירועי lifecycle ──

    def _bind_lifecycle_handlers(self, client: BaseTransportClient) -> None:
        connection_id = client.connection_id

        async def on_qr(raw_code: Any) -> None:
            await self._handle_qr(connection_id, client, raw_code)

        async def on_authenticated(_: Any) -> None:
            if self.registry.is_current(connection_id, client):
                logger.info("Connection authenticated", extra_data={"connection_id": connection_id})
                self._set_lifecycle(connection_id, ConnectionLifecycleState.INITIALIZING)

        async def on_ready(_: Any) -> None:
            await self._handle_ready(connection_id, client)

        async def on_auth_failure(reason: Any) -> None:
            await self._handle_session_loss(
                connection_id, client, f"auth_failure: {reason or 'unknown'}"
            )

        async def on_disconnected(reason: Any) -> None:
            await self._handle_session_loss(
                connection_id, client, f"disconnected: {reason or 'unknown'}"
            )

        client.on(TransportEvent.QR, on_qr)
        client.on(TransportEvent.AUTHENTICATED, on_authenticated)
        client.on(TransportEvent.READY, on_ready)
        client.on(TransportEvent.AUTH_FAILURE, on_auth_failure)
        client.on(TransportEvent.DISCONNECTED, on_disconnected)

    async def _handle_qr(self, connection_id: int, client: BaseTransportClient, raw_code: Any) -> None:
        if not self.registry.is_current(connection_id, client):
            logger.debug("QR from stale client ignored", extra_data={"connection_id": connection_id})
            return
        if not raw_code:
            return
        self.qr_store.put(connection_id, str(raw_code))
        if self.lifecycle_state(connection_id) != ConnectionLifecycleState.QR_PENDING:
            self._set_lifecycle(connection_id, ConnectionLifecycleState.QR_PENDING)
            await self._persist_status(connection_id, ConnectionStatus.QR_PENDING)
            await self.notifier.connection_update(connection_id, ConnectionStatus.QR_PENDING.value)
        logger.info("QR code received", extra_data={"connection_id": connection_id})

    async def _handle_ready(self, connection_id: int, client: BaseTransportClient) -> None:
        if not self.registry.is_current(connection_id, client):
            logger.debug("ready from stale client ignored", extra_data={"connection_id": connection_id})
            return

        self._cancel_timeout(connection_id)
        self._initializing.discard(connection_id)
        self._failures.pop(connection_id, None)
        self._critical_errors[connection_id] = 0
        self.qr_store.clear(connection_id)
        self.qr_store.clear_error(connection_id)
        self._set_lifecycle(connection_id, ConnectionLifecycleState.CONNECTED)

        await self._persist_status(connection_id, ConnectionStatus.CONNECTED)
        await self.notifier.connection_update(connection_id, ConnectionStatus.CONNECTED.value)

        # רק עכשיו מאזינים להודעות נכנסות - הקליינט שמיש
        if client.listener_count(TransportEvent.MESSAGE) == 0:
            client.on(TransportEvent.MESSAGE, self._make_inbound_listener(connection_id, client))
        if client.listener_count(TransportEvent.DELIVERY_ACK) == 0:
            client.on(TransportEvent.DELIVERY_ACK, self._make_ack_listener(connection_id, client))

        logger.info("Connection ready", extra_data={"connection_id": connection_id})

    async def _handle_session_loss(
        self,
        connection_id: int,
        client: BaseTransportClient,
        reason: str,
    ) -> None:
        if not self.registry.is_current(connection_id, client):
            logger.debug(
                "Lifecycle event from stale client ignored",
                extra_data={"connection_id": connection_id, "reason": reason},
            )
            return
        logger.warning(
            "Connection session lost",
            extra_data={"connection_id": connection_id, "reason": reason},
        )
        self._record_failure(connection_id, reason)
        self.qr_store.record_error(connection_id, reason)
        await self._teardown(connection_id, client, reason=reason)

    def _make_inbound_listener(self, connection_id: int, client: BaseTransportClient):
        async def on_message(message: InboundMessage) -> None:
            if not self.registry.is_current(connection_id, client):
                return
            if self._inbound_handler is None:
                logger.warning("No inbound handler configured", extra_data={"connection_id": connection_id})
                return
            with correlation_scope(message.wa_message_id[:8] if message.wa_message_id else None):
                logger.info(
                    "Inbound message",
                    extra_data={
                        "connection_id": connection_id,
                        "contact": PhoneNumberValidator.mask(message.contact_number),
                        "from_me": message.from_me,
                        "is_group": message.is_group,
                    },
                )
                await self._inbound_handler(message)

        return on_message

    def _make_ack_listener(self, connection_id: int, client: BaseTransportClient):
        async def on_ack(ack: DeliveryAck) -> None:
            if not self.registry.is_current(connection_id, client):
                return
            if self._ack_handler is not None:
                await self._ack_handler(ack)

        return on_ack

    # ── ניתוק ──

    async def disconnect(self, connection_id: int) -> bool:
        """
        Graceful disconnect: logout, then destroy.

        Logout failures are logged and never stop the teardown. Calling it for
        a connection without a live client only resets the stored status.

        Returns:
            True when a live client was torn down.
        """
        client = self.registry.get(connection_id)
        if client is None:
            await self._teardown_without_client(connection_id, reason="disconnect")
            return False
        await self._teardown(connection_id, client, reason="disconnect", logout=True)
        return True

    async def abort(self, connection_id: int) -> bool:
        """
        Hard destroy without logout, used to cancel an initialization.

        Idempotent: aborting an unknown or already destroyed session succeeds.
        """
        client = self.registry.get(connection_id)
        if client is None:
            await self._teardown_without_client(connection_id, reason="abort")
            return False
        await self._teardown(connection_id, client, reason="abort")
        return True

    async def _teardown_without_client(self, connection_id: int, *, reason: str) -> None:
        self._cancel_timeout(connection_id)
        self._initializing.discard(connection_id)
        self._critical_errors.pop(connection_id, None)
        self.qr_store.clear(connection_id)
        self._set_lifecycle(connection_id, ConnectionLifecycleState.IDLE)
        await self._persist_status(connection_id, ConnectionStatus.DISCONNECTED)
        await self.notifier.connection_update(connection_id, ConnectionStatus.DISCONNECTED.value)
        await self._run_teardown_listeners(connection_id)
        logger.info(
            "Teardown requested without live client",
            extra_data={"connection_id": connection_id, "reason": reason},
        )

    async def _teardown(
        self,
        connection_id: int,
        client: BaseTransportClient,
        *,
        reason: str,
        logout: bool = False,
    ) -> None:
        """פירוק session: הסרה מה-registry (סינכרוני), ואז ניקוי משאבים best-effort"""
        removed = self.registry.remove(connection_id, client)
        self._cancel_timeout(connection_id)
        if removed is None:
            # כבר פורק ע"י מסלול אחר
            return
        self._initializing.discard(connection_id)
        self._critical_errors.pop(connection_id, None)
        self.qr_store.clear(connection_id)
        client.off(TransportEvent.MESSAGE)
        client.off(TransportEvent.DELIVERY_ACK)

        if self.lifecycle_state(connection_id) != ConnectionLifecycleState.IDLE:
            self._set_lifecycle(connection_id, ConnectionLifecycleState.DISCONNECTED)

        if logout:
            try:
                await client.logout()
            except Exception as exc:
                logger.warning(
                    "Logout failed, continuing with destroy",
                    extra_data={"connection_id": connection_id, "error": str(exc)},
                )
        await self._destroy_quietly(connection_id, client)
        client.remove_all_listeners()

        await self._persist_status(connection_id, ConnectionStatus.DISCONNECTED)
        await self.notifier.connection_update(
            connection_id, ConnectionStatus.DISCONNECTED.value, reason=reason
        )
        await self._run_teardown_listeners(connection_id)
        self._set_lifecycle(connection_id, ConnectionLifecycleState.IDLE)

        logger.info(
            "Connection torn down",
            extra_data={"connection_id": connection_id, "reason": reason, "logout": logout},
        )

    async def _destroy_quietly(self, connection_id: int, client: BaseTransportClient) -> None:
        try:
            await client.destroy()
        except Exception as exc:
            logger.warning(
                "Client destroy failed",
                extra_data={"connection_id": connection_id, "error": str(exc)},
            )

    async def _run_teardown_listeners(self, connection_id: int) -> None:
        for listener in list(self._teardown_listeners):
            try:
                await listener(connection_id)
            except Exception as exc:
                logger.error(
                    "Teardown listener failed",
                    extra_data={"connection_id": connection_id, "error": str(exc)},
                    exc_info=True,
                )

    # ── שליחה ומונה שגיאות קריטיות ──

    async def send_message(self, connection_id: int, target: str, payload: str) -> Optional[str]:
        """
        Send through the connection's live client.

        Raises:
            TransportUnavailableError: no connected client.
            TransportError / TransportFatalError: the send failed.
        """
        client = self.registry.get(connection_id)
        state = self.lifecycle_state(connection_id)
        if client is None or state != ConnectionLifecycleState.CONNECTED:
            raise TransportUnavailableError(connection_id, state=state.value)

        try:
            message_id = await client.send_message(target, payload)
        except TransportError as exc:
            if is_critical_transport_error(exc):
                await self._register_critical_error(connection_id, client, exc)
            raise
        except Exception as exc:
            if is_critical_transport_error(exc):
                fatal = TransportFatalError(str(exc))
                await self._register_critical_error(connection_id, client, fatal)
                raise fatal from exc
            raise TransportError(str(exc)) from exc

        self._critical_errors[connection_id] = 0
        return message_id

    async def _register_critical_error(
        self,
        connection_id: int,
        client: BaseTransportClient,
        error: Exception,
    ) -> None:
        count = self._critical_errors.get(connection_id, 0) + 1
        self._critical_errors[connection_id] = count
        threshold = settings.SESSION_CRITICAL_ERROR_THRESHOLD
        logger.warning(
            "Critical transport error",
            extra_data={
                "connection_id": connection_id,
                "count": count,
                "threshold": threshold,
                "error": str(error),
            },
        )
        if count < threshold:
            return

        try:
            state = await client.get_state()
        except Exception as exc:
            logger.warning(
                "get_state failed after critical errors",
                extra_data={"connection_id": connection_id, "error": str(exc)},
            )
            state = None

        if not self.registry.is_current(connection_id, client):
            return
        if state == CONNECTED_STATE:
            logger.info(
                "Session still connected, keeping it despite critical errors",
                extra_data={"connection_id": connection_id, "count": count},
            )
            self._critical_errors[connection_id] = 0
            return

        logger.error(
            "Critical error threshold reached, tearing session down",
            extra_data={"connection_id": connection_id, "count": count, "state": state},
        )
        await self._teardown(connection_id, client, reason="critical_errors")

    # ── מצב פנימי ──

    def _set_lifecycle(self, connection_id: int, target: ConnectionLifecycleState) -> None:
        current = self.lifecycle_state(connection_id)
        if current == target:
            return
        if not is_valid_lifecycle_transition(current, target):
            logger.warning(
                "Unexpected lifecycle transition",
                extra_data={
                    "connection_id": connection_id,
                    "current_state": current.value,
                    "target_state": target.value,
                },
            )
        self._lifecycle[connection_id] = target

    async def _persist_status(self, connection_id: int, status: ConnectionStatus) -> None:
        try:
            async with self._session_factory() as db:
                await db.execute(
                    update(Connection)
                    .where(Connection.id == connection_id)
                    .values(status=status)
                )
                await db.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to persist connection status",
                extra_data={
                    "connection_id": connection_id,
                    "status": status.value,
                    "error": str(exc),
                },
            )

    def snapshot(self) -> list[dict[str, Any]]:
        """מצב כל החיבורים המוכרים - לדיאגנוסטיקה"""
        connection_ids = (
            set(self._lifecycle)
            | set(self._failures)
            | {connection_id for connection_id, _ in self.registry.list()}
            | self._initializing
        )
        now = self._clock()
        rows = []
        for connection_id in sorted(connection_ids):
            record = self._failures.get(connection_id)
            client = self.registry.get(connection_id)
            rows.append({
                "connection_id": connection_id,
                "lifecycle": self.lifecycle_state(connection_id).value,
                "registered": client is not None,
                "provider": client.provider_name if client else None,
                "initializing": connection_id in self._initializing,
                "failures": record.count if record else 0,
                "seconds_since_last_failure": (
                    round(now - record.last_failure_at, 1)
                    if record and record.last_failure_at is not None else None
                ),
                "last_failure_reason": record.last_reason if record else None,
                "critical_errors": self._critical_errors.get(connection_id, 0),
                "has_qr": self.qr_store.get(connection_id) is not None,
            })
        return rows

    async def shutdown(self) -> None:
        """סגירת כל ה-sessions ביציאה מהאפליקציה (destroy בלי logout)"""
        for connection_id in list(self._timeouts):
            self._cancel_timeout(connection_id)
        for connection_id, client in self.registry.list():
            await self._teardown(connection_id, client, reason="shutdown")
        self._initializing.clear()
