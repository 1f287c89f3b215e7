"""
Service Factory - חיווט ה-singletons של ה-core.

מנהל ה-sessions, שירות הטיימרים והראוטר תלויים זה בזה:
- הראוטר מקבל הודעות נכנסות ו-acks מהמנהל
- המנהל מודיע לראוטר על פירוק session כדי לסגור דיאלוגים פתוחים
- הטיימרים והראוטר שולחים דרך המנהל

כל ה-singletons נבנים יחד בפעם הראשונה שמישהו מבקש אחד מהם.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging import get_logger
from app.db.database import AsyncSessionLocal
from app.domain.services.notification_service import NotificationService
from app.domain.services.qr_store import QrCodeStore
from app.domain.services.session_manager import ClientFactory, SessionLifecycleManager
from app.domain.services.session_registry import SessionRegistry
from app.domain.services.timer_registry import TimerRegistry
from app.domain.services.timer_service import PendingSelectionTimerService
from app.state_machine.handlers import InboundMessageRouter

logger = get_logger(__name__)


@dataclass
class CoreServices:
    registry: SessionRegistry
    timers: TimerRegistry
    qr_store: QrCodeStore
    notifier: NotificationService
    session_manager: SessionLifecycleManager
    timer_service: PendingSelectionTimerService
    router: InboundMessageRouter


_services: Optional[CoreServices] = None
_lock = threading.Lock()


def build_services(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    notifier: Optional[NotificationService] = None,
    client_factory: Optional[ClientFactory] = None,
) -> CoreServices:
    """Build and wire a fresh set of core services"""
    registry = SessionRegistry()
    timers = TimerRegistry()
    qr_store = QrCodeStore()
    notifier = notifier or NotificationService()

    session_manager = SessionLifecycleManager(
        session_factory,
        registry,
        qr_store,
        notifier,
        client_factory=client_factory,
    )
    timer_service = PendingSelectionTimerService(session_factory, timers, session_manager, notifier)
    router = InboundMessageRouter(session_factory, session_manager, timer_service, notifier)

    session_manager.set_inbound_handler(router.handle)
    session_manager.set_ack_handler(router.handle_delivery_ack)
    session_manager.add_teardown_listener(router.on_connection_teardown)

    return CoreServices(
        registry=registry,
        timers=timers,
        qr_store=qr_store,
        notifier=notifier,
        session_manager=session_manager,
        timer_service=timer_service,
        router=router,
    )


def get_services() -> CoreServices:
    global _services
    if _services is None:
        with _lock:
            if _services is None:
                _services = build_services()
                logger.info("Core services initialized")
    return _services


def set_services(services: CoreServices) -> None:
    """החלפת ה-singletons (בדיקות)"""
    global _services
    with _lock:
        _services = services


def get_session_manager() -> SessionLifecycleManager:
    return get_services().session_manager


def get_router() -> InboundMessageRouter:
    return get_services().router


def get_timer_service() -> PendingSelectionTimerService:
    return get_services().timer_service


def get_notifier() -> NotificationService:
    return get_services().notifier


async def shutdown_services() -> None:
    """סגירת sessions וטיימרים ביציאה מהאפליקציה"""
    global _services
    services = _services
    if services is None:
        return
    services.timer_service.shutdown()
    await services.session_manager.shutdown()
    with _lock:
        _services = None


def reset_services() -> None:
    """איפוס singletons, לשימוש בבדיקות בלבד."""
    global _services
    with _lock:
        if _services is not None:
            _services.timers.clear()
        _services = None
