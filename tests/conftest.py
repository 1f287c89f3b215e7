"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- A fake transport client and a recording notifier instead of the gateway and Redis
- Core services (session manager, timers, router) wired to the test database
- Test data factories
"""
# הגדרת JWT_SECRET_KEY לפני ייבוא app - הולידטור דורש מפתח כש-DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("WHATSAPP_GATEWAY_TOKEN", "test-gateway-token")

import asyncio
from typing import Any, AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

import app.db.models  # noqa: F401 - רישום המודלים על Base.metadata
from app.core.auth import create_access_token
from app.core.config import settings
from app.db.database import Base, get_db
from app.db.models.connection import Connection, ConnectionQueue
from app.db.models.queue import Queue
from app.db.models.ticket import Ticket, TicketStatus
from app.db.models.user import User, UserQueue, UserRole
from app.domain.services.notification_service import NotificationEvent, NotificationService
from app.domain.services.service_factory import build_services, reset_services, set_services
from app.domain.services.transport.base_transport import (
    BaseTransportClient,
    InboundMessage,
    TransportEvent,
)
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """sessionmaker על ה-DB של הבדיקה, בדיוק כמו AsyncSessionLocal"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fakes
# ============================================================================

class RecordingNotifier(NotificationService):
    """NotificationService שרושם אירועים במקום לפרסם ל-Redis"""

    def __init__(self) -> None:
        super().__init__(channel="test:events")
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, event: NotificationEvent, data: dict[str, Any]) -> bool:
        self.events.append((event.value, data))
        return True

    def of(self, event: NotificationEvent) -> list[dict[str, Any]]:
        return [data for name, data in self.events if name == event.value]


class FakeTransportClient(BaseTransportClient):
    """Transport client בזיכרון: רושם קריאות ומאפשר להזריק כשלונות"""

    def __init__(self, connection_id: int) -> None:
        super().__init__(connection_id)
        self.initialize_calls = 0
        self.destroy_calls = 0
        self.logout_calls = 0
        self.sent: list[tuple[str, str]] = []
        self.state: Optional[str] = "CONNECTED"
        self.initialize_error: Optional[Exception] = None
        self.initialize_gate: Optional[asyncio.Event] = None
        self.logout_error: Optional[Exception] = None
        self.destroy_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None

    @property
    def provider_name(self) -> str:
        return "fake"

    async def initialize(self) -> None:
        self.initialize_calls += 1
        if self.initialize_gate is not None:
            await self.initialize_gate.wait()
        if self.initialize_error is not None:
            raise self.initialize_error

    async def destroy(self) -> None:
        self.destroy_calls += 1
        if self.destroyed:
            return
        self.destroyed = True
        if self.destroy_error is not None:
            raise self.destroy_error

    async def logout(self) -> None:
        self.logout_calls += 1
        if self.logout_error is not None:
            raise self.logout_error

    async def get_state(self) -> Optional[str]:
        return self.state

    async def send_message(self, target: str, payload: str) -> Optional[str]:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((target, payload))
        return f"wamid-{self.connection_id}-{len(self.sent)}"

    # עזרי בדיקה

    async def become_ready(self) -> None:
        await self.emit(TransportEvent.READY)

    async def deliver(self, contact_number: str, body: str, **kwargs: Any) -> None:
        await self.emit(
            TransportEvent.MESSAGE,
            InboundMessage(
                connection_id=self.connection_id,
                chat_id=f"{contact_number}@c.us",
                contact_number=contact_number,
                body=body,
                **kwargs,
            ),
        )

    def bodies(self) -> list[str]:
        return [payload for _, payload in self.sent]


class FakeClientFactory:
    """client_factory שזוכר כל קליינט שנוצר"""

    def __init__(self) -> None:
        self.clients: list[FakeTransportClient] = []
        self.prepare = None  # callable(client) שרץ לפני שהקליינט מוחזר

    def __call__(self, connection_id: int) -> FakeTransportClient:
        client = FakeTransportClient(connection_id)
        if self.prepare is not None:
            self.prepare(client)
        self.clients.append(client)
        return client

    @property
    def last(self) -> FakeTransportClient:
        return self.clients[-1]


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture(autouse=True)
def test_settings():
    """
    ערכי בדיקה: טיימרים ארוכים (לא יורים אלא אם בדיקה מקצרת אותם),
    gateway token ידוע ו-ADMIN_API_KEY לבדיקות admin.
    """
    with patch.object(settings, "PENDING_SETTLE_DELAY_SECONDS", 600.0), \
         patch.object(settings, "PENDING_REMINDER_DELAY_SECONDS", 1200.0), \
         patch.object(settings, "PENDING_FINAL_DELAY_SECONDS", 1800.0), \
         patch.object(settings, "SESSION_INIT_TIMEOUT_SECONDS", 600.0), \
         patch.object(settings, "PENDING_MAX_INVALID_ATTEMPTS", 3), \
         patch.object(settings, "SESSION_MAX_INIT_FAILURES", 3), \
         patch.object(settings, "SESSION_INIT_BACKOFF_WINDOW_SECONDS", 60.0), \
         patch.object(settings, "SESSION_CRITICAL_ERROR_THRESHOLD", 3), \
         patch.object(settings, "BOT_COOLDOWN_SECONDS", 60), \
         patch.object(settings, "WHATSAPP_GATEWAY_TOKEN", "test-gateway-token"), \
         patch.object(settings, "WHATSAPP_SESSION_PREFIX", "desk-"), \
         patch.object(settings, "ADMIN_API_KEY", "test-admin-key"), \
         patch.object(settings, "WHATSAPP_DEFAULT_COUNTRY_CODE", None):
        yield


@pytest.fixture
def fast_timers():
    """טיימרי דיאלוג קצרים לבדיקות timer"""
    with patch.object(settings, "PENDING_SETTLE_DELAY_SECONDS", 0.05), \
         patch.object(settings, "PENDING_REMINDER_DELAY_SECONDS", 0.2), \
         patch.object(settings, "PENDING_FINAL_DELAY_SECONDS", 0.5):
        yield


# ============================================================================
# Core services
# ============================================================================

@pytest.fixture
async def services(session_factory, notifier, client_factory):
    """סט שירותי core על ה-DB של הבדיקה, רשום כ-singleton"""
    core = build_services(
        session_factory=session_factory,
        notifier=notifier,
        client_factory=client_factory,
    )
    set_services(core)
    yield core
    core.timer_service.shutdown()
    await core.session_manager.shutdown()
    reset_services()


@pytest.fixture
async def connected_client(services, client_factory, default_connection) -> FakeTransportClient:
    """חיבור ברירת מחדל עם session מחובר"""
    await services.session_manager.initialize_connection(default_connection.id)
    client = client_factory.last
    await client.become_ready()
    return client


@pytest.fixture(scope="function")
async def test_client(session_factory, services):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def queue_factory(db_session: AsyncSession):
    async def _create_queue(name: str = "Support") -> Queue:
        queue = Queue(name=name)
        db_session.add(queue)
        await db_session.commit()
        await db_session.refresh(queue)
        return queue

    return _create_queue


@pytest.fixture
def connection_factory(db_session: AsyncSession):
    async def _create_connection(
        name: str = "Main",
        is_default: bool = True,
        chatbot_enabled: bool = True,
        queues: list[Queue] | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
        initial_message: str | None = None,
        farewell_message: str | None = None,
    ) -> Connection:
        connection = Connection(
            name=name,
            is_default=is_default,
            chatbot_enabled=chatbot_enabled,
            start_time=start_time,
            end_time=end_time,
            initial_message=initial_message,
            farewell_message=farewell_message,
        )
        db_session.add(connection)
        await db_session.flush()
        for queue in queues or []:
            db_session.add(ConnectionQueue(connection_id=connection.id, queue_id=queue.id))
        await db_session.commit()
        await db_session.refresh(connection)
        return connection

    return _create_connection


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating agents"""
    counter = {"n": 0}

    async def _create_user(
        name: str = "Agent",
        role: UserRole = UserRole.AGENT,
        queues: list[Queue] | None = None,
        is_active: bool = True,
        last_activity_at=None,
    ) -> User:
        counter["n"] += 1
        user = User(
            name=name,
            email=f"agent{counter['n']}@desk.test",
            role=role,
            is_active=is_active,
            last_activity_at=last_activity_at,
        )
        db_session.add(user)
        await db_session.flush()
        for queue in queues or []:
            db_session.add(UserQueue(user_id=user.id, queue_id=queue.id))
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def ticket_factory(db_session: AsyncSession):
    async def _create_ticket(
        contact_number: str = "5511999990001",
        connection_id: int | None = None,
        queue_id: int | None = None,
        user_id: int | None = None,
        status: TicketStatus = TicketStatus.PENDING,
        is_manual: bool = False,
    ) -> Ticket:
        ticket = Ticket(
            contact_number=contact_number,
            connection_id=connection_id,
            queue_id=queue_id,
            user_id=user_id,
            status=status,
            is_manual=is_manual,
        )
        db_session.add(ticket)
        await db_session.commit()
        await db_session.refresh(ticket)
        return ticket

    return _create_ticket


# ============================================================================
# Sample Test Data
# ============================================================================

@pytest.fixture
async def sales_queue(queue_factory) -> Queue:
    return await queue_factory("Sales")


@pytest.fixture
async def support_queue(queue_factory) -> Queue:
    return await queue_factory("Support")


@pytest.fixture
async def default_connection(connection_factory, sales_queue, support_queue) -> Connection:
    """חיבור ברירת מחדל עם בוט ושתי מחלקות (תפריט: 1. Sales, 2. Support)"""
    return await connection_factory(queues=[sales_queue, support_queue])


@pytest.fixture
async def agent(user_factory, support_queue) -> User:
    return await user_factory(name="Ana", queues=[support_queue])


@pytest.fixture
async def admin_user(user_factory) -> User:
    return await user_factory(name="Admin", role=UserRole.ADMIN)


def _auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role.value)}"}


@pytest.fixture
def make_auth_headers():
    """Bearer header לנציג"""
    return _auth_headers


@pytest.fixture
def agent_headers(agent) -> dict[str, str]:
    return _auth_headers(agent)


@pytest.fixture
def admin_headers(admin_user) -> dict[str, str]:
    return _auth_headers(admin_user)


class FakeRedis:
    """תחליף ל-Redis לבדיקות: ping ו-publish בזיכרון."""

    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    async def ping(self) -> bool:
        return True

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1

    async def aclose(self) -> None:
        self.published.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis):
        yield _fake
