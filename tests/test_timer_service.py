"""
בדיקות לטיימרי דיאלוג בחירת המחלקה (settle / reminder / final) ול-TimerRegistry.
"""
import asyncio

import pytest
from sqlalchemy import update

from app.db.models.chatbot_config import DEFAULT_BOT_TEXTS
from app.db.models.connection import Connection
from app.domain.services.timer_registry import PendingTimerSet, TimerRegistry
from app.domain.services.transport.base_transport import InboundMessage
from app.state_machine.handlers import RouteOutcome
from app.state_machine.manager import PendingSelectionManager

CONTACT = "5511999990001"


def _inbound(connection_id: int, body: str) -> InboundMessage:
    return InboundMessage(
        connection_id=connection_id,
        chat_id=f"{CONTACT}@c.us",
        contact_number=CONTACT,
        body=body,
    )


async def _record(session_factory):
    async with session_factory() as db:
        return await PendingSelectionManager(db).get(CONTACT)


class TestPendingTimers:
    """הטיימרים עם השהיות קצרות (fast_timers)"""

    @pytest.mark.unit
    async def test_settle_sends_menu(
        self, fast_timers, services, session_factory, connected_client, default_connection
    ) -> None:
        await services.router.handle(_inbound(default_connection.id, "hello"))

        await asyncio.sleep(0.12)

        assert connected_client.bodies() == [
            DEFAULT_BOT_TEXTS["welcome_message"],
            f"{DEFAULT_BOT_TEXTS['queue_selection_message']}\n\n1. Sales\n2. Support",
        ]
        assert (await _record(session_factory)).initial_sent is True

    @pytest.mark.unit
    async def test_reminder_after_menu(
        self, fast_timers, services, connected_client, default_connection
    ) -> None:
        await services.router.handle(_inbound(default_connection.id, "hello"))

        await asyncio.sleep(0.3)

        bodies = connected_client.bodies()
        assert len(bodies) == 3
        assert bodies[-1] == f"{DEFAULT_BOT_TEXTS['reminder_message']}\n\n1. Sales\n2. Support"

    @pytest.mark.unit
    async def test_final_closes_dialogue(
        self, fast_timers, services, session_factory, connected_client, default_connection
    ) -> None:
        """אין בחירה עד ה-final: הרשומה נמחקת ונשלחת הודעת סגירה"""
        await services.router.handle(_inbound(default_connection.id, "hello"))

        await asyncio.sleep(0.7)

        assert await _record(session_factory) is None
        assert services.timers.get(CONTACT) is None
        assert connected_client.bodies()[-1] == DEFAULT_BOT_TEXTS["closing_message"]
        async with session_factory() as db:
            held = await PendingSelectionManager(db).pop_held_messages(CONTACT, default_connection.id)
        assert held == []

    @pytest.mark.unit
    async def test_choice_cancels_timers(
        self, fast_timers, services, session_factory, connected_client, default_connection
    ) -> None:
        await services.router.handle(_inbound(default_connection.id, "hello"))
        await asyncio.sleep(0.12)

        outcome = await services.router.handle(_inbound(default_connection.id, "1"))
        sent_after_choice = len(connected_client.sent)
        await asyncio.sleep(0.6)

        assert outcome == RouteOutcome.TICKET_CREATED
        assert len(connected_client.sent) == sent_after_choice
        assert DEFAULT_BOT_TEXTS["closing_message"] not in connected_client.bodies()

    @pytest.mark.unit
    async def test_reminder_waits_for_menu(
        self, fast_timers, services, session_factory, connected_client, default_connection
    ) -> None:
        """בלי הודעת פתיחה אין תזכורת"""
        async with session_factory() as db:
            record, _ = await PendingSelectionManager(db).create(
                CONTACT, default_connection.id, first_message="hello"
            )
            await db.commit()
        services.timer_service.schedule(record, with_settle=False)

        await asyncio.sleep(0.3)

        assert connected_client.sent == []
        assert (await _record(session_factory)).initial_sent is False

    @pytest.mark.unit
    async def test_stale_generation_is_noop(
        self, fast_timers, services, session_factory, connected_client, default_connection
    ) -> None:
        """טיימר שה-generation שלו עבר לא נוגע בדיאלוג"""
        await services.router.handle(_inbound(default_connection.id, "hello"))
        services.timers.bump_generation(CONTACT)

        await asyncio.sleep(0.7)

        assert connected_client.sent == []
        record = await _record(session_factory)
        assert record is not None
        assert record.initial_sent is False

    @pytest.mark.unit
    async def test_silent_when_bot_may_not_speak(
        self, fast_timers, services, session_factory, connected_client, default_connection
    ) -> None:
        """הבוט כובה: settle לא שולח, ה-final עדיין סוגר בלי הודעה"""
        await services.router.handle(_inbound(default_connection.id, "hello"))
        async with session_factory() as db:
            await db.execute(
                update(Connection)
                .where(Connection.id == default_connection.id)
                .values(chatbot_enabled=False)
            )
            await db.commit()

        await asyncio.sleep(0.7)

        assert connected_client.sent == []
        assert await _record(session_factory) is None


class TestTimerCleanup:

    @pytest.mark.unit
    async def test_registry_empty_after_dialogues_close(
        self, services, default_connection
    ) -> None:
        """דיאלוגים שנסגרו לא משאירים שום רשומה בזיכרון"""
        contacts = [f"55119999900{n:02d}" for n in range(20)]
        for contact in contacts:
            await services.router.handle(
                InboundMessage(
                    connection_id=default_connection.id,
                    chat_id=f"{contact}@c.us",
                    contact_number=contact,
                    body="hello",
                )
            )
        assert len(services.timers) == len(contacts)

        for contact in contacts:
            services.timer_service.cancel(contact)

        assert len(services.timers) == 0
        assert services.timer_service.snapshot() == []
        assert all(services.timers.current_generation(c) is None for c in contacts)

    @pytest.mark.unit
    async def test_registry_empty_after_timeout(
        self, fast_timers, services, connected_client, default_connection
    ) -> None:
        await services.router.handle(_inbound(default_connection.id, "hello"))

        await asyncio.sleep(0.7)

        assert len(services.timers) == 0


class TestTimerSnapshot:

    @pytest.mark.unit
    async def test_snapshot_masks_contact(self, services, default_connection) -> None:
        await services.router.handle(_inbound(default_connection.id, "hello"))

        rows = services.timer_service.snapshot()

        assert len(rows) == 1
        assert CONTACT not in rows[0]["contact"]
        assert sorted(rows[0]["active"]) == ["final", "reminder", "settle"]


class TestTimerRegistry:

    @pytest.fixture
    def registry(self) -> TimerRegistry:
        return TimerRegistry()

    def _timer_set(self, registry: TimerRegistry, record_id: int = 1) -> PendingTimerSet:
        return PendingTimerSet(
            contact_number=CONTACT, record_id=record_id, generation=registry.next_generation()
        )

    @pytest.mark.unit
    async def test_remove_cancels_and_forgets_contact(self, registry) -> None:
        timer_set = self._timer_set(registry)
        registry.set(timer_set)
        task = asyncio.create_task(asyncio.sleep(10))
        registry.add_task(CONTACT, "final", task)

        assert registry.remove(CONTACT) is True
        await asyncio.sleep(0)

        assert task.cancelled()
        assert registry.get(CONTACT) is None
        assert registry.current_generation(CONTACT) is None
        assert not registry.is_current(CONTACT, timer_set.generation)
        assert len(registry) == 0

    @pytest.mark.unit
    async def test_remove_unknown_contact(self, registry) -> None:
        assert registry.remove(CONTACT) is False
        assert registry.current_generation(CONTACT) is None

    @pytest.mark.unit
    async def test_generations_never_repeat(self, registry) -> None:
        """דיאלוג חדש של אותו מספר לא יורש generation של דיאלוג שנסגר"""
        first = self._timer_set(registry)
        registry.set(first)
        registry.remove(CONTACT)

        second = self._timer_set(registry, record_id=2)
        registry.set(second)

        assert second.generation > first.generation
        assert not registry.is_current(CONTACT, first.generation)
        assert registry.is_current(CONTACT, second.generation)

    @pytest.mark.unit
    async def test_bump_makes_scheduled_timers_stale(self, registry) -> None:
        timer_set = self._timer_set(registry)
        registry.set(timer_set)
        old = timer_set.generation

        new = registry.bump_generation(CONTACT)

        assert new != old
        assert not registry.is_current(CONTACT, old)
        assert registry.get(CONTACT) is timer_set
        assert registry.bump_generation("5511000000000") is None

    @pytest.mark.unit
    async def test_set_replaces_previous_set(self, registry) -> None:
        registry.set(self._timer_set(registry))
        old_task = asyncio.create_task(asyncio.sleep(10))
        registry.add_task(CONTACT, "reminder", old_task)

        registry.set(self._timer_set(registry, record_id=2))
        await asyncio.sleep(0)

        assert old_task.cancelled()
        assert registry.get(CONTACT).record_id == 2

    @pytest.mark.unit
    async def test_task_without_set_is_cancelled(self, registry) -> None:
        task = asyncio.create_task(asyncio.sleep(10))

        registry.add_task(CONTACT, "settle", task)
        await asyncio.sleep(0)

        assert task.cancelled()

    @pytest.mark.unit
    async def test_unknown_kind_rejected(self, registry) -> None:
        registry.set(self._timer_set(registry))
        task = asyncio.create_task(asyncio.sleep(0))
        with pytest.raises(ValueError):
            registry.add_task(CONTACT, "snooze", task)
        await task
