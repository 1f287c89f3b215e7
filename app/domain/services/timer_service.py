"""
Pending Selection Timers - reminder, final ו-settle לדיאלוגי בחירת מחלקה.

כל טיימר הוא asyncio.Task שישן ואז:
1. בודק שסט הטיימרים של המגע עדיין נושא את ה-generation שלו (הדיאלוג לא נסגר/הוחלף)
2. טוען מחדש את הרשומה מה-DB ומוודא שהיא עדיין קיימת
3. רק אז שולח

טיימר שיורה על דיאלוג שכבר נסגר הוא no-op.
"""
from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.logging import correlation_scope, get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.connection import Connection
from app.db.models.pending_selection import PendingQueueSelection
from app.domain.services.business_hours import bot_may_speak
from app.domain.services.chatbot_service import ChatbotConfigService
from app.domain.services.notification_service import NotificationService
from app.domain.services.outbound_service import OutboundService
from app.domain.services.queue_service import QueueService, format_queue_menu
from app.domain.services.timer_registry import PendingTimerSet, TimerRegistry
from app.state_machine.manager import PendingSelectionManager
from app.state_machine.states import PendingSelectionState

if TYPE_CHECKING:
    from app.domain.services.session_manager import SessionLifecycleManager

logger = get_logger(__name__)


class PendingSelectionTimerService:
    """Schedules and fires the timers of queue-selection dialogues"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timers: TimerRegistry,
        session_manager: Optional["SessionLifecycleManager"],
        notifier: NotificationService,
    ) -> None:
        self._session_factory = session_factory
        self.timers = timers
        self.session_manager = session_manager
        self.notifier = notifier

    def _outbound(self, db: AsyncSession) -> OutboundService:
        return OutboundService(db, self.session_manager, notifier=self.notifier)

    # ── תזמון וביטול ──

    def schedule(self, record: PendingQueueSelection, *, with_settle: bool = True) -> PendingTimerSet:
        """Arm reminder and final (and settle) for a freshly created dialogue"""
        contact_number = record.contact_number
        generation = self.timers.next_generation()
        timer_set = PendingTimerSet(
            contact_number=contact_number,
            record_id=record.id,
            generation=generation,
        )
        self.timers.set(timer_set)

        self._spawn(
            contact_number, "reminder",
            self._reminder(contact_number, record.id, generation),
        )
        self._spawn(
            contact_number, "final",
            self._final(contact_number, record.id, generation),
        )
        if with_settle:
            self._spawn(
                contact_number, "settle",
                self._settle(contact_number, record.id, generation),
            )

        logger.debug(
            "Pending timers scheduled",
            extra_data={
                "contact": PhoneNumberValidator.mask(contact_number),
                "record_id": record.id,
                "generation": generation,
            },
        )
        return timer_set

    def cancel(self, contact_number: str) -> bool:
        """ביטול כל הטיימרים של המגע; טיימרים שכבר רצים יגלו שהם ישנים"""
        return self.timers.remove(contact_number)

    def settle_pending(self, contact_number: str) -> bool:
        """Whether a settle timer is still waiting for this contact"""
        timer_set = self.timers.get(contact_number)
        return timer_set is not None and "settle" in timer_set.active_kinds()

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "contact": PhoneNumberValidator.mask(timer_set.contact_number),
                "record_id": timer_set.record_id,
                "generation": timer_set.generation,
                "active": timer_set.active_kinds(),
            }
            for timer_set in self.timers.list()
        ]

    def shutdown(self) -> None:
        self.timers.clear()

    def _spawn(self, contact_number: str, kind: str, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(
            self._guarded(kind, contact_number, coro),
            name=f"pending-{kind}-{contact_number}",
        )
        self.timers.add_task(contact_number, kind, task)

    async def _guarded(self, kind: str, contact_number: str, coro: Awaitable[None]) -> None:
        # טיימר שנכשל לא מפיל את ה-loop; הכשלון נרשם בלוג
        with correlation_scope():
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    f"Pending {kind} timer failed",
                    extra_data={
                        "contact": PhoneNumberValidator.mask(contact_number),
                        "error": str(exc),
                    },
                    exc_info=True,
                )

    # ── הודעת פתיחה ──

    async def send_initial(
        self,
        db: AsyncSession,
        record: PendingQueueSelection,
        connection: Connection,
    ) -> bool:
        """
        Send the welcome text and the numbered queue menu, at most once.

        The ``initial_sent`` claim is committed before sending, so concurrent
        callers cannot both send.

        Returns:
            True when this call sent the messages.
        """
        if not bot_may_speak(connection):
            return False

        manager = PendingSelectionManager(db)
        if not await manager.mark_initial_sent(record.id):
            return False
        await db.commit()

        texts = await ChatbotConfigService(db).get_texts()
        queues = await QueueService(db).list_for_connection(connection.id)
        welcome = connection.initial_message or texts["welcome_message"]
        menu = format_queue_menu(texts["queue_selection_message"], queues)

        outbound = self._outbound(db)
        await outbound.send_pending_prompt(record.contact_number, connection.id, welcome)
        await outbound.send_pending_prompt(record.contact_number, connection.id, menu)
        await db.commit()

        logger.info(
            "Initial queue menu sent",
            extra_data={
                "contact": PhoneNumberValidator.mask(record.contact_number),
                "connection_id": connection.id,
                "queues": len(queues),
            },
        )
        return True

    # ── callbacks ──

    async def _load_live_record(
        self,
        db: AsyncSession,
        contact_number: str,
        record_id: int,
        generation: int,
        kind: str,
    ) -> Optional[PendingQueueSelection]:
        if not self.timers.is_current(contact_number, generation):
            return None
        record = await PendingSelectionManager(db).get_by_id(record_id)
        if record is None or record.contact_number != contact_number:
            logger.debug(
                f"Stale {kind} timer ignored",
                extra_data={"contact": PhoneNumberValidator.mask(contact_number), "record_id": record_id},
            )
            return None
        return record

    async def _settle(self, contact_number: str, record_id: int, generation: int) -> None:
        await asyncio.sleep(settings.PENDING_SETTLE_DELAY_SECONDS)
        if not self.timers.is_current(contact_number, generation):
            return
        async with self._session_factory() as db:
            record = await self._load_live_record(db, contact_number, record_id, generation, "settle")
            if record is None:
                return
            connection = await db.get(Connection, record.connection_id)
            if connection is None:
                return
            await self.send_initial(db, record, connection)

    async def _reminder(self, contact_number: str, record_id: int, generation: int) -> None:
        await asyncio.sleep(settings.PENDING_REMINDER_DELAY_SECONDS)
        if not self.timers.is_current(contact_number, generation):
            return
        async with self._session_factory() as db:
            record = await self._load_live_record(db, contact_number, record_id, generation, "reminder")
            if record is None or not record.initial_sent:
                return
            connection = await db.get(Connection, record.connection_id)
            if not bot_may_speak(connection):
                return

            texts = await ChatbotConfigService(db).get_texts()
            queues = await QueueService(db).list_for_connection(connection.id)
            body = format_queue_menu(texts["reminder_message"], queues)

            # בדיקה חוזרת אחרי ה-awaits: ייתכן שהדיאלוג נסגר בינתיים
            if not self.timers.is_current(contact_number, generation):
                return
            await self._outbound(db).send_pending_prompt(contact_number, connection.id, body)
            await db.commit()

        logger.info(
            "Pending reminder sent",
            extra_data={"contact": PhoneNumberValidator.mask(contact_number), "record_id": record_id},
        )

    async def _final(self, contact_number: str, record_id: int, generation: int) -> None:
        await asyncio.sleep(settings.PENDING_FINAL_DELAY_SECONDS)
        if not self.timers.is_current(contact_number, generation):
            return
        async with self._session_factory() as db:
            record = await self._load_live_record(db, contact_number, record_id, generation, "final")
            if record is None:
                return
            connection_id = record.connection_id
            manager = PendingSelectionManager(db)
            if not await manager.delete(record_id, PendingSelectionState.CLOSED_TIMEOUT):
                return
            discarded = await manager.discard_held_messages(contact_number, connection_id)
            await db.commit()

            # ביטול ה-reminder/settle; המשימה הנוכחית לא מבוטלת
            self.timers.remove(contact_number)

            connection = await db.get(Connection, connection_id)
            if bot_may_speak(connection):
                texts = await ChatbotConfigService(db).get_texts()
                await self._outbound(db).send_untracked(
                    connection_id, contact_number, texts["closing_message"]
                )

        logger.info(
            "Pending selection closed by timeout",
            extra_data={
                "contact": PhoneNumberValidator.mask(contact_number),
                "record_id": record_id,
                "discarded_messages": discarded,
            },
        )
