"""
Inbound Message Router - ניתוב כל הודעה נכנסת למסלול אחד בדיוק.

צינור לינארי לכל הודעה:
    טיקט פעיל → דיאלוג בחירת מחלקה → cooldown → מגע חדש

כל שלב מחזיר RouteDecision והמטפל המתאים מופעל. הודעה שנכשלת בשמירה
נזרקת מהאוטומציה בלי להשאיר מצב חלקי (rollback). שליחה למגע תמיד
best-effort: כשלון שליחה לא עוצר שמירה של טיקט או הודעה.
"""
from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator, TextSanitizer
from app.db.models.connection import Connection
from app.db.models.message import MessageSender
from app.db.models.pending_selection import PendingQueueSelection
from app.db.models.queue import Queue
from app.db.models.ticket import Ticket
from app.domain.services.business_hours import bot_may_speak
from app.domain.services.chatbot_service import ChatbotConfigService
from app.domain.services.cooldown_service import CooldownService
from app.domain.services.notification_service import NotificationService
from app.domain.services.outbound_service import OutboundService
from app.domain.services.queue_service import QueueService, format_queue_menu
from app.domain.services.ticket_service import TicketService
from app.domain.services.timer_service import PendingSelectionTimerService
from app.domain.services.transport.base_transport import DeliveryAck, InboundMessage
from app.state_machine.manager import PendingSelectionManager
from app.state_machine.states import PendingSelectionState

if TYPE_CHECKING:
    from app.domain.services.session_manager import SessionLifecycleManager

logger = get_logger(__name__)


class RouteDecision(str, enum.Enum):
    """Which path an inbound message takes"""

    ACTIVE_TICKET = "active_ticket"
    PENDING = "pending"
    COOLDOWN = "cooldown"
    NEW_CONTACT = "new_contact"


class RouteOutcome(str, enum.Enum):
    IGNORED = "ignored"
    DROPPED = "dropped"
    APPENDED = "appended"
    QUEUE_ASSIGNED = "queue_assigned"
    TICKET_OPENED = "ticket_opened"
    DIALOGUE_STARTED = "dialogue_started"
    MESSAGE_HELD = "message_held"
    TICKET_CREATED = "ticket_created"
    INVALID_CHOICE = "invalid_choice"
    DIALOGUE_CLOSED = "dialogue_closed"
    COOLDOWN = "cooldown"


RouteSubject = Union[Ticket, PendingQueueSelection, None]


def render_confirmation(template: str, queue: Queue, protocol_number: Optional[str]) -> str:
    # replace ולא format: התבנית נערכת ע"י אדמין וסוגריים מסולסלים אחרים לא יפילו אותה
    return (
        template
        .replace("{queue}", queue.name)
        .replace("{protocol}", protocol_number or "")
    )


class InboundMessageRouter:
    """Routes inbound contact messages into tickets and queue-selection dialogues"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        session_manager: Optional["SessionLifecycleManager"],
        timer_service: PendingSelectionTimerService,
        notifier: NotificationService,
    ) -> None:
        self._session_factory = session_factory
        self.session_manager = session_manager
        self.timer_service = timer_service
        self.notifier = notifier

    def _tickets(self, db: AsyncSession) -> TicketService:
        return TicketService(db, self.notifier, self.session_manager)

    def _outbound(self, db: AsyncSession) -> OutboundService:
        return OutboundService(db, self.session_manager, self.notifier)

    # ── נקודת כניסה ──

    async def handle(self, message: InboundMessage) -> RouteOutcome:
        """
        Route one inbound message.

        Returns:
            What happened to the message. Store failures yield DROPPED after
            a rollback; they never propagate to the transport.
        """
        if message.is_group or message.from_me:
            return RouteOutcome.IGNORED
        body = TextSanitizer.sanitize(message.body or "")
        if not body or not message.contact_number:
            logger.debug(
                "Inbound message without text ignored",
                extra_data={"connection_id": message.connection_id},
            )
            return RouteOutcome.IGNORED

        async with self._session_factory() as db:
            try:
                outcome = await self._route(db, message, body)
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                logger.error(
                    "Inbound message dropped, store failure",
                    extra_data={
                        "connection_id": message.connection_id,
                        "contact": PhoneNumberValidator.mask(message.contact_number),
                        "error": str(exc),
                    },
                    exc_info=True,
                )
                return RouteOutcome.DROPPED

        logger.info(
            "Inbound message routed",
            extra_data={
                "connection_id": message.connection_id,
                "contact": PhoneNumberValidator.mask(message.contact_number),
                "outcome": outcome.value,
            },
        )
        return outcome

    async def _route(self, db: AsyncSession, message: InboundMessage, body: str) -> RouteOutcome:
        connection = await db.get(Connection, message.connection_id)
        if connection is None:
            logger.warning(
                "Inbound message for unknown connection",
                extra_data={"connection_id": message.connection_id},
            )
            return RouteOutcome.IGNORED

        decision, subject = await self.classify(db, message.contact_number, connection.id)
        if decision == RouteDecision.ACTIVE_TICKET:
            return await self._on_active_ticket(db, connection, subject, message, body)
        if decision == RouteDecision.PENDING:
            return await self._on_pending(db, connection, subject, message, body)
        if decision == RouteDecision.COOLDOWN:
            logger.info(
                "Contact in bot cooldown, message not routed",
                extra_data={"contact": PhoneNumberValidator.mask(message.contact_number)},
            )
            return RouteOutcome.COOLDOWN
        return await self._on_new_contact(db, connection, message, body)

    async def classify(
        self,
        db: AsyncSession,
        contact_number: str,
        connection_id: int,
    ) -> tuple[RouteDecision, RouteSubject]:
        """ticket lookup → pending lookup → cooldown lookup, first hit wins"""
        ticket = await self._tickets(db).find_active_ticket(contact_number, connection_id)
        if ticket is not None:
            return RouteDecision.ACTIVE_TICKET, ticket

        record = await PendingSelectionManager(db).get(contact_number)
        if record is not None and record.connection_id == connection_id:
            return RouteDecision.PENDING, record

        if await CooldownService(db).is_active(contact_number):
            return RouteDecision.COOLDOWN, None

        return RouteDecision.NEW_CONTACT, None

    # ── טיקט פעיל ──

    async def _on_active_ticket(
        self,
        db: AsyncSession,
        connection: Connection,
        ticket: Ticket,
        message: InboundMessage,
        body: str,
    ) -> RouteOutcome:
        tickets = self._tickets(db)
        await tickets.append_inbound(
            ticket,
            body,
            wa_message_id=message.wa_message_id,
            timestamp=message.timestamp,
            contact_name=message.contact_name,
            connection_id=connection.id,
        )
        if ticket.queue_id is not None:
            return RouteOutcome.APPENDED

        # טיקט בלי מחלקה: אולי זו תשובה לתפריט
        queue, _ = await QueueService(db).resolve_choice(connection.id, body)
        if queue is None:
            await db.execute(
                update(Ticket)
                .where(Ticket.id == ticket.id)
                .values(invalid_attempts=Ticket.invalid_attempts + 1)
                .execution_options(synchronize_session=False)
            )
            return RouteOutcome.APPENDED

        result = await db.execute(
            update(Ticket)
            .where(Ticket.id == ticket.id, Ticket.queue_id.is_(None))
            .values(queue_id=queue.id)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(ticket)
        if result.rowcount == 0:
            return RouteOutcome.APPENDED
        await tickets.auto_assign(ticket)
        logger.info(
            "Queue chosen on open ticket",
            extra_data={"ticket_id": ticket.id, "queue_id": queue.id},
        )
        return RouteOutcome.QUEUE_ASSIGNED

    # ── דיאלוג בחירת מחלקה ──

    async def _automation_available(self, db: AsyncSession, connection: Connection) -> tuple[bool, list[Queue]]:
        if not bot_may_speak(connection):
            return False, []
        queues = await QueueService(db).list_for_connection(connection.id)
        return bool(queues), queues

    async def _on_pending(
        self,
        db: AsyncSession,
        connection: Connection,
        record: PendingQueueSelection,
        message: InboundMessage,
        body: str,
    ) -> RouteOutcome:
        manager = PendingSelectionManager(db)
        await manager.hold_message(
            record.contact_number,
            record.connection_id,
            MessageSender.CONTACT,
            body,
            wa_message_id=message.wa_message_id,
            sent_via_whatsapp=True,
        )

        available, queues = await self._automation_available(db, connection)
        if not available:
            # האוטומציה ירדה באמצע הדיאלוג: פותחים טיקט בלי מחלקה ושומרים את ההודעות
            ticket, _ = await self._tickets(db).create_from_pending(record, None)
            await db.commit()
            self.timer_service.cancel(record.contact_number)
            await self.notifier.ticket_update(ticket.to_event())
            return RouteOutcome.TICKET_OPENED

        if not record.initial_sent:
            if self.timer_service.settle_pending(record.contact_number):
                return RouteOutcome.MESSAGE_HELD
            # אין settle ממתין (למשל אחרי restart) - שולחים עכשיו, עדיין פעם אחת בלבד
            await db.commit()
            await self.timer_service.send_initial(db, record, connection)
            return RouteOutcome.MESSAGE_HELD

        choice = QueueService.pick(queues, body)
        if choice is not None:
            return await self._complete_selection(db, connection, record, choice)
        return await self._reject_choice(db, connection, record, queues)

    async def _complete_selection(
        self,
        db: AsyncSession,
        connection: Connection,
        record: PendingQueueSelection,
        queue: Queue,
    ) -> RouteOutcome:
        contact_number = record.contact_number
        tickets = self._tickets(db)
        ticket, _ = await tickets.create_from_pending(record, queue)
        await db.commit()
        self.timer_service.cancel(contact_number)

        if bot_may_speak(connection):
            texts = await ChatbotConfigService(db).get_texts()
            confirmation = render_confirmation(
                texts["confirmation_message"], queue, ticket.protocol_number
            )
            await tickets.outbound.send_ticket_message(ticket, confirmation, MessageSender.BOT)

        await tickets.auto_assign(ticket)
        logger.info(
            "Queue selected, ticket created",
            extra_data={
                "contact": PhoneNumberValidator.mask(contact_number),
                "ticket_id": ticket.id,
                "queue_id": queue.id,
                "protocol_number": ticket.protocol_number,
            },
        )
        return RouteOutcome.TICKET_CREATED

    async def _reject_choice(
        self,
        db: AsyncSession,
        connection: Connection,
        record: PendingQueueSelection,
        queues: list[Queue],
    ) -> RouteOutcome:
        manager = PendingSelectionManager(db)
        contact_number = record.contact_number
        attempts = await manager.increment_invalid_attempts(record.id)
        if attempts is None:
            # הרשומה נסגרה במקביל (timeout)
            return RouteOutcome.INVALID_CHOICE

        if attempts >= settings.PENDING_MAX_INVALID_ATTEMPTS:
            deleted = await manager.delete(record.id, PendingSelectionState.CLOSED_INVALID)
            await manager.discard_held_messages(contact_number, record.connection_id)
            await db.commit()
            self.timer_service.cancel(contact_number)
            if deleted and bot_may_speak(connection):
                texts = await ChatbotConfigService(db).get_texts()
                await self._outbound(db).send_untracked(
                    connection.id, contact_number, texts["closing_message"]
                )
            logger.info(
                "Pending selection closed after invalid choices",
                extra_data={
                    "contact": PhoneNumberValidator.mask(contact_number),
                    "attempts": attempts,
                },
            )
            return RouteOutcome.DIALOGUE_CLOSED

        if bot_may_speak(connection):
            texts = await ChatbotConfigService(db).get_texts()
            prompt = format_queue_menu(texts["invalid_choice_message"], queues)
            await self._outbound(db).send_pending_prompt(contact_number, connection.id, prompt)
        return RouteOutcome.INVALID_CHOICE

    # ── מגע חדש ──

    async def _on_new_contact(
        self,
        db: AsyncSession,
        connection: Connection,
        message: InboundMessage,
        body: str,
    ) -> RouteOutcome:
        available, _ = await self._automation_available(db, connection)
        if not available:
            return await self._open_ticket_directly(db, connection, message, body)

        manager = PendingSelectionManager(db)
        record, created = await manager.create(
            message.contact_number,
            connection.id,
            first_message=body,
            contact_name=message.contact_name,
        )
        if not created:
            if record.connection_id != connection.id:
                # המגע באמצע דיאלוג בחיבור אחר
                return await self._open_ticket_directly(db, connection, message, body)
            return await self._on_pending(db, connection, record, message, body)

        await manager.hold_message(
            record.contact_number,
            connection.id,
            MessageSender.CONTACT,
            body,
            wa_message_id=message.wa_message_id,
            sent_via_whatsapp=True,
        )
        # הטיימרים קוראים את הרשומה ב-session משלהם
        await db.commit()
        self.timer_service.schedule(record)
        return RouteOutcome.DIALOGUE_STARTED

    async def _open_ticket_directly(
        self,
        db: AsyncSession,
        connection: Connection,
        message: InboundMessage,
        body: str,
    ) -> RouteOutcome:
        tickets = self._tickets(db)
        ticket, _ = await tickets.create_ticket(
            message.contact_number,
            connection.id,
            contact_name=message.contact_name,
        )
        await tickets.append_inbound(
            ticket,
            body,
            wa_message_id=message.wa_message_id,
            timestamp=message.timestamp,
        )
        return RouteOutcome.TICKET_OPENED

    # ── אירועים נלווים ──

    async def handle_delivery_ack(self, ack: DeliveryAck) -> bool:
        async with self._session_factory() as db:
            try:
                changed = await self._outbound(db).record_delivery_ack(ack)
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                logger.error(
                    "Failed to record delivery ack",
                    extra_data={"connection_id": ack.connection_id, "error": str(exc)},
                )
                return False
        return changed

    async def on_connection_teardown(self, connection_id: int) -> list[str]:
        """Close every queue-selection dialogue of a torn-down connection"""
        async with self._session_factory() as db:
            contacts = await PendingSelectionManager(db).delete_for_connection(connection_id)
            await db.commit()
        for contact_number in contacts:
            self.timer_service.cancel(contact_number)
        if contacts:
            logger.info(
                "Pending selections closed on teardown",
                extra_data={
                    "connection_id": connection_id,
                    "count": len(contacts),
                    "state": PendingSelectionState.CLOSED_TEARDOWN.value,
                },
            )
        return contacts
