"""
Ticket Service - יצירה, שיוך ומעברי סטטוס של טיקטים.

מתודות ה-API הציבוריות (update_status, transfer, agent_send_message,
resend_message) מבצעות commit. המתודות שהראוטר משתמש בהן (create_ticket,
create_from_pending, append_inbound, auto_assign) רק מבצעות flush.
"""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.exceptions import (
    InvalidStateTransitionError,
    MessageNotFoundError,
    NotFoundException,
    QueueNotFoundError,
    TicketAccessDeniedError,
    TicketNotFoundError,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator, TextSanitizer
from app.db.models.connection import Connection
from app.db.models.message import Message, MessageSender
from app.db.models.pending_selection import PendingQueueSelection
from app.db.models.queue import Queue
from app.db.models.ticket import Ticket, TicketStatus
from app.db.models.user import User, UserQueue
from app.domain.services.business_hours import bot_may_speak
from app.domain.services.cooldown_service import CooldownService
from app.domain.services.notification_service import NotificationService
from app.domain.services.outbound_service import OutboundService
from app.domain.services.queue_service import QueueService
from app.state_machine.manager import PendingSelectionManager
from app.state_machine.states import PendingSelectionState, is_valid_ticket_transition

if TYPE_CHECKING:
    from app.domain.services.session_manager import SessionLifecycleManager

logger = get_logger(__name__)


def format_protocol_number(ticket_id: int, created_at: datetime) -> str:
    """YYYYMMDD של יום הפתיחה + מזהה הטיקט בריפוד של 6 ספרות"""
    return f"{created_at:%Y%m%d}{ticket_id:06d}"


class TicketService:
    """Ticket lifecycle operations"""

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationService,
        session_manager: Optional["SessionLifecycleManager"] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.outbound = OutboundService(db, session_manager, notifier)

    # ── שאילתות ──

    async def get_ticket(self, ticket_id: int) -> Optional[Ticket]:
        return await self.db.get(Ticket, ticket_id)

    async def _get_or_raise(self, ticket_id: int) -> Ticket:
        ticket = await self.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    async def find_active_ticket(
        self,
        contact_number: str,
        connection_id: int,
    ) -> Optional[Ticket]:
        """
        The open ticket an inbound message belongs to.

        Either a non-resolved ticket of this contact on this connection, or an
        unassigned manual ticket opened for the contact. The connection's own
        ticket wins when both exist.
        """
        result = await self.db.execute(
            select(Ticket)
            .where(
                Ticket.contact_number == contact_number,
                Ticket.status != TicketStatus.RESOLVED,
                or_(
                    Ticket.connection_id == connection_id,
                    and_(Ticket.is_manual == True, Ticket.user_id.is_(None)),  # noqa: E712
                ),
            )
            .order_by(Ticket.is_manual, Ticket.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ── יצירה ──

    async def create_ticket(
        self,
        contact_number: str,
        connection_id: Optional[int],
        queue_id: Optional[int] = None,
        contact_name: Optional[str] = None,
        user_id: Optional[int] = None,
        is_manual: bool = False,
    ) -> tuple[Ticket, bool]:
        """
        Open a ticket and issue its protocol number.

        A concurrent creation for the same contact and connection hits the
        partial unique index; the already open ticket is returned instead.

        Returns:
            (ticket, created)
        """
        try:
            async with self.db.begin_nested():
                ticket = Ticket(
                    contact_number=contact_number,
                    contact_name=contact_name,
                    connection_id=connection_id,
                    queue_id=queue_id,
                    user_id=user_id,
                    is_manual=is_manual,
                    status=TicketStatus.PENDING,
                )
                self.db.add(ticket)
        except IntegrityError:
            if connection_id is None:
                raise
            existing = await self.find_active_ticket(contact_number, connection_id)
            if existing is None:
                raise
            logger.info(
                "Open ticket already exists, reusing it",
                extra_data={
                    "ticket_id": existing.id,
                    "contact": PhoneNumberValidator.mask(contact_number),
                },
            )
            return existing, False

        await self.assign_protocol_number(ticket)
        logger.info(
            "Ticket created",
            extra_data={
                "ticket_id": ticket.id,
                "connection_id": connection_id,
                "queue_id": queue_id,
                "protocol_number": ticket.protocol_number,
            },
        )
        return ticket, True

    async def assign_protocol_number(self, ticket: Ticket) -> str:
        """מספר פרוטוקול נקבע פעם אחת בלבד"""
        protocol = format_protocol_number(ticket.id, ticket.created_at or utcnow())
        await self.db.execute(
            update(Ticket)
            .where(Ticket.id == ticket.id, Ticket.protocol_number.is_(None))
            .values(protocol_number=protocol)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(ticket)
        return ticket.protocol_number

    async def create_from_pending(
        self,
        record: PendingQueueSelection,
        queue: Optional[Queue],
    ) -> tuple[Ticket, bool]:
        """
        Turn a finished queue-selection dialogue into a ticket.

        Held messages move into the ticket in arrival order and the pending
        record is deleted in the same transaction. Without a queue the ticket
        is opened unrouted (automation became unavailable mid-dialogue).

        Returns:
            (ticket, created)
        """
        manager = PendingSelectionManager(self.db)
        ticket, created = await self.create_ticket(
            record.contact_number,
            record.connection_id,
            queue_id=queue.id if queue else None,
            contact_name=record.contact_name,
        )
        if queue is not None and not created and ticket.queue_id is None:
            ticket.queue_id = queue.id

        held = await manager.pop_held_messages(record.contact_number, record.connection_id)
        last_contact: Optional[Message] = None
        unread = 0
        for item in held:
            message = Message(
                ticket_id=ticket.id,
                sender=item.sender,
                body=item.body,
                timestamp=item.timestamp,
                wa_message_id=item.wa_message_id,
                sent_via_whatsapp=item.sent_via_whatsapp,
                delivered=item.delivered,
            )
            self.db.add(message)
            if item.sender == MessageSender.CONTACT:
                last_contact = message
                unread += 1

        if last_contact is not None:
            ticket.last_message = last_contact.body
            ticket.last_message_at = last_contact.timestamp
            ticket.unread_messages = (ticket.unread_messages or 0) + unread

        await manager.delete(record.id, PendingSelectionState.TICKET_CREATED)
        await self.db.flush()

        logger.info(
            "Ticket created from queue selection",
            extra_data={
                "ticket_id": ticket.id,
                "queue_id": ticket.queue_id,
                "migrated_messages": len(held),
            },
        )
        return ticket, created

    # ── הודעות נכנסות ──

    async def append_inbound(
        self,
        ticket: Ticket,
        body: str,
        wa_message_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        contact_name: Optional[str] = None,
        connection_id: Optional[int] = None,
    ) -> Message:
        """Store a contact message on an open ticket and bump its counters"""
        message = Message(
            ticket_id=ticket.id,
            sender=MessageSender.CONTACT,
            body=body,
            timestamp=timestamp or utcnow(),
            wa_message_id=wa_message_id,
            sent_via_whatsapp=True,
        )
        self.db.add(message)
        await self.db.flush()

        values = {
            "last_message": body,
            "last_message_at": message.timestamp,
            "is_on_hold": False,
        }
        # נציג שכבר מטפל רואה את ההודעה בזמן אמת
        if ticket.status != TicketStatus.ATTENDING:
            values["unread_messages"] = Ticket.unread_messages + 1
        if contact_name and not ticket.contact_name:
            values["contact_name"] = contact_name
        # טיקט ידני שהמגע כתב אליו מקבל את החיבור, כדי שתשובות יישלחו
        if ticket.is_manual and connection_id is not None:
            values["connection_id"] = connection_id
            values["is_manual"] = False

        await self.db.execute(
            update(Ticket)
            .where(Ticket.id == ticket.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(ticket)

        await self.notifier.new_message(message.to_event())
        await self.notifier.ticket_update(ticket.to_event())
        return message

    # ── שיוך אוטומטי ──

    async def find_eligible_agent(self, queue_id: int) -> Optional[User]:
        """נציג פעיל במחלקה, הפעיל ביותר לאחרונה קודם"""
        result = await self.db.execute(
            select(User)
            .join(UserQueue, UserQueue.user_id == User.id)
            .where(UserQueue.queue_id == queue_id, User.is_active == True)  # noqa: E712
            .order_by(User.last_activity_at.desc().nulls_last(), User.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def auto_assign(self, ticket: Ticket) -> Optional[User]:
        """
        Assign an agent from the ticket's queue.

        Publishes a ticket update either way; without an eligible agent the
        update carries only the queue.
        """
        agent = None
        if ticket.user_id is None and ticket.queue_id is not None:
            candidate = await self.find_eligible_agent(ticket.queue_id)
            if candidate is not None:
                result = await self.db.execute(
                    update(Ticket)
                    .where(Ticket.id == ticket.id, Ticket.user_id.is_(None))
                    .values(user_id=candidate.id)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    agent = candidate
                await self.db.refresh(ticket)

        event = ticket.to_event()
        if agent is not None:
            event["assigned_user_name"] = agent.name
            logger.info(
                "Ticket auto-assigned",
                extra_data={"ticket_id": ticket.id, "user_id": agent.id, "queue_id": ticket.queue_id},
            )
        await self.notifier.ticket_update(event)
        return agent

    # ── הרשאות ──

    async def check_access(self, ticket: Ticket, user: User) -> tuple[bool, str]:
        """
        Whether an agent may change this ticket.

        Admins may act on any ticket. Otherwise the agent must own it, or it
        must be unassigned and either have no queue or sit in one of the
        agent's queues.
        """
        if user.is_admin:
            return True, "admin"
        if ticket.user_id == user.id:
            return True, "owner"
        if ticket.user_id is not None:
            return False, "Ticket is assigned to another agent"
        if ticket.queue_id is None:
            return True, "unassigned"
        queue_ids = await QueueService(self.db).queue_ids_for_user(user.id)
        if ticket.queue_id in queue_ids:
            return True, "queue member"
        return False, "Ticket belongs to a queue the agent is not a member of"

    async def _require_access(self, ticket: Ticket, user: User) -> None:
        allowed, reason = await self.check_access(ticket, user)
        if not allowed:
            logger.warning(
                "Ticket access denied",
                extra_data={"ticket_id": ticket.id, "user_id": user.id, "reason": reason},
            )
            raise TicketAccessDeniedError(ticket.id, user.id, reason)

    # ── מעברי סטטוס ──

    async def update_status(
        self,
        ticket_id: int,
        user: User,
        status: TicketStatus,
        on_hold: Optional[bool] = None,
    ) -> tuple[bool, str, Ticket]:
        """
        Move a ticket to a new status on behalf of an agent.

        Raises:
            TicketNotFoundError, TicketAccessDeniedError, InvalidStateTransitionError

        Returns:
            (success, message, ticket). A claim lost to another agent is a
            normal negative result.
        """
        ticket = await self._get_or_raise(ticket_id)
        await self._require_access(ticket, user)

        current = ticket.status
        if status == current and status != TicketStatus.PENDING:
            return True, "Status unchanged", ticket
        if not is_valid_ticket_transition(current, status):
            raise InvalidStateTransitionError(current.value, status.value, ticket_id)

        if status == TicketStatus.ATTENDING:
            success, message = await self._claim(ticket, user)
        elif status == TicketStatus.PENDING:
            success, message = await self._set_pending(ticket, bool(on_hold))
        else:
            success, message = await self._resolve(ticket)

        if not success:
            await self.db.rollback()
            await self.db.refresh(ticket)
            return False, message, ticket

        await self.db.commit()
        await self.notifier.ticket_update(ticket.to_event())
        logger.info(
            "Ticket status changed",
            extra_data={
                "ticket_id": ticket_id,
                "user_id": user.id,
                "current_state": current.value,
                "target_state": status.value,
            },
        )
        return True, message, ticket

    async def _claim(self, ticket: Ticket, user: User) -> tuple[bool, str]:
        """קבלת טיקט לטיפול - אטומית מול נציג אחר שמנסה במקביל"""
        result = await self.db.execute(
            update(Ticket)
            .where(
                Ticket.id == ticket.id,
                Ticket.status != TicketStatus.RESOLVED,
                or_(Ticket.user_id.is_(None), Ticket.user_id == user.id),
            )
            .values(
                status=TicketStatus.ATTENDING,
                user_id=user.id,
                is_on_hold=False,
                unread_messages=0,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info(
                "Ticket claim rejected, already taken",
                extra_data={"ticket_id": ticket.id, "user_id": user.id},
            )
            return False, "Ticket already claimed by another agent"
        await self.db.refresh(ticket)
        return True, "Ticket claimed"

    async def _set_pending(self, ticket: Ticket, on_hold: bool) -> tuple[bool, str]:
        reopening = ticket.status == TicketStatus.RESOLVED
        try:
            async with self.db.begin_nested():
                await self.db.execute(
                    update(Ticket)
                    .where(Ticket.id == ticket.id)
                    .values(
                        status=TicketStatus.PENDING,
                        is_on_hold=on_hold,
                        resolved_at=None,
                    )
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError:
            # פתיחה מחדש כשכבר קיים טיקט פתוח לאותו מגע בחיבור
            return False, "Another open ticket already exists for this contact"
        await self.db.refresh(ticket)
        return True, "Ticket reopened" if reopening else "Ticket moved to pending"

    async def _resolve(self, ticket: Ticket) -> tuple[bool, str]:
        await self.db.execute(
            update(Ticket)
            .where(Ticket.id == ticket.id)
            .values(status=TicketStatus.RESOLVED, is_on_hold=False, resolved_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(ticket)
        await self._send_farewell(ticket)
        await CooldownService(self.db).start(ticket.contact_number)
        return True, "Ticket resolved"

    async def _send_farewell(self, ticket: Ticket) -> None:
        if ticket.is_manual or ticket.connection_id is None:
            return
        connection = await self.db.get(Connection, ticket.connection_id)
        if connection is None or not connection.farewell_message:
            return
        if not bot_may_speak(connection):
            logger.debug(
                "Farewell skipped, automation not allowed",
                extra_data={"ticket_id": ticket.id, "connection_id": connection.id},
            )
            return
        await self.outbound.send_ticket_message(ticket, connection.farewell_message, MessageSender.BOT)

    # ── העברה ──

    async def transfer(
        self,
        ticket_id: int,
        user: User,
        queue_id: int,
        target_user_id: Optional[int] = None,
        keep_history: bool = True,
    ) -> tuple[Ticket, str]:
        """
        Move a ticket to another queue, optionally to a specific agent.

        With ``keep_history`` false the current ticket is resolved and a new
        ticket with a new protocol number is opened for the same contact.

        Returns:
            (ticket now handling the contact, message)
        """
        ticket = await self._get_or_raise(ticket_id)
        await self._require_access(ticket, user)
        if ticket.status == TicketStatus.RESOLVED:
            raise ValidationException("Cannot transfer a resolved ticket", field="status")

        queue = await QueueService(self.db).get_queue(queue_id)
        if queue is None:
            raise QueueNotFoundError(queue_id)
        if target_user_id is not None:
            target = await self.db.get(User, target_user_id)
            if target is None or not target.is_active:
                raise NotFoundException("User", target_user_id)

        if keep_history:
            await self.db.execute(
                update(Ticket)
                .where(Ticket.id == ticket.id)
                .values(
                    queue_id=queue.id,
                    user_id=target_user_id,
                    status=TicketStatus.PENDING,
                    is_on_hold=False,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.refresh(ticket)
            handling = ticket
            message = "Ticket transferred"
        else:
            await self.db.execute(
                update(Ticket)
                .where(Ticket.id == ticket.id)
                .values(status=TicketStatus.RESOLVED, is_on_hold=False, resolved_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.db.refresh(ticket)
            await self.notifier.ticket_update(ticket.to_event())
            handling, _ = await self.create_ticket(
                ticket.contact_number,
                ticket.connection_id,
                queue_id=queue.id,
                contact_name=ticket.contact_name,
                user_id=target_user_id,
                is_manual=ticket.is_manual,
            )
            message = "Ticket transferred to a new ticket"

        if handling.user_id is None:
            await self.auto_assign(handling)
        else:
            await self.notifier.ticket_update(handling.to_event())
        await self.db.commit()

        logger.info(
            "Ticket transferred",
            extra_data={
                "ticket_id": ticket.id,
                "new_ticket_id": handling.id,
                "queue_id": queue.id,
                "target_user_id": target_user_id,
                "keep_history": keep_history,
            },
        )
        return handling, message

    # ── הודעות נציג ──

    async def agent_send_message(
        self,
        ticket_id: int,
        user: User,
        body: str,
    ) -> tuple[Message, bool]:
        """
        Persist an agent reply, then send it best-effort.

        Returns:
            (message, sent)
        """
        ticket = await self._get_or_raise(ticket_id)
        await self._require_access(ticket, user)
        if ticket.status == TicketStatus.RESOLVED:
            raise ValidationException("Cannot reply on a resolved ticket", field="status")
        body = TextSanitizer.sanitize(body or "")
        if not body:
            raise ValidationException("Message body is empty", field="body")

        message, sent = await self.outbound.send_ticket_message(
            ticket, body, MessageSender.USER, user_id=user.id
        )
        ticket.last_message = message.body
        ticket.last_message_at = message.timestamp
        await self.db.commit()
        await self.notifier.ticket_update(ticket.to_event())
        return message, sent

    async def resend_message(self, message_id: int, user: User) -> tuple[Message, bool]:
        """שליחה חוזרת של הודעת נציג/בוט שלא נשלחה"""
        message = await self.db.get(Message, message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        if message.sender == MessageSender.CONTACT:
            raise ValidationException("Contact messages cannot be resent", field="message_id")
        ticket = await self._get_or_raise(message.ticket_id)
        await self._require_access(ticket, user)

        sent = await self.outbound.resend(message, ticket)
        await self.db.commit()
        return message, sent
