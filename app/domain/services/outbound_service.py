"""
Outbound Service - שליחת הודעות למגע דרך ה-session של החיבור.

הכלל: קודם שומרים, אחר כך שולחים. כשלון שליחה לא מבטל את השמירה;
ההודעה נשארת עם sent_via_whatsapp = 0 וניתן לשלוח אותה שוב.
לא מבצע commit: הקורא אחראי על גבולות הטרנזקציה.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import TransportError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator, TextSanitizer
from app.db.models.message import Message, MessageSender
from app.db.models.pending_selection import PendingMessage
from app.db.models.ticket import Ticket
from app.domain.services.notification_service import NotificationService
from app.domain.services.transport.base_transport import DeliveryAck
from app.domain.services.transport.gateway_transport import DELIVERED_ACK_LEVEL
from app.state_machine.manager import PendingSelectionManager

if TYPE_CHECKING:
    from app.domain.services.session_manager import SessionLifecycleManager

logger = get_logger(__name__)


class OutboundService:
    """Persist-then-send for ticket messages and dialogue prompts"""

    def __init__(
        self,
        db: AsyncSession,
        session_manager: Optional["SessionLifecycleManager"],
        notifier: NotificationService,
    ):
        self.db = db
        self.session_manager = session_manager
        self.notifier = notifier

    async def deliver(
        self,
        connection_id: Optional[int],
        contact_number: str,
        body: str,
    ) -> tuple[bool, Optional[str]]:
        """
        Best-effort send.

        Returns:
            (sent, wa_message_id)
        """
        if connection_id is None or self.session_manager is None:
            return False, None
        try:
            wa_message_id = await self.session_manager.send_message(
                connection_id, contact_number, body
            )
        except TransportError as exc:
            logger.warning(
                "Outbound send failed, message kept unsent",
                extra_data={
                    "connection_id": connection_id,
                    "contact": PhoneNumberValidator.mask(contact_number),
                    "error_code": exc.error_code.value,
                    "error": exc.message,
                },
            )
            return False, None
        return True, wa_message_id

    async def send_ticket_message(
        self,
        ticket: Ticket,
        body: str,
        sender: MessageSender,
        user_id: Optional[int] = None,
    ) -> tuple[Message, bool]:
        """
        Persist a message on the ticket and try to deliver it.

        Manual tickets have no connection; their messages are stored only.

        Returns:
            (message, sent)
        """
        message = Message(
            ticket_id=ticket.id,
            sender=sender,
            user_id=user_id,
            body=TextSanitizer.sanitize(body),
            sent_via_whatsapp=False,
        )
        self.db.add(message)
        await self.db.flush()
        await self.notifier.new_message(message.to_event())

        if ticket.is_manual:
            return message, False

        sent = await self._send_persisted(message, ticket)
        return message, sent

    async def resend(self, message: Message, ticket: Ticket) -> bool:
        """שליחה חוזרת של הודעה שלא נשלחה"""
        if message.sent_via_whatsapp:
            return True
        if ticket.is_manual:
            return False
        return await self._send_persisted(message, ticket)

    async def _send_persisted(self, message: Message, ticket: Ticket) -> bool:
        sent, wa_message_id = await self.deliver(
            ticket.connection_id, ticket.contact_number, message.body
        )
        if not sent:
            return False

        message.sent_via_whatsapp = True
        message.wa_message_id = wa_message_id
        await self.db.flush()
        await self.notifier.message_update(
            message.id, sent_via_whatsapp=True, wa_message_id=wa_message_id
        )
        return True

    async def send_pending_prompt(
        self,
        contact_number: str,
        connection_id: int,
        body: str,
    ) -> bool:
        """
        Send a bot prompt to a contact that has no ticket yet.

        The prompt goes to the holding area so it shows up in the ticket
        history once the dialogue turns into a ticket.
        """
        sent, wa_message_id = await self.deliver(connection_id, contact_number, body)
        await PendingSelectionManager(self.db).hold_message(
            contact_number,
            connection_id,
            MessageSender.BOT,
            body,
            wa_message_id=wa_message_id,
            sent_via_whatsapp=sent,
        )
        return sent

    async def send_untracked(
        self,
        connection_id: int,
        contact_number: str,
        body: str,
    ) -> bool:
        """הודעת בוט שלא נשמרת בשום טיקט (סגירת דיאלוג)"""
        sent, _ = await self.deliver(connection_id, contact_number, body)
        return sent

    async def record_delivery_ack(self, ack: DeliveryAck) -> bool:
        """
        Mark a message delivered.

        ``delivered`` moves 0→1 once; repeated or lower acks are no-ops.

        Returns:
            True when this ack flipped the flag.
        """
        if ack.ack_level < DELIVERED_ACK_LEVEL:
            return False
        result = await self.db.execute(
            update(Message)
            .where(
                Message.wa_message_id == ack.wa_message_id,
                Message.delivered == False,  # noqa: E712
            )
            .values(delivered=True)
            .returning(Message.id)
        )
        message_id = result.scalar_one_or_none()
        if message_id is None:
            return await self._record_held_ack(ack)
        await self.notifier.message_update(message_id, delivered=True)
        return True

    async def _record_held_ack(self, ack: DeliveryAck) -> bool:
        """ack להודעת דיאלוג שעדיין באזור ההמתנה; הדגל עובר לטיקט במעבר"""
        result = await self.db.execute(
            update(PendingMessage)
            .where(
                PendingMessage.wa_message_id == ack.wa_message_id,
                PendingMessage.delivered == False,  # noqa: E712
            )
            .values(delivered=True)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return False
        logger.debug(
            "Delivery ack recorded on held message",
            extra_data={"connection_id": ack.connection_id, "wa_message_id": ack.wa_message_id},
        )
        return True
