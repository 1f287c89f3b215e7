"""
Pending Selection Manager - persistence of queue-selection dialogues.

Every mutation is a single statement whose affected-row count tells the
caller whether it applied, so two handlers racing on the same contact
cannot both win. Does not commit: callers own the transaction.
"""
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.message import MessageSender
from app.db.models.pending_selection import PendingMessage, PendingQueueSelection
from app.state_machine.states import (
    PendingSelectionState,
    PENDING_SELECTION_TRANSITIONS,
    pending_state_of,
)

logger = get_logger(__name__)


class PendingSelectionManager:
    """Manages PendingQueueSelection rows and their held messages"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, contact_number: str) -> Optional[PendingQueueSelection]:
        result = await self.db.execute(
            select(PendingQueueSelection)
            .where(PendingQueueSelection.contact_number == contact_number)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, record_id: int) -> Optional[PendingQueueSelection]:
        result = await self.db.execute(
            select(PendingQueueSelection)
            .where(PendingQueueSelection.id == record_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_state(self, contact_number: str) -> PendingSelectionState:
        return pending_state_of(await self.get(contact_number))

    async def create(
        self,
        contact_number: str,
        connection_id: int,
        first_message: str | None,
        contact_name: str | None = None,
    ) -> tuple[PendingQueueSelection, bool]:
        """
        Create the dialogue record for a contact.

        Uses a savepoint with an IntegrityError fallback, so a concurrent
        creation for the same number returns the existing row instead.

        Returns:
            (record, created)
        """
        try:
            async with self.db.begin_nested():
                record = PendingQueueSelection(
                    contact_number=contact_number,
                    contact_name=contact_name,
                    connection_id=connection_id,
                    first_message=first_message,
                    first_message_at=utcnow(),
                )
                self.db.add(record)
        except IntegrityError:
            logger.info(
                "Pending selection already exists, created concurrently",
                extra_data={"contact": PhoneNumberValidator.mask(contact_number)},
            )
            existing = await self.get(contact_number)
            if existing is None:
                raise
            return existing, False

        logger.info(
            "Pending selection created",
            extra_data={
                "contact": PhoneNumberValidator.mask(contact_number),
                "connection_id": connection_id,
                "record_id": record.id,
            },
        )
        return record, True

    async def mark_initial_sent(self, record_id: int) -> bool:
        """
        Claim the right to send the initial messages.

        ``initial_sent`` goes 0→1 at most once; only the caller that flips it
        gets True.
        """
        result = await self.db.execute(
            update(PendingQueueSelection)
            .where(
                PendingQueueSelection.id == record_id,
                PendingQueueSelection.initial_sent == False,  # noqa: E712
            )
            .values(initial_sent=True)
        )
        applied = result.rowcount == 1
        if applied:
            self._log_transition(
                record_id,
                PendingSelectionState.PENDING_INITIAL,
                PendingSelectionState.PENDING_AWAITING_CHOICE,
            )
        return applied

    async def increment_invalid_attempts(self, record_id: int) -> Optional[int]:
        """
        Count one more invalid reply.

        Returns:
            The new counter, or None when the record no longer exists.
        """
        result = await self.db.execute(
            update(PendingQueueSelection)
            .where(PendingQueueSelection.id == record_id)
            .values(invalid_attempts=PendingQueueSelection.invalid_attempts + 1)
        )
        if result.rowcount == 0:
            return None
        value = await self.db.execute(
            select(PendingQueueSelection.invalid_attempts).where(
                PendingQueueSelection.id == record_id
            )
        )
        return value.scalar_one_or_none()

    async def delete(
        self,
        record_id: int,
        reason: PendingSelectionState,
    ) -> bool:
        """
        Delete the record into one of the terminal states.

        Returns:
            True only for the caller whose delete applied.
        """
        if PENDING_SELECTION_TRANSITIONS.get(reason):
            raise ValueError(f"{reason.value} is not a terminal state")
        result = await self.db.execute(
            delete(PendingQueueSelection).where(PendingQueueSelection.id == record_id)
        )
        applied = result.rowcount == 1
        if applied:
            logger.info(
                "Pending selection closed",
                extra_data={"record_id": record_id, "reason": reason.value},
            )
        return applied

    async def delete_for_connection(self, connection_id: int) -> list[str]:
        """
        Delete every dialogue of a connection (session teardown).

        Returns:
            The contact numbers whose dialogues were removed.
        """
        result = await self.db.execute(
            select(PendingQueueSelection.contact_number).where(
                PendingQueueSelection.connection_id == connection_id
            )
        )
        contacts = list(result.scalars().all())
        if not contacts:
            return []
        await self.db.execute(
            delete(PendingQueueSelection).where(
                PendingQueueSelection.connection_id == connection_id
            )
        )
        await self.db.execute(
            delete(PendingMessage).where(PendingMessage.connection_id == connection_id)
        )
        logger.info(
            "Pending selections removed on teardown",
            extra_data={"connection_id": connection_id, "count": len(contacts)},
        )
        return contacts

    # ── אזור המתנה להודעות ──

    async def hold_message(
        self,
        contact_number: str,
        connection_id: int,
        sender: MessageSender,
        body: str,
        wa_message_id: str | None = None,
        sent_via_whatsapp: bool = False,
    ) -> PendingMessage:
        held = PendingMessage(
            contact_number=contact_number,
            connection_id=connection_id,
            sender=sender,
            body=body,
            wa_message_id=wa_message_id,
            sent_via_whatsapp=sent_via_whatsapp,
            timestamp=utcnow(),
        )
        self.db.add(held)
        await self.db.flush()
        return held

    async def pop_held_messages(
        self,
        contact_number: str,
        connection_id: int,
    ) -> list[PendingMessage]:
        """שליפה ומחיקה של ההודעות הממתינות, בסדר ההגעה המקורי"""
        result = await self.db.execute(
            select(PendingMessage)
            .where(
                PendingMessage.contact_number == contact_number,
                PendingMessage.connection_id == connection_id,
            )
            .order_by(PendingMessage.timestamp, PendingMessage.id)
        )
        held = list(result.scalars().all())
        if held:
            await self.db.execute(
                delete(PendingMessage).where(
                    PendingMessage.id.in_([message.id for message in held])
                )
            )
        return held

    async def discard_held_messages(self, contact_number: str, connection_id: int) -> int:
        result = await self.db.execute(
            delete(PendingMessage).where(
                PendingMessage.contact_number == contact_number,
                PendingMessage.connection_id == connection_id,
            )
        )
        return result.rowcount or 0

    def _log_transition(
        self,
        record_id: int,
        current: PendingSelectionState,
        target: PendingSelectionState,
    ) -> None:
        if target not in PENDING_SELECTION_TRANSITIONS.get(current, []):
            logger.warning(
                "Invalid pending selection transition",
                extra_data={
                    "record_id": record_id,
                    "current_state": current.value,
                    "target_state": target.value,
                },
            )
            return
        logger.info(
            "Pending selection transition",
            extra_data={
                "record_id": record_id,
                "current_state": current.value,
                "target_state": target.value,
            },
        )
