"""
Cooldown Service - חלון אחרי סגירת טיקט שבו הבוט לא פונה שוב למגע.

לא מבצע commit: הקורא אחראי על גבולות הטרנזקציה.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.bot_cooldown import BotCooldown

logger = get_logger(__name__)


class CooldownService:
    """BotCooldown rows, one per contact"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def start(
        self,
        contact_number: str,
        seconds: int | None = None,
        now: datetime | None = None,
    ) -> datetime:
        """
        Arm (or extend) the cooldown of a contact.

        Returns:
            The new ``cooldown_until``.
        """
        now = now or utcnow()
        duration = settings.BOT_COOLDOWN_SECONDS if seconds is None else seconds
        until = now + timedelta(seconds=duration)

        result = await self.db.execute(
            update(BotCooldown)
            .where(BotCooldown.contact_number == contact_number)
            .values(cooldown_until=until)
        )
        if result.rowcount == 0:
            try:
                async with self.db.begin_nested():
                    self.db.add(BotCooldown(contact_number=contact_number, cooldown_until=until))
            except IntegrityError:
                # נוצר במקביל - מעדכנים את הקיים
                await self.db.execute(
                    update(BotCooldown)
                    .where(BotCooldown.contact_number == contact_number)
                    .values(cooldown_until=until)
                )

        logger.info(
            "Bot cooldown armed",
            extra_data={
                "contact": PhoneNumberValidator.mask(contact_number),
                "seconds": duration,
            },
        )
        return until

    async def is_active(self, contact_number: str, now: datetime | None = None) -> bool:
        now = now or utcnow()
        result = await self.db.execute(
            select(BotCooldown.cooldown_until).where(
                BotCooldown.contact_number == contact_number
            )
        )
        until = result.scalar_one_or_none()
        return until is not None and until > now

    async def clear(self, contact_number: str) -> bool:
        result = await self.db.execute(
            delete(BotCooldown).where(BotCooldown.contact_number == contact_number)
        )
        return result.rowcount > 0

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """מחיקת cooldowns שפג תוקפם - מחזיר כמה נמחקו"""
        now = now or utcnow()
        result = await self.db.execute(
            delete(BotCooldown).where(BotCooldown.cooldown_until <= now)
        )
        return result.rowcount or 0
