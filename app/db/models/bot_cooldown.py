"""
Bot Cooldown Model - חלון שבו הבוט לא פונה שוב למגע אחרי סגירת טיקט
"""
from sqlalchemy import Column, Integer, String, DateTime

from app.core.clock import utcnow
from app.db.database import Base


class BotCooldown(Base):

    __tablename__ = "bot_cooldowns"

    id = Column(Integer, primary_key=True)
    contact_number = Column(String(32), nullable=False, unique=True)
    cooldown_until = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
