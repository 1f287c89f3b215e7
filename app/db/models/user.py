"""
User Model - נציגי תמיכה ואדמינים
"""
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, ForeignKey,
    Enum as SQLEnum, UniqueConstraint,
)

from app.core.clock import utcnow
from app.db.database import Base


class UserRole(str, enum.Enum):
    AGENT = "agent"
    ADMIN = "admin"


class User(Base):
    """Support agent"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(200), unique=True, nullable=False, index=True)
    role = Column(
        SQLEnum(
            UserRole,
            name="user_role",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        default=UserRole.AGENT,
        nullable=False,
    )
    is_active = Column(Boolean, default=True, nullable=False)

    # מתעדכן ב-heartbeat ובכל בקשה מאומתת; משמש לדירוג בשיוך אוטומטי
    last_activity_at = Column(DateTime, nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class UserQueue(Base):
    """שיוך נציג למחלקה - many-to-many"""

    __tablename__ = "user_queues"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    queue_id = Column(Integer, ForeignKey("queues.id", ondelete="CASCADE"), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("user_id", "queue_id", name="uq_user_queue"),
    )
