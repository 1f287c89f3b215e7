"""
Connection Model - חשבון WhatsApp אחד (session) שמנותב לטיקטים
"""
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, ForeignKey,
    Enum as SQLEnum, UniqueConstraint,
)

from app.core.clock import utcnow
from app.db.database import Base


class ConnectionStatus(str, enum.Enum):
    """Persisted lifecycle status, owned by the session manager"""
    DISCONNECTED = "DISCONNECTED"
    QR_PENDING = "QR_PENDING"
    CONNECTED = "CONNECTED"


class Connection(Base):
    """חשבון הודעות חיצוני (מספר WhatsApp)"""

    __tablename__ = "connections"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)

    # רק חיבור ברירת מחדל מריץ את הבוט (בחירת מחלקה)
    is_default = Column(Boolean, default=False, nullable=False)
    chatbot_enabled = Column(Boolean, default=True, nullable=False)

    # שעות פעילות "HH:MM"; NULL = פתוח תמיד. end < start = חלון לילי
    start_time = Column(String(5), nullable=True)
    end_time = Column(String(5), nullable=True)

    status = Column(
        SQLEnum(
            ConnectionStatus,
            name="connection_status",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        default=ConnectionStatus.DISCONNECTED,
        nullable=False,
    )

    # תבניות הודעה: פתיחה (גוברת על הודעת הפתיחה של הבוט) ופרידה בסגירת טיקט
    initial_message = Column(Text, nullable=True)
    farewell_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ConnectionQueue(Base):
    """אילו מחלקות חיבור מציע - many-to-many"""

    __tablename__ = "connection_queues"

    id = Column(Integer, primary_key=True)
    connection_id = Column(Integer, ForeignKey("connections.id", ondelete="CASCADE"), nullable=False, index=True)
    queue_id = Column(Integer, ForeignKey("queues.id", ondelete="CASCADE"), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("connection_id", "queue_id", name="uq_connection_queue"),
    )
