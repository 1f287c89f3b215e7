"""
Ticket Model - פנייה מהמגע הראשון ועד לסגירה
"""
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, ForeignKey,
    Enum as SQLEnum, Index, text,
)

from app.core.clock import utcnow
from app.db.database import Base


class TicketStatus(str, enum.Enum):
    PENDING = "pending"
    ATTENDING = "attending"
    RESOLVED = "resolved"


class Ticket(Base):
    """Support ticket"""

    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True, index=True)

    contact_name = Column(String(150), nullable=True)
    contact_number = Column(String(32), nullable=False, index=True)

    status = Column(
        SQLEnum(
            TicketStatus,
            name="ticket_status",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        default=TicketStatus.PENDING,
        nullable=False,
        index=True,
    )
    is_on_hold = Column(Boolean, default=False, nullable=False)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    queue_id = Column(Integer, ForeignKey("queues.id"), nullable=True, index=True)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=True, index=True)

    # טיקט ידני = נפתח ע"י נציג ללא חיבור; הבוט לא שולח אליו הודעות
    is_manual = Column(Boolean, default=False, nullable=False)

    # YYYYMMDD + מזהה בן 6 ספרות; נקבע פעם אחת
    protocol_number = Column(String(20), nullable=True, unique=True)

    invalid_attempts = Column(Integer, default=0, nullable=False)

    last_message = Column(Text, nullable=True)
    last_message_at = Column(DateTime, nullable=True)
    unread_messages = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # לכל היותר טיקט פתוח אחד לכל (מספר, חיבור)
        Index(
            "uq_tickets_open_contact_connection",
            "contact_number",
            "connection_id",
            unique=True,
            sqlite_where=text("status != 'resolved'"),
            postgresql_where=text("status != 'resolved'"),
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.status != TicketStatus.RESOLVED

    def to_event(self) -> dict:
        """Payload for ticket_update events"""
        return {
            "id": self.id,
            "status": self.status.value if self.status else None,
            "user_id": self.user_id,
            "queue_id": self.queue_id,
            "connection_id": self.connection_id,
            "is_on_hold": self.is_on_hold,
            "protocol_number": self.protocol_number,
            "contact_number": self.contact_number,
            "unread_messages": self.unread_messages,
            "last_message": self.last_message,
        }
