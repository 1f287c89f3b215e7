"""
Message Model - הודעות בתוך טיקט
"""
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, ForeignKey,
    Enum as SQLEnum, Index,
)

from app.core.clock import utcnow
from app.db.database import Base


class MessageSender(str, enum.Enum):
    CONTACT = "contact"
    BOT = "bot"
    USER = "user"


class Message(Base):
    """Ticket message"""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False)
    sender = Column(
        SQLEnum(
            MessageSender,
            name="message_sender",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    body = Column(Text, nullable=False)
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    # סימוני משלוח; delivered עובר 0→1 פעם אחת בלבד (ack מהגטוויי)
    sent_via_whatsapp = Column(Boolean, default=False, nullable=False)
    wa_message_id = Column(String(128), nullable=True, unique=True)
    delivered = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_messages_ticket_timestamp", "ticket_id", "timestamp"),
    )

    def to_event(self) -> dict:
        """Payload for new-message events"""
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "sender": self.sender.value if self.sender else None,
            "user_id": self.user_id,
            "body": self.body,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "sent_via_whatsapp": self.sent_via_whatsapp,
            "delivered": self.delivered,
        }
