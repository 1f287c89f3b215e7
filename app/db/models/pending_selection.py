"""
Pending Queue Selection Models

PendingQueueSelection: מגע שכתב אבל עוד לא בחר מחלקה. רשומה אחת לכל מספר.
PendingMessage: אזור המתנה להודעות הדיאלוג, שמועברות לטיקט כשנוצר.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, ForeignKey, Index, Enum as SQLEnum

from app.core.clock import utcnow
from app.db.database import Base
from app.db.models.message import MessageSender


class PendingQueueSelection(Base):
    """Queue-selection dialogue in progress"""

    __tablename__ = "pending_queue_selections"

    id = Column(Integer, primary_key=True, index=True)
    contact_number = Column(String(32), nullable=False, unique=True)
    contact_name = Column(String(150), nullable=True)
    connection_id = Column(Integer, ForeignKey("connections.id", ondelete="CASCADE"), nullable=False, index=True)

    first_message = Column(Text, nullable=True)
    first_message_at = Column(DateTime, default=utcnow, nullable=False)

    invalid_attempts = Column(Integer, default=0, nullable=False)
    # 0→1 פעם אחת בדיוק (UPDATE ... WHERE initial_sent = false)
    initial_sent = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow)


class PendingMessage(Base):
    """Message held until the dialogue turns into a ticket"""

    __tablename__ = "pending_messages"

    id = Column(Integer, primary_key=True)
    contact_number = Column(String(32), nullable=False)
    connection_id = Column(Integer, ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    sender = Column(
        SQLEnum(
            MessageSender,
            name="message_sender",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    body = Column(Text, nullable=False)
    wa_message_id = Column(String(128), nullable=True)
    sent_via_whatsapp = Column(Boolean, default=False, nullable=False)
    # ack של הגטוויי מגיע לרוב עוד לפני שהדיאלוג הופך לטיקט
    delivered = Column(Boolean, default=False, nullable=False)
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_pending_messages_contact_connection", "contact_number", "connection_id", "id"),
    )
