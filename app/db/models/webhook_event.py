"""
Webhook Event Model - טבלת idempotency למניעת עיבוד כפול של אירועי gateway.

כל הודעה נכנסת נרשמת לפי מזהה ההודעה ב-WhatsApp. רק אירועים עם
status=completed נחסמים מ-retry; processing ישן או failed מאפשרים עיבוד חוזר.
"""
from sqlalchemy import Column, String, DateTime, Index

from app.core.clock import utcnow
from app.db.database import Base


class WebhookEvent(Base):
    """רשומת idempotency - אירוע שהתקבל מה-gateway"""

    __tablename__ = "webhook_events"

    event_id = Column(String(200), primary_key=True)
    session = Column(String(100), nullable=False)
    event_type = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default="processing")
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )
