"""
Queue Model - מחלקה שאליה מנותבים טיקטים
"""
from sqlalchemy import Column, Integer, String, DateTime

from app.core.clock import utcnow
from app.db.database import Base


class Queue(Base):
    """Department offered to contacts in the numbered menu"""

    __tablename__ = "queues"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    color = Column(String(7), nullable=True)  # לדשבורד בלבד
    created_at = Column(DateTime, default=utcnow)
