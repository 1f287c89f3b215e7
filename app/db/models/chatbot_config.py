"""
Chatbot Config Model - טקסטים של הבוט (שורה אחת בטבלה)
"""
from sqlalchemy import Column, Integer, Text, DateTime

from app.core.clock import utcnow
from app.db.database import Base

DEFAULT_BOT_TEXTS = {
    "welcome_message": "שלום! תודה שפנית אלינו.",
    "queue_selection_message": "לאיזו מחלקה תרצה לפנות? השב עם מספר האפשרות:",
    "invalid_choice_message": "אפשרות לא תקינה. השב עם מספר מהרשימה:",
    "reminder_message": "עדיין כאן? השב עם מספר המחלקה כדי שנוכל לעזור.",
    "closing_message": "לא התקבלה בחירה, השיחה נסגרה. אפשר לכתוב לנו שוב בכל עת.",
    "confirmation_message": "הפנייה שלך נפתחה במחלקת {queue}. מספר פרוטוקול: {protocol}",
}


class ChatbotConfig(Base):
    """Bot texts, a single row"""

    __tablename__ = "chatbot_config"

    id = Column(Integer, primary_key=True)
    welcome_message = Column(Text, nullable=False, default=DEFAULT_BOT_TEXTS["welcome_message"])
    queue_selection_message = Column(Text, nullable=False, default=DEFAULT_BOT_TEXTS["queue_selection_message"])
    invalid_choice_message = Column(Text, nullable=False, default=DEFAULT_BOT_TEXTS["invalid_choice_message"])
    reminder_message = Column(Text, nullable=False, default=DEFAULT_BOT_TEXTS["reminder_message"])
    closing_message = Column(Text, nullable=False, default=DEFAULT_BOT_TEXTS["closing_message"])
    confirmation_message = Column(Text, nullable=False, default=DEFAULT_BOT_TEXTS["confirmation_message"])
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def texts(self) -> dict[str, str]:
        return {key: getattr(self, key) for key in DEFAULT_BOT_TEXTS}
