"""
Chatbot Config Service - קריאה ועדכון של טקסטי הבוט (שורה יחידה).
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.chatbot_config import ChatbotConfig, DEFAULT_BOT_TEXTS

logger = get_logger(__name__)


class ChatbotConfigService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_config(self) -> Optional[ChatbotConfig]:
        result = await self.db.execute(select(ChatbotConfig).order_by(ChatbotConfig.id).limit(1))
        return result.scalar_one_or_none()

    async def get_texts(self) -> dict[str, str]:
        """טקסטים שמורים, או ברירות המחדל אם אין שורה"""
        config = await self.get_config()
        if config is None:
            return dict(DEFAULT_BOT_TEXTS)
        texts = config.texts()
        # ערך ריק חוזר לברירת המחדל
        return {key: texts.get(key) or DEFAULT_BOT_TEXTS[key] for key in DEFAULT_BOT_TEXTS}

    async def update_texts(self, **texts: Optional[str]) -> dict[str, str]:
        """Update the given texts; ``None`` leaves a text unchanged"""
        config = await self.get_config()
        if config is None:
            config = ChatbotConfig(**DEFAULT_BOT_TEXTS)
            self.db.add(config)

        changed = []
        for key, value in texts.items():
            if key not in DEFAULT_BOT_TEXTS:
                raise ValueError(f"unknown chatbot text: {key}")
            if value is None:
                continue
            setattr(config, key, value)
            changed.append(key)

        await self.db.commit()
        logger.info("Chatbot texts updated", extra_data={"fields": changed})
        return await self.get_texts()
