"""
Queue Service - מחלקות של חיבור, תפריט ממוספר ופענוח בחירה.

הסדר (name, id) זהה בין התפריט שנשלח למגע לבין הרשימה שמולה
מאומתת התשובה; אחרת האישור יפנה למחלקה הלא נכונה.
"""
from __future__ import annotations

from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.connection import ConnectionQueue
from app.db.models.queue import Queue
from app.db.models.user import UserQueue


def parse_queue_choice(body: str | None, queue_count: int) -> Optional[int]:
    """
    Interpret a reply as a numbered menu choice.

    The first whitespace-delimited token must be an integer in ``[1, queue_count]``.

    Returns:
        The 1-based choice, or None when the reply is not a valid choice.
    """
    if not body or queue_count < 1:
        return None
    tokens = body.split()
    if not tokens:
        return None
    token = tokens[0]
    if not token.isdecimal():
        return None
    choice = int(token)
    if 1 <= choice <= queue_count:
        return choice
    return None


def format_queue_menu(prompt: str, queues: Sequence[Queue]) -> str:
    lines = [prompt, ""] if prompt else []
    lines.extend(f"{index}. {queue.name}" for index, queue in enumerate(queues, start=1))
    return "\n".join(lines)


class QueueService:
    """Queues offered by connections and agent-queue membership"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_for_connection(self, connection_id: int) -> list[Queue]:
        result = await self.db.execute(
            select(Queue)
            .join(ConnectionQueue, ConnectionQueue.queue_id == Queue.id)
            .where(ConnectionQueue.connection_id == connection_id)
            .order_by(Queue.name, Queue.id)
        )
        return list(result.scalars().all())

    async def resolve_choice(
        self,
        connection_id: int,
        body: str | None,
    ) -> tuple[Optional[Queue], list[Queue]]:
        """
        Map a reply onto the connection's queue list.

        Returns:
            (chosen queue or None, the ordered queue list used for the check)
        """
        queues = await self.list_for_connection(connection_id)
        return self.pick(queues, body), queues

    @staticmethod
    def pick(queues: Sequence[Queue], body: str | None) -> Optional[Queue]:
        """בחירה פוזיציונית מול אותה רשימה שהוצגה למגע"""
        choice = parse_queue_choice(body, len(queues))
        if choice is None:
            return None
        return queues[choice - 1]

    async def get_queue(self, queue_id: int) -> Optional[Queue]:
        return await self.db.get(Queue, queue_id)

    async def queue_ids_for_user(self, user_id: int) -> set[int]:
        result = await self.db.execute(
            select(UserQueue.queue_id).where(UserQueue.user_id == user_id)
        )
        return set(result.scalars().all())
