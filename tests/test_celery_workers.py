"""
בדיקות ל-Celery Workers - app/workers/tasks.py

מכסה:
- ניקוי cooldowns שפג תוקפם
- ניקוי אירועי webhook ישנים
- ניהול event loop ב-Celery
- לוח הזמנים של beat
"""
from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.db.models.bot_cooldown import BotCooldown
from app.db.models.webhook_event import WebhookEvent


@contextmanager
def _task_session(db_session: AsyncSession):
    """
    מריץ טאסק Celery בתוך ה-loop של הבדיקה.

    run_async מוחלף כך שהטאסק מחזיר את ה-coroutine עצמו (הבדיקה עושה await),
    ו-get_task_session מחזיר את ה-session של הבדיקה במקום engine חדש.
    """
    with patch("app.workers.tasks.run_async", side_effect=lambda coro: coro), \
         patch("app.workers.tasks.get_task_session") as mock_session_ctx:
        mock_session_ctx.return_value.__aenter__ = AsyncMock(return_value=db_session)
        mock_session_ctx.return_value.__aexit__ = AsyncMock(return_value=None)
        yield


# ============================================================================
# ניהול event loop
# ============================================================================


class TestEventLoopManagement:
    """בדיקות ל-get_event_loop ו-run_async"""

    def test_get_event_loop_creates_and_closes(self) -> None:
        """get_event_loop יוצר loop חדש וסוגר אותו"""
        from app.workers.tasks import get_event_loop

        with get_event_loop() as loop:
            assert loop is not None
            assert loop.is_running() is False

        assert loop.is_closed()

    def test_run_async_executes_coroutine(self) -> None:
        """run_async מבצע coroutine ומחזיר תוצאה"""
        from app.workers.tasks import run_async

        async def _coro():
            return 42

        assert run_async(_coro()) == 42


# ============================================================================
# ניקוי cooldowns
# ============================================================================


class TestSweepExpiredCooldowns:

    @pytest.mark.unit
    async def test_sweeps_only_expired(self, db_session: AsyncSession) -> None:
        now = utcnow()
        db_session.add_all([
            BotCooldown(contact_number="5511999990001", cooldown_until=now - timedelta(minutes=1)),
            BotCooldown(contact_number="5511999990002", cooldown_until=now + timedelta(minutes=5)),
        ])
        await db_session.commit()

        from app.workers.tasks import sweep_expired_cooldowns

        with _task_session(db_session):
            result = await sweep_expired_cooldowns()

        assert result == {"deleted": 1}
        remaining = (await db_session.execute(select(BotCooldown.contact_number))).scalars().all()
        assert remaining == ["5511999990002"]

    @pytest.mark.unit
    async def test_nothing_to_sweep(self, db_session: AsyncSession) -> None:
        from app.workers.tasks import sweep_expired_cooldowns

        with _task_session(db_session):
            result = await sweep_expired_cooldowns()

        assert result == {"deleted": 0}


# ============================================================================
# ניקוי אירועי webhook
# ============================================================================


class TestCleanupOldWebhookEvents:
    """בדיקות ל-cleanup_old_webhook_events"""

    @pytest.mark.unit
    async def test_deletes_old_completed_events(self, db_session: AsyncSession) -> None:
        """מוחק רק אירועים ישנים עם status=completed"""
        now = utcnow()
        db_session.add_all([
            WebhookEvent(
                event_id="desk-1:old",
                session="desk-1",
                event_type="message",
                status="completed",
                created_at=now - timedelta(days=14),
            ),
            WebhookEvent(
                event_id="desk-1:new",
                session="desk-1",
                event_type="message",
                status="completed",
                created_at=now - timedelta(days=1),
            ),
            WebhookEvent(
                event_id="desk-1:stuck",
                session="desk-1",
                event_type="message",
                status="processing",
                created_at=now - timedelta(days=14),
            ),
        ])
        await db_session.commit()

        from app.workers.tasks import cleanup_old_webhook_events

        with _task_session(db_session):
            result = await cleanup_old_webhook_events(days=7)

        assert result["deleted"] == 1
        remaining = (await db_session.execute(select(WebhookEvent.event_id))).scalars().all()
        assert sorted(remaining) == ["desk-1:new", "desk-1:stuck"]


# ============================================================================
# beat schedule
# ============================================================================


class TestBeatSchedule:

    @pytest.mark.unit
    def test_periodic_tasks_registered(self) -> None:
        from app.workers.celery_app import celery_app

        tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert tasks == {
            "app.workers.tasks.sweep_expired_cooldowns",
            "app.workers.tasks.cleanup_old_webhook_events",
        }
