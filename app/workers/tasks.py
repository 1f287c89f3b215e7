"""
Celery Tasks - תחזוקה מחזורית

כל task רץ ב-event loop משלו עם engine משלו (get_task_session),
כי Celery worker לא משתף loop בין tasks.
"""
import asyncio
from contextlib import contextmanager
from datetime import timedelta

from redis.exceptions import RedisError
from sqlalchemy import delete

from app.workers.celery_app import celery_app
from app.core.clock import utcnow
from app.core.logging import get_logger, log_async_operation, set_correlation_id
from app.db.database import get_task_session
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.cooldown_service import CooldownService

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop, אחרת ההרצה הבאה
            # תקבל client שמחובר ל-event loop סגור
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except (RedisError, OSError) as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@log_async_operation("sweep_expired_cooldowns")
async def _sweep_cooldowns() -> dict:
    async with get_task_session() as db:
        deleted = await CooldownService(db).sweep_expired()
        await db.commit()
    if deleted:
        logger.info("Expired cooldowns swept", extra_data={"deleted": deleted})
    return {"deleted": deleted}


@celery_app.task(name="app.workers.tasks.sweep_expired_cooldowns")
def sweep_expired_cooldowns():
    """מחיקת cooldowns שפג תוקפם"""
    return run_async(_sweep_cooldowns())


@celery_app.task(name="app.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int = 7):
    """ניקוי רשומות ישנות מטבלת webhook_events (idempotency)"""

    async def _cleanup():
        async with get_task_session() as db:
            cutoff = utcnow() - timedelta(days=days)

            result = await db.execute(
                delete(WebhookEvent).where(
                    WebhookEvent.status == "completed",
                    WebhookEvent.created_at < cutoff,
                )
            )
            deleted = result.rowcount

            await db.commit()
            logger.info(
                "Cleaned up old webhook events",
                extra_data={"deleted": deleted, "cutoff_days": days},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
