"""
Celery Tasks - periodic background work

- סריקת עגלות נטושות ושליחת תזכורות
- ניקוי טבלת idempotency של webhooks
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import delete as sa_delete

from order_bot.core.config import settings
from order_bot.core.logging import get_logger, set_correlation_id
from order_bot.db.database import get_task_session
from order_bot.db.models.webhook_event import WebhookEvent
from order_bot.domain.services.abandoned_cart_service import AbandonedCartScanner
from order_bot.workers.celery_app import celery_app

logger = get_logger(__name__)

ABANDONED_CART_LOCK_KEY = "order_bot:abandoned_cart_scan"


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
            # סגירת Redis singleton לפני סגירת ה-loop - מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from order_bot.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
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
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="order_bot.workers.tasks.check_abandoned_carts")
def check_abandoned_carts() -> dict:
    """
    סריקת עגלות נטושות.

    נעילת Redis (עם token של הבעלים) מונעת שתי סריקות חופפות כשה-beat מתזמן
    הרצה חדשה לפני שהקודמת הסתיימה. אם Redis לא זמין, הסריקה רצה בכל
    זאת - נעילת השורה ב-DB ובדיקת חותמת הזמן מונעות תזכורת כפולה.
    """
    from order_bot.core.redis_client import acquire_lock, release_lock

    async def _scan() -> dict:
        lock = None
        try:
            lock = await acquire_lock(ABANDONED_CART_LOCK_KEY, settings.ABANDONED_CART_LOCK_SECONDS)
            if lock is None:
                logger.info("Abandoned cart scan already running, skipping")
                return {"skipped": True, "sent": 0}
        except Exception as e:
            logger.warning(
                "Redis lock unavailable, scanning without it",
                extra_data={"error": str(e)},
            )

        try:
            async with get_task_session() as db:
                sent = await AbandonedCartScanner(db).scan()
            return {"skipped": False, "sent": sent}
        finally:
            if lock is not None:
                try:
                    await release_lock(lock)
                except Exception as e:
                    # Redis נפל באמצע - ה-TTL ישחרר את הנעילה
                    logger.warning(
                        "Failed to release abandoned cart lock",
                        extra_data={"error": str(e)},
                    )

    return run_async(_scan())


@celery_app.task(name="order_bot.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int = 7) -> dict:
    """ניקוי רשומות ישנות מטבלת webhook_events (idempotency)"""

    async def _cleanup() -> dict:
        async with get_task_session() as db:
            cutoff = datetime.utcnow() - timedelta(days=days)

            result = await db.execute(
                sa_delete(WebhookEvent).where(
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
