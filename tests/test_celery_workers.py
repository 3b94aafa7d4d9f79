"""
בדיקות ל-Celery Workers: order_bot/workers/tasks.py

מכסה:
- סריקת עגלות נטושות עם נעילת Redis (נלקחה / תפוסה / Redis לא זמין)
- שחרור הנעילה גם כשהסריקה נכשלת
- ניקוי אירועי webhook ישנים
- נעילת Redis עם token (redis.asyncio.lock)
- ניהול event loop ב-Celery
- לוח הזמנים של beat

הטאסקים סינכרוניים ופותחים event loop משלהם, לכן הבדיקות כאן sync.
"""
import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from order_bot.core.config import settings
from order_bot.workers import tasks
from order_bot.workers.celery_app import celery_app


def _fake_task_session(session):
    @asynccontextmanager
    async def _session():
        yield session

    return _session


# ============================================================================
# check_abandoned_carts
# ============================================================================


class TestCheckAbandonedCarts:

    def _run(self, *, acquire, scanned=2):
        scanner = MagicMock()
        scanner.scan = AsyncMock(return_value=scanned)
        release = AsyncMock()

        with patch("order_bot.core.redis_client.acquire_lock", acquire), \
                patch("order_bot.core.redis_client.release_lock", release), \
                patch.object(tasks, "get_task_session", _fake_task_session(MagicMock())), \
                patch.object(tasks, "AbandonedCartScanner", return_value=scanner) as scanner_cls:
            result = tasks.check_abandoned_carts()
        return result, scanner_cls, release

    @pytest.mark.unit
    def test_scan_with_lock(self) -> None:
        lock = MagicMock(name="lock")
        acquire = AsyncMock(return_value=lock)

        result, scanner_cls, release = self._run(acquire=acquire, scanned=3)

        assert result == {"skipped": False, "sent": 3}
        acquire.assert_awaited_once_with(tasks.ABANDONED_CART_LOCK_KEY, settings.ABANDONED_CART_LOCK_SECONDS)
        scanner_cls.assert_called_once()
        release.assert_awaited_once_with(lock)

    @pytest.mark.unit
    def test_skipped_when_lock_is_taken(self) -> None:
        result, scanner_cls, release = self._run(acquire=AsyncMock(return_value=None))

        assert result == {"skipped": True, "sent": 0}
        scanner_cls.assert_not_called()
        release.assert_not_awaited()

    @pytest.mark.unit
    def test_scans_without_lock_when_redis_is_down(self) -> None:
        acquire = AsyncMock(side_effect=ConnectionError("redis down"))

        result, scanner_cls, release = self._run(acquire=acquire, scanned=1)

        assert result == {"skipped": False, "sent": 1}
        # לא לקחנו נעילה - אין מה לשחרר
        release.assert_not_awaited()

    @pytest.mark.unit
    def test_lock_released_when_scan_fails(self) -> None:
        lock = MagicMock(name="lock")
        scanner = MagicMock()
        scanner.scan = AsyncMock(side_effect=RuntimeError("db gone"))
        release = AsyncMock()

        with patch("order_bot.core.redis_client.acquire_lock", AsyncMock(return_value=lock)), \
                patch("order_bot.core.redis_client.release_lock", release), \
                patch.object(tasks, "get_task_session", _fake_task_session(MagicMock())), \
                patch.object(tasks, "AbandonedCartScanner", return_value=scanner):
            with pytest.raises(RuntimeError):
                tasks.check_abandoned_carts()

        release.assert_awaited_once_with(lock)

    @pytest.mark.unit
    def test_release_failure_does_not_fail_task(self) -> None:
        scanner = MagicMock()
        scanner.scan = AsyncMock(return_value=0)

        with patch("order_bot.core.redis_client.acquire_lock", AsyncMock(return_value=MagicMock())), \
                patch("order_bot.core.redis_client.release_lock", AsyncMock(side_effect=ConnectionError("x"))), \
                patch.object(tasks, "get_task_session", _fake_task_session(MagicMock())), \
                patch.object(tasks, "AbandonedCartScanner", return_value=scanner):
            result = tasks.check_abandoned_carts()

        assert result == {"skipped": False, "sent": 0}


# ============================================================================
# Redis lock helpers
# ============================================================================


class TestRedisLock:

    @pytest.mark.unit
    async def test_acquire_returns_lock_when_free(self) -> None:
        from order_bot.core import redis_client

        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=True)
        client = MagicMock()
        client.lock.return_value = lock

        with patch.object(redis_client, "get_redis", AsyncMock(return_value=client)):
            assert await redis_client.acquire_lock("scan", 900) is lock

        client.lock.assert_called_once_with("scan", timeout=900, blocking=False)

    @pytest.mark.unit
    async def test_acquire_returns_none_when_held(self) -> None:
        from order_bot.core import redis_client

        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=False)
        client = MagicMock()
        client.lock.return_value = lock

        with patch.object(redis_client, "get_redis", AsyncMock(return_value=client)):
            assert await redis_client.acquire_lock("scan", 900) is None

    @pytest.mark.unit
    async def test_release_of_expired_lock_is_logged_not_raised(self) -> None:
        from redis.exceptions import LockNotOwnedError

        from order_bot.core import redis_client

        lock = MagicMock()
        lock.name = "scan"
        lock.release = AsyncMock(side_effect=LockNotOwnedError("expired"))

        await redis_client.release_lock(lock)

        lock.release.assert_awaited_once()


# ============================================================================
# cleanup_old_webhook_events
# ============================================================================


class TestCleanupOldWebhookEvents:

    @pytest.mark.unit
    def test_deletes_completed_events(self) -> None:
        session = MagicMock()
        session.execute = AsyncMock(return_value=MagicMock(rowcount=4))
        session.commit = AsyncMock()

        with patch.object(tasks, "get_task_session", _fake_task_session(session)):
            result = tasks.cleanup_old_webhook_events(days=3)

        assert result == {"deleted": 4}
        session.commit.assert_awaited_once()
        statement = str(session.execute.call_args[0][0])
        assert "webhook_events" in statement
        assert "status" in statement


# ============================================================================
# Event loop & schedule
# ============================================================================


class TestEventLoop:

    @pytest.mark.unit
    def test_loop_closed_after_use(self) -> None:
        with tasks.get_event_loop() as loop:
            assert loop.run_until_complete(asyncio.sleep(0, result="done")) == "done"
        assert loop.is_closed()

    @pytest.mark.unit
    def test_pending_tasks_are_cancelled(self) -> None:
        with tasks.get_event_loop() as loop:
            pending = loop.create_task(asyncio.sleep(60))
        assert pending.cancelled()

    @pytest.mark.unit
    def test_run_async_returns_result(self) -> None:
        async def _work():
            return 42

        assert tasks.run_async(_work()) == 42


class TestBeatSchedule:

    @pytest.mark.unit
    def test_periodic_tasks_registered(self) -> None:
        schedule = celery_app.conf.beat_schedule
        assert schedule["check-abandoned-carts-hourly"]["task"] == "order_bot.workers.tasks.check_abandoned_carts"
        assert schedule["check-abandoned-carts-hourly"]["schedule"] == settings.ABANDONED_CART_SCAN_INTERVAL_SECONDS
        assert schedule["cleanup-old-webhook-events-daily"]["task"] == (
            "order_bot.workers.tasks.cleanup_old_webhook_events"
        )
