"""
Celery Application Configuration
"""
from celery import Celery

from order_bot.core.config import settings

celery_app = Celery(
    "order_bot",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["order_bot.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Africa/Dar_es_Salaam",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "check-abandoned-carts-hourly": {
        "task": "order_bot.workers.tasks.check_abandoned_carts",
        "schedule": settings.ABANDONED_CART_SCAN_INTERVAL_SECONDS,
    },
    "cleanup-old-webhook-events-daily": {
        "task": "order_bot.workers.tasks.cleanup_old_webhook_events",
        "schedule": 86400.0,  # 24 hours
    },
}
