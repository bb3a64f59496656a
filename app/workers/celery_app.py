"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "call_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-async-tasks-every-10-seconds": {
        "task": "app.workers.tasks.process_async_tasks",
        "schedule": 10.0,
    },
    "sync-ringover-calls-hourly": {
        "task": "app.workers.tasks.sync_ringover_calls",
        "schedule": float(settings.RINGOVER_SYNC_INTERVAL_SECONDS),
    },
    "cleanup-rate-limit-buckets-hourly": {
        "task": "app.workers.tasks.cleanup_rate_limit_buckets",
        "schedule": float(settings.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS),
    },
    "cleanup-webhook-deduplication-hourly": {
        "task": "app.workers.tasks.cleanup_webhook_deduplication",
        "schedule": 3600.0,
    },
    "cleanup-api-monitoring-daily": {
        "task": "app.workers.tasks.cleanup_api_monitoring",
        "schedule": 86400.0,  # 24 hours
    },
}
