"""Celery application configuration."""
from celery import Celery

from marketplace.config import get_settings

settings = get_settings()

celery_app = Celery(
    "marketplace",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["marketplace.tasks.cleanup_tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "cleanup-stale-upload-batches": {
            "task": "marketplace.tasks.cleanup_tasks.cleanup_stale_batches",
            "schedule": 3600.0,
        },
    },
)
