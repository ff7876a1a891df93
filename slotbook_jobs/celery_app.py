from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from slotbook_jobs.config import settings

celery_app = Celery(
    "slotbook",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["slotbook_jobs.tasks"],
)

celery_app.conf.timezone = settings.timezone
celery_app.conf.broker_connection_retry_on_startup = True
celery_app.conf.beat_schedule = {
    "notification-sweep": {
        "task": "jobs.run_notification_sweep",
        "schedule": crontab(minute=f"*/{settings.notification_sweep_minutes}"),
    },
    "slot-sweep": {
        "task": "jobs.sweep_past_slots",
        "schedule": crontab(minute=f"*/{settings.slot_sweep_minutes}"),
    },
    "photo-retention-sweep": {
        "task": "jobs.run_photo_retention_sweep",
        "schedule": crontab(minute=0, hour=settings.photo_retention_hour),
    },
}
