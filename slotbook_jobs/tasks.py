from __future__ import annotations

from typing import Any

from celery.utils.log import get_task_logger

from slotbook.db.session import SessionLocal
from slotbook.services import (
    DatabaseAuditRecorder,
    HttpObjectStorage,
    HttpReminderDispatcher,
    run_notification_sweep,
    run_photo_retention_sweep,
)
from slotbook.services.clock import local_now
from slotbook.services.slot_registry import sweep_unbooked_past
from slotbook_jobs.celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(name="jobs.run_notification_sweep")
def notification_sweep() -> dict[str, Any]:
    """Send due payment/appointment reminders and cancel unpaid bookings."""

    with SessionLocal() as session:
        result = run_notification_sweep(
            session,
            dispatcher=HttpReminderDispatcher(),
            audit=DatabaseAuditRecorder(),
        )
    logger.info(
        "Notification sweep: %s sent, %s cancelled, %s failed",
        result.sent,
        result.cancelled,
        result.failed,
    )
    return result.as_dict()


@celery_app.task(name="jobs.sweep_past_slots")
def sweep_past_slots() -> dict[str, Any]:
    """Delete past slots that no active or completed booking references."""

    with SessionLocal() as session:
        result = sweep_unbooked_past(session, local_now())
        session.commit()
    logger.info("Slot sweep deleted %s slots", result.deleted)
    return result.as_dict()


@celery_app.task(name="jobs.run_photo_retention_sweep")
def photo_retention_sweep() -> dict[str, Any]:
    """Delete client photos of bookings completed past the retention period."""

    with SessionLocal() as session:
        result = run_photo_retention_sweep(session, storage=HttpObjectStorage())
    if result.delete_failures:
        logger.warning("Photo retention: %s deletes failed", result.delete_failures)
    logger.info(
        "Photo retention: %s bookings cleaned, %s photos deleted",
        result.succeeded,
        result.photos_deleted,
    )
    return result.as_dict()
