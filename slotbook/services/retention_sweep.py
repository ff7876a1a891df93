"""Time-based deletion of client photos on completed bookings.

Payment proofs are not touched; they are kept indefinitely.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from slotbook.core.config import settings
from slotbook.core.errors import UpstreamFailure
from slotbook.models import Booking, BookingPhoto, BookingStatus
from slotbook.services.clock import ensure_utc, utcnow
from slotbook.services.metrics import SWEEP_ITEMS
from slotbook.services.storage import ObjectStorage

logger = logging.getLogger(__name__)


@dataclass
class RetentionSweepResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    photos_deleted: int = 0
    delete_failures: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def run_photo_retention_sweep(
    db: Session,
    *,
    storage: ObjectStorage,
    now: datetime | None = None,
    retention_days: int | None = None,
) -> RetentionSweepResult:
    """Delete photos of bookings completed more than ``retention_days`` ago.

    Every stored object gets one delete attempt; failed deletes are counted and
    logged but the references are cleared regardless.
    """

    now = ensure_utc(now or utcnow())
    days = settings.photo_retention_days if retention_days is None else retention_days
    cutoff = now - timedelta(days=days)
    result = RetentionSweepResult()

    booking_ids = list(
        db.execute(
            select(Booking.id)
            .where(
                Booking.status == BookingStatus.COMPLETED,
                Booking.completed_at.is_not(None),
                Booking.completed_at < cutoff,
                Booking.id.in_(select(BookingPhoto.booking_id)),
            )
            .order_by(Booking.completed_at)
        ).scalars()
    )

    for booking_id in booking_ids:
        result.processed += 1
        try:
            refs = list(
                db.execute(
                    select(BookingPhoto.ref).where(BookingPhoto.booking_id == booking_id)
                ).scalars()
            )
            for ref in refs:
                try:
                    storage.delete(ref)
                except UpstreamFailure:
                    result.delete_failures += 1
                    logger.warning(
                        "photo delete failed",
                        extra={"booking_id": str(booking_id), "ref": ref},
                    )
                else:
                    result.photos_deleted += 1

            db.execute(
                delete(BookingPhoto)
                .where(BookingPhoto.booking_id == booking_id)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            result.succeeded += 1
        except Exception:
            db.rollback()
            result.failed += 1
            logger.exception("retention sweep item failed", extra={"booking_id": str(booking_id)})

    SWEEP_ITEMS.labels(sweep="photos", outcome="deleted").inc(result.photos_deleted)
    SWEEP_ITEMS.labels(sweep="photos", outcome="failed").inc(
        result.failed + result.delete_failures
    )
    logger.info("photo retention sweep finished", extra=result.as_dict())
    return result


__all__ = ["RetentionSweepResult", "run_photo_retention_sweep"]
