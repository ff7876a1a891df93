"""Client-submitted inspiration and current-state photos."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from slotbook.core.config import settings
from slotbook.core.errors import NotFound, UpstreamFailure, ValidationFailed
from slotbook.core.roles import Action, Actor, AuthorizationGate
from slotbook.models import Booking, BookingPhoto, PhotoCategory
from slotbook.services.audit import AuditRecorder
from slotbook.services.booking_lifecycle import (
    authorize,
    get_booking,
    record_audit,
    reject_terminal,
)
from slotbook.services.clock import utcnow
from slotbook.services.payment_ledger import validate_upload
from slotbook.services.storage import ObjectStorage

logger = logging.getLogger(__name__)

PHOTO_FOLDER = "client_photos"


def parse_category(raw: str) -> PhotoCategory:
    try:
        return PhotoCategory(raw)
    except ValueError as exc:
        raise ValidationFailed(
            "Invalid photo category", allowed=[member.value for member in PhotoCategory]
        ) from exc


def _count_photos(db: Session, booking_id: UUID, category: PhotoCategory) -> int:
    return db.execute(
        select(func.count(BookingPhoto.id)).where(
            BookingPhoto.booking_id == booking_id, BookingPhoto.category == category
        )
    ).scalar_one()


def _limit_reached(category: PhotoCategory) -> ValidationFailed:
    return ValidationFailed(
        f"Maximum {settings.max_photos_per_category} photos allowed for {category.value}"
    )


def add_client_photo(
    db: Session,
    booking_id: UUID,
    *,
    category: PhotoCategory,
    content: bytes,
    content_type: str,
    storage: ObjectStorage,
    actor: Actor,
    gate: AuthorizationGate | None = None,
    audit: AuditRecorder | None = None,
) -> BookingPhoto:
    """Upload a photo and attach it to the booking.

    A failed upload leaves the booking untouched; if the reference cannot be
    saved the uploaded object is deleted again.
    """

    booking = get_booking(db, booking_id)
    authorize(gate, actor, Action.MANAGE_PHOTOS, booking.provider_id)
    reject_terminal(booking, "add photos to")
    validate_upload(content, content_type)

    if _count_photos(db, booking.id, category) >= settings.max_photos_per_category:
        raise _limit_reached(category)

    stored = storage.upload(content, f"{PHOTO_FOLDER}/{category.value}", content_type)
    photo = BookingPhoto(
        booking_id=booking.id,
        category=category,
        url=stored.url,
        ref=stored.ref,
        uploaded_at=utcnow(),
    )
    try:
        # Serialise uploads per booking, then re-count including our own row.
        db.execute(
            select(Booking.id).where(Booking.id == booking.id).with_for_update()
        )
        db.add(photo)
        db.flush()
        if _count_photos(db, booking.id, category) > settings.max_photos_per_category:
            raise _limit_reached(category)
        db.commit()
    except Exception:
        db.rollback()
        try:
            storage.delete(stored.ref)
        except UpstreamFailure:
            logger.warning("orphaned photo upload", extra={"ref": stored.ref})
        raise

    record_audit(audit, actor, "booking.photo_add", booking, {"category": category.value})
    return photo


def remove_client_photo(
    db: Session,
    booking_id: UUID,
    photo_id: UUID,
    *,
    storage: ObjectStorage,
    actor: Actor,
    gate: AuthorizationGate | None = None,
    audit: AuditRecorder | None = None,
) -> None:
    """Delete the stored object first, then drop the reference."""

    booking = get_booking(db, booking_id)
    authorize(gate, actor, Action.MANAGE_PHOTOS, booking.provider_id)
    photo = db.get(BookingPhoto, photo_id)
    if photo is None or photo.booking_id != booking.id:
        raise NotFound("Photo not found", photo_id=str(photo_id))

    storage.delete(photo.ref)
    db.delete(photo)
    db.commit()
    record_audit(audit, actor, "booking.photo_remove", booking, {"photo_id": str(photo_id)})
