"""Slot records and their atomic claim/release.

Every status change on a slot is a conditional UPDATE guarded by the status
the caller expects, so overlapping claims race safely in the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Iterable, Sequence
from uuid import UUID

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.orm import Session

from slotbook.core.config import settings
from slotbook.core.errors import NotFound, PreconditionFailed, SlotConflict, ValidationFailed
from slotbook.models import Booking, BookingStatus, Provider, Slot, SlotStatus, SlotType
from slotbook.services.clock import local_now, slot_start_utc
from slotbook.services.metrics import SWEEP_ITEMS
from slotbook.services.throttle import SLOT_SWEEP_KEY, WindowCounter

logger = logging.getLogger(__name__)

HELD_STATUSES = (SlotStatus.PENDING, SlotStatus.CONFIRMED)
PROTECTED_BOOKING_STATUSES = (
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.COMPLETED,
)

_UNSET: Any = object()


@dataclass
class SlotCreationResult:
    created: list[Slot] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class SlotReleaseResult:
    released: list[UUID] = field(default_factory=list)
    retained: list[UUID] = field(default_factory=list)


@dataclass
class SlotSweepResult:
    deleted: int = 0
    slot_ids: list[str] = field(default_factory=list)
    skipped: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {"deleted": self.deleted, "slot_ids": self.slot_ids, "skipped": self.skipped}


def _as_uuid(value: UUID | str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise ValidationFailed(f"Invalid slot id {value!r}") from exc


def _fresh_slots(db: Session, slot_ids: Iterable[UUID]) -> list[Slot]:
    stmt = (
        select(Slot)
        .where(Slot.id.in_(list(slot_ids)))
        .execution_options(populate_existing=True)
    )
    return list(db.execute(stmt).scalars().all())


def serialize_slot(slot: Slot) -> dict[str, Any]:
    """Return a JSON-friendly representation of a slot."""

    return {
        "id": str(slot.id),
        "provider_id": str(slot.provider_id),
        "date": slot.date.isoformat(),
        "time": slot.time.strftime("%H:%M"),
        "start_ts": slot_start_utc(slot.date, slot.time).isoformat(),
        "status": slot.status.value,
        "slot_type": slot.slot_type.value if slot.slot_type else None,
        "is_hidden": slot.is_hidden,
        "notes": slot.notes,
        "booking_id": str(slot.booking_id) if slot.booking_id else None,
    }


def create_slots(
    db: Session,
    *,
    provider_id: UUID,
    dates: Sequence[date],
    times: Sequence[time],
    slot_type: SlotType | None = None,
    notes: str | None = None,
    is_hidden: bool = False,
) -> SlotCreationResult:
    """Bulk-generate ``available`` slots for every date/time combination."""

    if not dates or not times:
        raise ValidationFailed("Date and time are required")
    if db.get(Provider, provider_id) is None:
        raise NotFound("Provider not found", provider_id=str(provider_id))

    existing = {
        (row.date, row.time)
        for row in db.execute(
            select(Slot.date, Slot.time).where(
                Slot.provider_id == provider_id, Slot.date.in_(list(dates))
            )
        )
    }

    result = SlotCreationResult()
    for slot_date in dates:
        for slot_time in times:
            slot_time = slot_time.replace(second=0, microsecond=0)
            if (slot_date, slot_time) in existing:
                result.errors.append(
                    f"Slot already exists: {slot_date.isoformat()} {slot_time.strftime('%H:%M')}"
                )
                continue
            slot = Slot(
                provider_id=provider_id,
                date=slot_date,
                time=slot_time,
                status=SlotStatus.AVAILABLE,
                slot_type=slot_type,
                notes=notes,
                is_hidden=is_hidden,
            )
            db.add(slot)
            existing.add((slot_date, slot_time))
            result.created.append(slot)

    db.flush()
    logger.info(
        "slots generated",
        extra={
            "provider_id": str(provider_id),
            "created": len(result.created),
            "duplicates": len(result.errors),
        },
    )
    return result


def list_slots(
    db: Session,
    *,
    provider_id: UUID | None = None,
    on_date: date | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    status: SlotStatus | None = None,
    include_hidden: bool = True,
) -> list[Slot]:
    stmt = select(Slot)
    if provider_id:
        stmt = stmt.where(Slot.provider_id == provider_id)
    if start_date and end_date:
        stmt = stmt.where(Slot.date >= start_date, Slot.date <= end_date)
    elif on_date:
        stmt = stmt.where(Slot.date == on_date)
    if status:
        stmt = stmt.where(Slot.status == status)
    if not include_hidden:
        stmt = stmt.where(Slot.is_hidden.is_(False))
    stmt = stmt.order_by(Slot.date, Slot.time)
    return list(db.execute(stmt).scalars().all())


def get_slot(db: Session, slot_id: UUID) -> Slot:
    slot = db.get(Slot, slot_id)
    if slot is None:
        raise NotFound("Slot not found", slot_id=str(slot_id))
    return slot


def update_slot(
    db: Session,
    slot_id: UUID,
    *,
    notes: str | None = _UNSET,
    slot_type: SlotType | None = _UNSET,
    is_hidden: bool = _UNSET,
) -> Slot:
    """Edit descriptive fields; status only ever moves through claim/release."""

    slot = get_slot(db, slot_id)
    if notes is not _UNSET:
        slot.notes = notes
    if slot_type is not _UNSET:
        slot.slot_type = slot_type
    if is_hidden is not _UNSET:
        slot.is_hidden = bool(is_hidden)
    db.flush()
    return slot


def delete_slot(db: Session, slot_id: UUID) -> None:
    """Delete a slot, only while it is ``available``."""

    result = db.execute(
        delete(Slot)
        .where(Slot.id == slot_id, Slot.status == SlotStatus.AVAILABLE)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    slot = get_slot(db, slot_id)
    raise PreconditionFailed(
        f"Cannot delete a {slot.status.value} slot", slot_id=str(slot_id)
    )


def _revert(db: Session, slot_ids: Sequence[UUID], booking_id: UUID) -> int:
    if not slot_ids:
        return 0
    result = db.execute(
        update(Slot)
        .where(
            Slot.id.in_(list(slot_ids)),
            Slot.booking_id == booking_id,
            Slot.status == SlotStatus.PENDING,
        )
        .values(status=SlotStatus.AVAILABLE, booking_id=None)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def claim(
    db: Session,
    slot_ids: Sequence[UUID | str],
    booking_id: UUID,
    *,
    provider_id: UUID | None = None,
) -> list[UUID]:
    """Move every listed slot from ``available`` to ``pending`` for ``booking_id``.

    Each slot is claimed with its own compare-and-swap. If any slot fails the
    precondition, the slots already won by this call are handed back and
    :class:`SlotConflict` is raised, so a claim never partially reserves.
    """

    ids = [_as_uuid(slot_id) for slot_id in slot_ids]
    if not ids:
        raise ValidationFailed("At least one slot is required")
    if len(set(ids)) != len(ids):
        raise ValidationFailed("Slot ids must be unique")

    # Rows are always locked in id order so overlapping claims cannot deadlock.
    won: list[UUID] = []
    for slot_id in sorted(ids):
        conditions = [Slot.id == slot_id, Slot.status == SlotStatus.AVAILABLE]
        if provider_id is not None:
            conditions.append(Slot.provider_id == provider_id)
        result = db.execute(
            update(Slot)
            .where(*conditions)
            .values(status=SlotStatus.PENDING, booking_id=booking_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            won.append(slot_id)
            continue

        _revert(db, won, booking_id)
        _raise_claim_failure(db, slot_id, provider_id)

    logger.info(
        "slots claimed",
        extra={"booking_id": str(booking_id), "slot_ids": [str(i) for i in ids]},
    )
    return ids


def _raise_claim_failure(db: Session, slot_id: UUID, provider_id: UUID | None) -> None:
    row = db.execute(
        select(Slot.provider_id, Slot.status).where(Slot.id == slot_id)
    ).first()
    if row is None:
        raise NotFound("Slot not found", slot_id=str(slot_id))
    if provider_id is not None and row.provider_id != provider_id:
        raise ValidationFailed(
            "All slots must belong to the same provider", slot_id=str(slot_id)
        )
    raise SlotConflict(
        f"Slot {slot_id} is not available (status: {row.status.value})", [slot_id]
    )


def revert_claim(db: Session, slot_ids: Sequence[UUID | str], booking_id: UUID) -> int:
    """Compensate a claim whose booking was never persisted."""

    reverted = _revert(db, [_as_uuid(slot_id) for slot_id in slot_ids], booking_id)
    logger.warning(
        "slot claim compensated",
        extra={"booking_id": str(booking_id), "reverted": reverted},
    )
    return reverted


def mark_slots(
    db: Session,
    slot_ids: Sequence[UUID | str],
    booking_id: UUID,
    *,
    expected: Sequence[SlotStatus],
    new_status: SlotStatus,
) -> int:
    """Mirror a booking transition onto the slots it still owns."""

    result = db.execute(
        update(Slot)
        .where(
            Slot.id.in_([_as_uuid(slot_id) for slot_id in slot_ids]),
            Slot.booking_id == booking_id,
            Slot.status.in_(list(expected)),
        )
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def release(
    db: Session,
    slot_ids: Sequence[UUID | str],
    booking_id: UUID,
    *,
    now: datetime | None = None,
) -> SlotReleaseResult:
    """Return future slots to ``available``; past slots become ``cancelled``.

    Only slots still held by ``booking_id`` are touched.
    """

    result = SlotReleaseResult()
    current = local_now(now)
    for slot in _fresh_slots(db, [_as_uuid(slot_id) for slot_id in slot_ids]):
        if slot.booking_id != booking_id or slot.status not in HELD_STATUSES:
            continue
        start = slot_start_utc(slot.date, slot.time)
        guard = update(Slot).where(
            Slot.id == slot.id,
            Slot.booking_id == booking_id,
            Slot.status.in_(HELD_STATUSES),
        )
        if start > current:
            db.execute(
                guard.values(status=SlotStatus.AVAILABLE, booking_id=None).execution_options(
                    synchronize_session=False
                )
            )
            result.released.append(slot.id)
        else:
            db.execute(
                guard.values(status=SlotStatus.CANCELLED).execution_options(
                    synchronize_session=False
                )
            )
            result.retained.append(slot.id)

    logger.info(
        "slots released",
        extra={
            "booking_id": str(booking_id),
            "released": len(result.released),
            "retained": len(result.retained),
        },
    )
    return result


def sweep_unbooked_past(db: Session, now_local: datetime) -> SlotSweepResult:
    """Delete past slots that no pending, confirmed or completed booking references."""

    today = now_local.date()
    now_time = now_local.time().replace(tzinfo=None)

    candidates = db.execute(
        select(Slot.id, Slot.provider_id).where(
            or_(Slot.date < today, and_(Slot.date == today, Slot.time < now_time)),
            Slot.status.not_in([SlotStatus.PENDING, SlotStatus.CONFIRMED, SlotStatus.COMPLETED]),
        )
    ).all()
    if not candidates:
        return SlotSweepResult()

    providers = {row.provider_id for row in candidates}
    referenced: set[str] = set()
    for slot_ids in db.execute(
        select(Booking.slot_ids).where(
            Booking.provider_id.in_(providers),
            Booking.status.in_(PROTECTED_BOOKING_STATUSES),
        )
    ).scalars():
        referenced.update(str(slot_id) for slot_id in slot_ids or [])

    to_delete = [row.id for row in candidates if str(row.id) not in referenced]
    if not to_delete:
        return SlotSweepResult()

    result = db.execute(
        delete(Slot)
        .where(
            Slot.id.in_(to_delete),
            Slot.status.not_in([SlotStatus.PENDING, SlotStatus.CONFIRMED, SlotStatus.COMPLETED]),
        )
        .execution_options(synchronize_session=False)
    )
    deleted = int(result.rowcount or 0)
    SWEEP_ITEMS.labels(sweep="slots", outcome="deleted").inc(deleted)
    if deleted:
        logger.info("deleted past unbooked slots", extra={"deleted": deleted})
    return SlotSweepResult(deleted=deleted, slot_ids=[str(slot_id) for slot_id in to_delete])


def sweep_unbooked_past_if_due(
    db: Session,
    throttle: WindowCounter,
    *,
    now: datetime | None = None,
    interval_seconds: int | None = None,
) -> SlotSweepResult:
    """Run :func:`sweep_unbooked_past` at most once per shared throttle interval."""

    interval = interval_seconds or settings.slot_sweep_interval_seconds
    if not throttle.acquire(SLOT_SWEEP_KEY, interval):
        return SlotSweepResult(skipped=True)
    return sweep_unbooked_past(db, local_now(now))


__all__ = [
    "SlotCreationResult",
    "SlotReleaseResult",
    "SlotSweepResult",
    "claim",
    "create_slots",
    "delete_slot",
    "get_slot",
    "list_slots",
    "mark_slots",
    "release",
    "revert_claim",
    "serialize_slot",
    "sweep_unbooked_past",
    "sweep_unbooked_past_if_due",
    "update_slot",
]
