"""Scheduled payment reminders, unpaid auto-cancel and appointment reminders.

A pass decides which reminders are due and records each one in
``notification_logs``. The unique (booking_id, type) constraint is what keeps
a reminder from being logged twice; the due window only bounds how late a
reminder may still go out.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from slotbook.core.config import Settings, settings
from slotbook.core.errors import InvalidTransition, UpstreamFailure
from slotbook.core.roles import SYSTEM_ACTOR, AuthorizationGate
from slotbook.models import (
    Booking,
    BookingStatus,
    NotificationLog,
    NotificationType,
    PaymentStatus,
    Slot,
)
from slotbook.services.audit import AuditRecorder
from slotbook.services.booking_lifecycle import cancel_booking
from slotbook.services.clock import ensure_utc, slot_start_utc, utcnow
from slotbook.services.dispatcher import ReminderDispatcher
from slotbook.services.metrics import NOTIFICATIONS_SENT, SWEEP_ITEMS

logger = logging.getLogger(__name__)

PAYMENT_NOT_RECEIVED = "payment not received"

PAYMENT_REMINDER_TYPES = (
    NotificationType.PAYMENT_6H,
    NotificationType.PAYMENT_12H,
    NotificationType.PAYMENT_23H,
)
APPOINTMENT_REMINDER_TYPES = (NotificationType.APPT_24H, NotificationType.APPT_2H)


@dataclass(frozen=True)
class ReminderPolicy:
    """Reminder offsets; payment offsets count from creation, appointment ones back from start."""

    payment_reminders: tuple[tuple[NotificationType, timedelta], ...]
    payment_cancel_after: timedelta
    appointment_reminders: tuple[tuple[NotificationType, timedelta], ...]
    window: timedelta

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "ReminderPolicy":
        config = config or settings
        return cls(
            payment_reminders=tuple(
                (kind, timedelta(hours=hours))
                for kind, hours in zip(PAYMENT_REMINDER_TYPES, config.payment_reminder_hours)
            ),
            payment_cancel_after=timedelta(hours=config.payment_cancel_hours),
            appointment_reminders=tuple(
                (kind, timedelta(hours=hours))
                for kind, hours in zip(
                    APPOINTMENT_REMINDER_TYPES, config.appointment_reminder_hours
                )
            ),
            window=timedelta(minutes=config.notification_window_minutes),
        )

    def is_due(self, due: datetime, now: datetime) -> bool:
        return due <= now < due + self.window


@dataclass
class NotificationSweepResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    sent: int = 0
    cancelled: int = 0
    skipped: int = 0
    deferred: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _already_logged(db: Session, booking_id: UUID, kind: NotificationType) -> bool:
    return (
        db.execute(
            select(NotificationLog.id).where(
                NotificationLog.booking_id == booking_id, NotificationLog.type == kind
            )
        ).first()
        is not None
    )


def _write_log(
    db: Session, booking_id: UUID, kind: NotificationType, due: datetime, now: datetime
) -> bool:
    """Persist the log row; False when another pass already wrote it."""

    db.add(NotificationLog(booking_id=booking_id, type=kind, scheduled_for=due, sent_at=now))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def _send_once(
    db: Session,
    booking_id: UUID,
    kind: NotificationType,
    due: datetime,
    now: datetime,
    dispatcher: ReminderDispatcher,
    result: NotificationSweepResult,
) -> None:
    if _already_logged(db, booking_id, kind):
        result.skipped += 1
        return

    try:
        dispatcher.send(booking_id, kind)
    except UpstreamFailure:
        # No log row: the next pass retries while the window is still open.
        logger.warning(
            "reminder dispatch failed",
            extra={"booking_id": str(booking_id), "type": kind.value},
        )
        result.deferred += 1
        return

    if not _write_log(db, booking_id, kind, due, now):
        result.skipped += 1
        return

    result.sent += 1
    NOTIFICATIONS_SENT.labels(type=kind.value).inc()
    logger.info("reminder sent", extra={"booking_id": str(booking_id), "type": kind.value})


def _auto_cancel(
    db: Session,
    booking: Booking,
    due: datetime,
    now: datetime,
    *,
    dispatcher: ReminderDispatcher,
    gate: AuthorizationGate | None,
    audit: AuditRecorder | None,
    result: NotificationSweepResult,
) -> None:
    booking_id = booking.id
    try:
        cancel_booking(
            db,
            booking_id,
            actor=SYSTEM_ACTOR,
            reason=PAYMENT_NOT_RECEIVED,
            gate=gate,
            audit=audit,
            now=now,
        )
    except InvalidTransition:
        # Confirmed or cancelled by someone else since it was read.
        result.skipped += 1
        return

    _write_log(db, booking_id, NotificationType.PAYMENT_24H_CANCEL, due, now)
    result.cancelled += 1
    NOTIFICATIONS_SENT.labels(type=NotificationType.PAYMENT_24H_CANCEL.value).inc()

    try:
        dispatcher.send(booking_id, NotificationType.PAYMENT_24H_CANCEL)
    except UpstreamFailure:
        logger.warning(
            "cancellation notice dispatch failed", extra={"booking_id": str(booking_id)}
        )


def _process_unpaid(
    db: Session,
    booking: Booking,
    now: datetime,
    policy: ReminderPolicy,
    dispatcher: ReminderDispatcher,
    gate: AuthorizationGate | None,
    audit: AuditRecorder | None,
    result: NotificationSweepResult,
) -> None:
    created = ensure_utc(booking.created_at)
    cancel_at = created + policy.payment_cancel_after
    if now >= cancel_at:
        _auto_cancel(
            db,
            booking,
            cancel_at,
            now,
            dispatcher=dispatcher,
            gate=gate,
            audit=audit,
            result=result,
        )
        return

    for kind, offset in policy.payment_reminders:
        due = created + offset
        if policy.is_due(due, now):
            _send_once(db, booking.id, kind, due, now, dispatcher, result)


def _earliest_start(db: Session, booking: Booking) -> datetime | None:
    slot_ids = [UUID(str(slot_id)) for slot_id in booking.slot_ids or []]
    if not slot_ids:
        return None
    rows = db.execute(select(Slot.date, Slot.time).where(Slot.id.in_(slot_ids))).all()
    starts = [slot_start_utc(row.date, row.time) for row in rows]
    return min(starts) if starts else None


def _process_confirmed(
    db: Session,
    booking: Booking,
    now: datetime,
    policy: ReminderPolicy,
    dispatcher: ReminderDispatcher,
    result: NotificationSweepResult,
) -> None:
    start = _earliest_start(db, booking)
    if start is None or now >= start:
        return
    for kind, offset in policy.appointment_reminders:
        due = start - offset
        if policy.is_due(due, now):
            _send_once(db, booking.id, kind, due, now, dispatcher, result)


def run_notification_sweep(
    db: Session,
    *,
    dispatcher: ReminderDispatcher,
    gate: AuthorizationGate | None = None,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
    policy: ReminderPolicy | None = None,
) -> NotificationSweepResult:
    """Run one idempotent pass over pending-unpaid and confirmed bookings.

    Each booking is handled and committed on its own; a failure is logged,
    counted and does not stop the rest of the batch.
    """

    now = ensure_utc(now or utcnow())
    policy = policy or ReminderPolicy.from_settings()
    result = NotificationSweepResult()

    unpaid_ids = list(
        db.execute(
            select(Booking.id).where(
                Booking.status == BookingStatus.PENDING,
                Booking.payment_status.in_([PaymentStatus.UNPAID, PaymentStatus.PARTIAL]),
            )
        ).scalars()
    )
    confirmed_ids = list(
        db.execute(
            select(Booking.id).where(Booking.status == BookingStatus.CONFIRMED)
        ).scalars()
    )

    work = [(booking_id, True) for booking_id in unpaid_ids]
    work += [(booking_id, False) for booking_id in confirmed_ids]
    for booking_id, unpaid in work:
        result.processed += 1
        try:
            booking = db.get(Booking, booking_id, populate_existing=True)
            if booking is None:
                result.skipped += 1
                continue
            if unpaid:
                _process_unpaid(db, booking, now, policy, dispatcher, gate, audit, result)
            else:
                _process_confirmed(db, booking, now, policy, dispatcher, result)
            result.succeeded += 1
        except Exception:
            db.rollback()
            result.failed += 1
            logger.exception(
                "notification sweep item failed", extra={"booking_id": str(booking_id)}
            )

    SWEEP_ITEMS.labels(sweep="notifications", outcome="succeeded").inc(result.succeeded)
    SWEEP_ITEMS.labels(sweep="notifications", outcome="failed").inc(result.failed)
    logger.info("notification sweep finished", extra=result.as_dict())
    return result


__all__ = [
    "NotificationSweepResult",
    "PAYMENT_NOT_RECEIVED",
    "ReminderPolicy",
    "run_notification_sweep",
]
