"""Booking state machine.

``pending -> confirmed -> completed`` with ``cancelled`` reachable from both
non-terminal states. Every transition is a conditional UPDATE on the current
status so two staff members acting on the same booking cannot both win.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from slotbook.core.config import settings
from slotbook.core.errors import (
    BookingEngineError,
    Forbidden,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    ValidationFailed,
)
from slotbook.core.roles import Action, Actor, AuthorizationGate, CapabilityGate
from slotbook.models import (
    Booking,
    BookingCounter,
    BookingStatus,
    Customer,
    PaymentStatus,
    Provider,
    Slot,
    SlotStatus,
)
from slotbook.services.audit import AuditRecorder
from slotbook.services.clock import ensure_utc, has_started, local_now, utcnow
from slotbook.services.customer_stats import recompute_customer_stats
from slotbook.services.payment_ledger import (
    PaymentApplication,
    apply_payment,
    attach_payment_proof,
    issue_invoice,
)
from slotbook.services.slot_registry import HELD_STATUSES, claim, mark_slots, release, revert_claim
from slotbook.services.storage import ObjectStorage

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)
_CODE_ATTEMPTS = 3


@dataclass
class BookingRequest:
    """Customer request to reserve one or more slots of a provider."""

    customer_id: UUID
    provider_id: UUID
    slot_ids: list[UUID]
    service_description: str
    subtotal: int = 0
    discount_amount: int = 0


def authorize(
    gate: AuthorizationGate | None,
    actor: Actor,
    action: Action,
    scope_id: UUID | None,
) -> None:
    gate = gate or CapabilityGate()
    if not gate.is_allowed(actor, action, scope_id):
        logger.warning(
            "action denied",
            extra={"actor_role": actor.role.value, "action": action.value},
        )
        raise Forbidden(f"{actor.role.value} may not {action.value}")


def record_audit(
    audit: AuditRecorder | None,
    actor: Actor | None,
    action: str,
    booking: Booking,
    details: dict[str, Any] | None = None,
) -> None:
    if audit is None:
        return
    audit.record(actor.label if actor else "customer", action, str(booking.id), details)


def next_booking_code(db: Session, now: datetime | None = None) -> str:
    """Mint ``<prefix>-YYYYMMDDNNN`` from the per-day counter."""

    date_key = local_now(now).strftime("%Y%m%d")
    for _ in range(_CODE_ATTEMPTS):
        bumped = db.execute(
            update(BookingCounter)
            .where(BookingCounter.date_key == date_key)
            .values(seq=BookingCounter.seq + 1)
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount == 1:
            seq = db.execute(
                select(BookingCounter.seq).where(BookingCounter.date_key == date_key)
            ).scalar_one()
            return f"{settings.booking_code_prefix}-{date_key}{seq:03d}"
        try:
            with db.begin_nested():
                db.add(BookingCounter(date_key=date_key, seq=1))
        except IntegrityError:
            # Another request created today's counter first.
            continue
        return f"{settings.booking_code_prefix}-{date_key}001"
    raise BookingEngineError("Could not allocate a booking code", date_key=date_key)


def get_booking(db: Session, reference: UUID | str) -> Booking:
    """Load a booking by id or by its human-readable code."""

    booking: Booking | None = None
    try:
        booking_id = reference if isinstance(reference, UUID) else UUID(str(reference))
    except ValueError:
        booking = db.execute(
            select(Booking).where(Booking.code == str(reference).upper())
        ).scalar_one_or_none()
    else:
        booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found", booking=str(reference))
    return booking


def list_bookings(
    db: Session,
    *,
    customer_id: UUID | None = None,
    provider_id: UUID | None = None,
    status: BookingStatus | None = None,
    payment_status: PaymentStatus | None = None,
    limit: int = 100,
) -> list[Booking]:
    stmt = select(Booking)
    if customer_id:
        stmt = stmt.where(Booking.customer_id == customer_id)
    if provider_id:
        stmt = stmt.where(Booking.provider_id == provider_id)
    if status:
        stmt = stmt.where(Booking.status == status)
    if payment_status:
        stmt = stmt.where(Booking.payment_status == payment_status)
    stmt = stmt.order_by(Booking.created_at.desc()).limit(max(1, min(limit, 500)))
    return list(db.execute(stmt).scalars().all())


def _iso(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value else None


def serialize_booking(booking: Booking) -> dict[str, Any]:
    """Return a JSON-friendly representation of a booking."""

    invoice = None
    if booking.has_invoice:
        invoice = {
            "quotation_id": booking.invoice_quotation_id,
            "total": booking.invoice_total,
            "items": booking.invoice_items or [],
            "created_at": _iso(booking.invoice_created_at),
        }
    photos: dict[str, list[dict[str, str]]] = {"inspiration": [], "currentState": []}
    for photo in booking.photos:
        photos.setdefault(photo.category.value, []).append(
            {"id": str(photo.id), "url": photo.url}
        )

    return {
        "id": str(booking.id),
        "code": booking.code,
        "customer_id": str(booking.customer_id),
        "provider_id": str(booking.provider_id),
        "slot_ids": list(booking.slot_ids or []),
        "service_description": booking.service_description,
        "status": booking.status.value,
        "payment_status": booking.payment_status.value,
        "status_reason": booking.status_reason,
        "pricing": {
            "subtotal": booking.subtotal,
            "discount_amount": booking.discount_amount,
            "paid_amount": booking.paid_amount,
            "tip_amount": booking.tip_amount,
            "balance_due": booking.balance_due,
        },
        "payment": {
            "proof_url": booking.proof_url,
            "fully_paid_at": _iso(booking.fully_paid_at),
        },
        "invoice": invoice,
        "client_photos": photos,
        "created_at": _iso(booking.created_at),
        "confirmed_at": _iso(booking.confirmed_at),
        "completed_at": _iso(booking.completed_at),
    }


def reject_terminal(booking: Booking, operation: str) -> None:
    if booking.is_terminal:
        raise InvalidTransition(
            f"Cannot {operation} a {booking.status.value} booking",
            booking_id=str(booking.id),
        )


def _transition(
    db: Session,
    booking: Booking,
    *,
    expected: Sequence[BookingStatus],
    target: BookingStatus,
    now: datetime,
    **values: Any,
) -> None:
    db.flush()
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status.in_(list(expected)))
        .values(status=target, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        current = db.execute(select(Booking.status).where(Booking.id == booking.id)).scalar_one()
        raise InvalidTransition(
            f"Cannot move booking from {current.value} to {target.value}",
            booking_id=str(booking.id),
        )
    db.refresh(booking)


def create_booking(
    db: Session,
    request: BookingRequest,
    *,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> Booking:
    """Claim the requested slots, then persist the booking that owns them.

    The claim is committed on its own. If persisting the booking fails for any
    reason, including cancellation of the calling task, the claim is reverted
    so no slot stays ``pending`` without an owner.
    """

    now = ensure_utc(now or utcnow())
    if not request.service_description or not request.service_description.strip():
        raise ValidationFailed("Service description is required")
    if request.subtotal < 0 or request.discount_amount < 0:
        raise ValidationFailed("Pricing amounts must be non-negative")
    if db.get(Customer, request.customer_id) is None:
        raise NotFound("Customer not found", customer_id=str(request.customer_id))
    if db.get(Provider, request.provider_id) is None:
        raise NotFound("Provider not found", provider_id=str(request.provider_id))

    try:
        slot_ids = [UUID(str(slot_id)) for slot_id in request.slot_ids]
    except ValueError as exc:
        raise ValidationFailed("Invalid slot id") from exc

    requested = db.execute(
        select(Slot.id, Slot.date, Slot.time).where(Slot.id.in_(slot_ids))
    ).all()
    started = [str(row.id) for row in requested if has_started(row.date, row.time, now)]
    if started:
        raise PreconditionFailed("Cannot book a slot in the past", slot_ids=started)

    booking_id = uuid.uuid4()
    claimed = claim(db, slot_ids, booking_id, provider_id=request.provider_id)
    db.commit()

    try:
        booking = Booking(
            id=booking_id,
            code=next_booking_code(db, now),
            customer_id=request.customer_id,
            provider_id=request.provider_id,
            slot_ids=[str(slot_id) for slot_id in claimed],
            service_description=request.service_description.strip(),
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
            subtotal=request.subtotal,
            discount_amount=request.discount_amount,
            paid_amount=0,
            tip_amount=0,
            created_at=now,
            updated_at=now,
        )
        db.add(booking)
        db.flush()
        recompute_customer_stats(db, request.customer_id)
        db.commit()
    except BaseException:
        db.rollback()
        revert_claim(db, claimed, booking_id)
        db.commit()
        raise

    logger.info(
        "booking created",
        extra={"booking_id": str(booking.id), "code": booking.code, "slots": len(claimed)},
    )
    record_audit(audit, None, "booking.create", booking, {"code": booking.code})
    return booking


def confirm_booking(
    db: Session,
    booking_id: UUID,
    *,
    actor: Actor,
    gate: AuthorizationGate | None = None,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> Booking:
    """Staff verified the deposit: ``pending -> confirmed``."""

    now = ensure_utc(now or utcnow())
    booking = get_booking(db, booking_id)
    authorize(gate, actor, Action.CONFIRM_BOOKING, booking.provider_id)
    if booking.status != BookingStatus.PENDING:
        raise InvalidTransition(
            f"Cannot confirm a {booking.status.value} booking", booking_id=str(booking.id)
        )
    if not booking.proof_ref:
        raise PreconditionFailed("Payment proof is required before confirming")

    _transition(
        db,
        booking,
        expected=[BookingStatus.PENDING],
        target=BookingStatus.CONFIRMED,
        now=now,
        confirmed_at=now,
    )
    mark_slots(
        db,
        booking.slot_ids,
        booking.id,
        expected=[SlotStatus.PENDING],
        new_status=SlotStatus.CONFIRMED,
    )
    db.commit()
    record_audit(audit, actor, "booking.confirm", booking)
    return booking


def cancel_booking(
    db: Session,
    booking_id: UUID,
    *,
    actor: Actor,
    reason: str | None = None,
    gate: AuthorizationGate | None = None,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> Booking:
    """Cancel a pending or confirmed booking and release its slots."""

    now = ensure_utc(now or utcnow())
    booking = get_booking(db, booking_id)
    authorize(gate, actor, Action.CANCEL_BOOKING, booking.provider_id)
    reject_terminal(booking, "cancel")

    _transition(
        db,
        booking,
        expected=ACTIVE_STATUSES,
        target=BookingStatus.CANCELLED,
        now=now,
        status_reason=(reason or "").strip() or None,
    )
    released = release(db, booking.slot_ids, booking.id, now=now)
    db.commit()

    logger.info(
        "booking cancelled",
        extra={
            "booking_id": str(booking.id),
            "reason": booking.status_reason,
            "released": len(released.released),
        },
    )
    record_audit(audit, actor, "booking.cancel", booking, {"reason": booking.status_reason})
    return booking


def reschedule_booking(
    db: Session,
    booking_id: UUID,
    *,
    actor: Actor,
    reason: str,
    gate: AuthorizationGate | None = None,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> Booking:
    """Cancel so the customer can rebook; the reason is mandatory."""

    if not reason or not reason.strip():
        raise ValidationFailed("A reason is required to reschedule")
    return cancel_booking(
        db,
        booking_id,
        actor=actor,
        reason=f"Rescheduled: {reason.strip()}",
        gate=gate,
        audit=audit,
        now=now,
    )


def record_payment(
    db: Session,
    booking_id: UUID,
    amount_paid: int,
    *,
    actor: Actor,
    gate: AuthorizationGate | None = None,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> tuple[Booking, PaymentApplication]:
    now = ensure_utc(now or utcnow())
    booking = get_booking(db, booking_id)
    authorize(gate, actor, Action.RECORD_PAYMENT, booking.provider_id)
    reject_terminal(booking, "record a payment on")

    application = apply_payment(booking, amount_paid, now=now)
    db.commit()
    record_audit(audit, actor, "booking.payment", booking, application.as_dict())
    return booking, application


def complete_booking(
    db: Session,
    booking_id: UUID,
    *,
    actor: Actor,
    amount_paid: int = 0,
    gate: AuthorizationGate | None = None,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> Booking:
    """Record the final settlement and close the booking.

    An invoice must exist, otherwise there is nothing to settle against.
    """

    now = ensure_utc(now or utcnow())
    booking = get_booking(db, booking_id)
    authorize(gate, actor, Action.COMPLETE_BOOKING, booking.provider_id)
    reject_terminal(booking, "complete")
    if not booking.has_invoice:
        raise PreconditionFailed("An invoice is required before completing a booking")

    application = apply_payment(booking, amount_paid, now=now) if amount_paid else None
    _transition(
        db,
        booking,
        expected=ACTIVE_STATUSES,
        target=BookingStatus.COMPLETED,
        now=now,
        completed_at=now,
    )
    mark_slots(
        db,
        booking.slot_ids,
        booking.id,
        expected=HELD_STATUSES,
        new_status=SlotStatus.COMPLETED,
    )
    recompute_customer_stats(db, booking.customer_id)
    db.commit()

    logger.info(
        "booking completed",
        extra={"booking_id": str(booking.id), "payment_status": booking.payment_status.value},
    )
    record_audit(
        audit,
        actor,
        "booking.complete",
        booking,
        application.as_dict() if application else None,
    )
    return booking


def issue_booking_invoice(
    db: Session,
    booking_id: UUID,
    *,
    actor: Actor,
    items: Sequence[dict[str, Any]],
    discount_amount: int | None = None,
    discount_rate: float = 0,
    squeeze_in_fee: int = 0,
    gate: AuthorizationGate | None = None,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> Booking:
    now = ensure_utc(now or utcnow())
    booking = get_booking(db, booking_id)
    authorize(gate, actor, Action.ISSUE_INVOICE, booking.provider_id)
    reject_terminal(booking, "invoice")

    total = issue_invoice(
        booking,
        items,
        discount_amount=discount_amount,
        discount_rate=discount_rate,
        squeeze_in_fee=squeeze_in_fee,
        now=now,
    )
    db.commit()
    record_audit(audit, actor, "booking.invoice", booking, {"total": total})
    return booking


def upload_payment_proof(
    db: Session,
    booking_id: UUID,
    *,
    content: bytes,
    content_type: str,
    storage: ObjectStorage,
    actor: Actor | None = None,
    audit: AuditRecorder | None = None,
) -> Booking:
    booking = get_booking(db, booking_id)
    reject_terminal(booking, "attach a payment proof to")
    attach_payment_proof(
        db, booking, content=content, content_type=content_type, storage=storage
    )
    record_audit(audit, actor, "booking.payment_proof", booking)
    return booking


__all__ = [
    "ACTIVE_STATUSES",
    "BookingRequest",
    "authorize",
    "cancel_booking",
    "complete_booking",
    "confirm_booking",
    "create_booking",
    "get_booking",
    "issue_booking_invoice",
    "list_bookings",
    "next_booking_code",
    "record_payment",
    "record_audit",
    "reschedule_booking",
    "reject_terminal",
    "serialize_booking",
    "upload_payment_proof",
]
