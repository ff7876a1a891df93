"""Payment arithmetic and payment status derivation for bookings.

Amounts are integers in the smallest currency unit. The ledger only records
amounts staff verified by hand; it never captures money.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy.orm import Session

from slotbook.core.config import settings
from slotbook.core.errors import UpstreamFailure, ValidationFailed
from slotbook.models import Booking, PaymentStatus
from slotbook.services.clock import utcnow
from slotbook.services.storage import ObjectStorage, StoredObject

logger = logging.getLogger(__name__)

PROOF_FOLDER = "payment_proofs"


@dataclass(frozen=True)
class PaymentApplication:
    """Split of one received amount between the balance and a tip."""

    amount_paid: int
    applied_to_balance: int
    tip_amount: int
    payment_status: PaymentStatus

    def as_dict(self) -> dict[str, Any]:
        return {
            "amount_paid": self.amount_paid,
            "applied_to_balance": self.applied_to_balance,
            "tip_amount": self.tip_amount,
            "payment_status": self.payment_status.value,
        }


def derive_payment_status(booking: Booking) -> PaymentStatus:
    """``paid`` requires an invoice; without one any payment is ``partial``."""

    paid = booking.paid_amount or 0
    if paid <= 0:
        return PaymentStatus.UNPAID
    if booking.has_invoice and paid >= (booking.invoice_total or 0):
        return PaymentStatus.PAID
    return PaymentStatus.PARTIAL


def _refresh_status(booking: Booking, now: datetime) -> None:
    booking.payment_status = derive_payment_status(booking)
    if booking.payment_status == PaymentStatus.PAID and booking.fully_paid_at is None:
        booking.fully_paid_at = now


def apply_payment(
    booking: Booking, amount_paid: int, *, now: datetime | None = None
) -> PaymentApplication:
    """Record ``amount_paid`` against the booking.

    Whatever exceeds the invoiced balance is a tip. Before an invoice exists
    the balance is unknown, so the whole amount counts towards it.
    """

    if amount_paid < 0:
        raise ValidationFailed("Payment amounts must be non-negative")

    if booking.has_invoice:
        balance = booking.balance_due
        applied = min(amount_paid, balance)
        tip = max(0, amount_paid - balance)
    else:
        applied, tip = amount_paid, 0

    booking.paid_amount = (booking.paid_amount or 0) + amount_paid
    booking.tip_amount = (booking.tip_amount or 0) + tip
    _refresh_status(booking, now or utcnow())

    logger.info(
        "payment applied",
        extra={
            "booking_id": str(booking.id),
            "amount_paid": amount_paid,
            "applied_to_balance": applied,
            "tip_amount": tip,
            "payment_status": booking.payment_status.value,
        },
    )
    return PaymentApplication(
        amount_paid=amount_paid,
        applied_to_balance=applied,
        tip_amount=tip,
        payment_status=booking.payment_status,
    )


def issue_invoice(
    booking: Booking,
    items: Sequence[dict[str, Any]],
    *,
    discount_amount: int | None = None,
    discount_rate: float = 0,
    squeeze_in_fee: int = 0,
    now: datetime | None = None,
) -> int:
    """Finalise the booking total from line items and return it."""

    if not items:
        raise ValidationFailed("At least one item is required")
    if discount_rate < 0 or squeeze_in_fee < 0 or (discount_amount or 0) < 0:
        raise ValidationFailed("Invoice adjustments must be non-negative")

    try:
        subtotal = sum(int(item.get("total") or 0) for item in items)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed("Invoice item totals must be numeric") from exc
    if discount_amount is None:
        discount_amount = round(subtotal * (discount_rate / 100))
    total = max(0, subtotal - discount_amount + squeeze_in_fee)

    now = now or utcnow()
    booking.subtotal = subtotal
    booking.discount_amount = discount_amount
    booking.invoice_items = [dict(item) for item in items]
    booking.invoice_total = total
    booking.invoice_quotation_id = booking.invoice_quotation_id or uuid.uuid4().hex
    booking.invoice_created_at = booking.invoice_created_at or now
    _refresh_status(booking, now)
    return total


def validate_upload(content: bytes, content_type: str) -> None:
    if content_type not in settings.allowed_image_types:
        raise ValidationFailed("Only JPEG, PNG, and WebP images are allowed")
    if not content:
        raise ValidationFailed("No file provided")
    if len(content) > settings.max_upload_bytes:
        raise ValidationFailed("File size must be under 5MB")


def attach_payment_proof(
    db: Session,
    booking: Booking,
    *,
    content: bytes,
    content_type: str,
    storage: ObjectStorage,
) -> StoredObject:
    """Store a new proof image and make it the booking's only active proof.

    The previous object is deleted only after the new reference is committed;
    a failed delete leaves an orphaned object rather than a proof-less booking.
    """

    validate_upload(content, content_type)
    stored = storage.upload(content, PROOF_FOLDER, content_type)

    previous_ref = booking.proof_ref
    booking.proof_url = stored.url
    booking.proof_ref = stored.ref
    try:
        db.commit()
    except Exception:
        db.rollback()
        _discard(storage, stored.ref)
        raise

    if previous_ref and previous_ref != stored.ref:
        _discard(storage, previous_ref)

    logger.info(
        "payment proof attached",
        extra={"booking_id": str(booking.id), "ref": stored.ref},
    )
    return stored


def _discard(storage: ObjectStorage, ref: str) -> None:
    try:
        storage.delete(ref)
    except UpstreamFailure:
        logger.warning("failed to delete stored object", extra={"ref": ref})


__all__ = [
    "PaymentApplication",
    "apply_payment",
    "attach_payment_proof",
    "derive_payment_status",
    "issue_invoice",
    "validate_upload",
]
