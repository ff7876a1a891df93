from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from slotbook.models import Booking, Customer
from slotbook.services.clock import ensure_utc


def recompute_customer_stats(db: Session, customer_id: UUID) -> Customer | None:
    """Rebuild the denormalised visit statistics for one customer."""

    customer = db.get(Customer, customer_id)
    if customer is None:
        return None

    rows = db.execute(
        select(
            Booking.completed_at,
            Booking.invoice_total,
            Booking.tip_amount,
            Booking.discount_amount,
        ).where(Booking.customer_id == customer_id)
    ).all()

    total_spent = total_tips = total_discounts = completed = 0
    last_visit: datetime | None = None
    for row in rows:
        if row.completed_at is None:
            continue
        completed += 1
        total_spent += (row.invoice_total or 0) + (row.tip_amount or 0)
        total_tips += row.tip_amount or 0
        total_discounts += row.discount_amount or 0
        visited = ensure_utc(row.completed_at)
        if last_visit is None or visited > last_visit:
            last_visit = visited

    customer.total_bookings = len(rows)
    customer.completed_bookings = completed
    customer.total_spent = total_spent
    customer.total_tips = total_tips
    customer.total_discounts = total_discounts
    customer.last_visit = last_visit
    customer.client_type = "REPEAT" if len(rows) > 1 else "NEW"
    db.flush()
    return customer
