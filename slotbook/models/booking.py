from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from slotbook.models.base import Base, TimestampMixin, enum_values

if TYPE_CHECKING:
    from slotbook.models.booking_photo import BookingPhoto


class BookingStatus(str, enum.Enum):
    """Booking lifecycle states; completed and cancelled are terminal."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})


class Booking(Base, TimestampMixin):
    """Customer reservation spanning one or more slots of one provider."""

    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("customers.id", ondelete="CASCADE"), index=True
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id", ondelete="CASCADE"), index=True
    )
    slot_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    service_description: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status", values_callable=enum_values),
        default=BookingStatus.PENDING,
        nullable=False,
        index=True,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status", values_callable=enum_values),
        default=PaymentStatus.UNPAID,
        nullable=False,
        index=True,
    )

    subtotal: Mapped[int] = mapped_column(Integer, default=0)
    discount_amount: Mapped[int] = mapped_column(Integer, default=0)
    paid_amount: Mapped[int] = mapped_column(Integer, default=0)
    tip_amount: Mapped[int] = mapped_column(Integer, default=0)

    proof_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    proof_ref: Mapped[str | None] = mapped_column(String(512), nullable=True)
    fully_paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    invoice_quotation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    invoice_items: Mapped[list[dict] | None] = mapped_column(JSON, nullable=True)
    invoice_created_at: Mapped[datetime | None] = mapped_column(nullable=True)

    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True, index=True)

    photos: Mapped[list["BookingPhoto"]] = relationship(
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingPhoto.uploaded_at",
    )

    @property
    def has_invoice(self) -> bool:
        return bool(self.invoice_quotation_id) or (self.invoice_total or 0) > 0

    @property
    def balance_due(self) -> int:
        """Outstanding amount; advisory (subtotal based) until an invoice exists."""

        if self.has_invoice:
            owed = self.invoice_total or 0
        else:
            owed = (self.subtotal or 0) - (self.discount_amount or 0)
        return max(0, owed - (self.paid_amount or 0))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
