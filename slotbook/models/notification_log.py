from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from slotbook.models.base import Base, TimestampMixin, enum_values


class NotificationType(str, enum.Enum):
    PAYMENT_6H = "payment_6h"
    PAYMENT_12H = "payment_12h"
    PAYMENT_23H = "payment_23h"
    PAYMENT_24H_CANCEL = "payment_24h_cancel"
    APPT_24H = "appt_24h"
    APPT_2H = "appt_2h"


class NotificationLog(Base, TimestampMixin):
    """Record that one scheduled notification went out; unique per booking and type."""

    __tablename__ = "notification_logs"
    __table_args__ = (
        UniqueConstraint("booking_id", "type", name="uq_notification_logs_booking_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), index=True
    )
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, name="notification_type", values_callable=enum_values),
        nullable=False,
    )
    scheduled_for: Mapped[datetime] = mapped_column(nullable=False)
    sent_at: Mapped[datetime] = mapped_column(nullable=False)
