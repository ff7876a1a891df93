from __future__ import annotations

import datetime as dt
import enum
import uuid

from sqlalchemy import Boolean, Date, Enum, ForeignKey, Text, Time, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from slotbook.models.base import Base, TimestampMixin, enum_values


class SlotStatus(str, enum.Enum):
    """Possible states for a slot."""

    AVAILABLE = "available"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SlotType(str, enum.Enum):
    REGULAR = "regular"
    WITH_SQUEEZE_FEE = "with_squeeze_fee"


class Slot(Base, TimestampMixin):
    """Single bookable time unit for one provider, in business-local time."""

    __tablename__ = "slots"
    __table_args__ = (
        UniqueConstraint("provider_id", "date", "time", name="uq_slots_provider_date_time"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id", ondelete="CASCADE"), index=True
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    status: Mapped[SlotStatus] = mapped_column(
        Enum(SlotStatus, name="slot_status", values_callable=enum_values),
        default=SlotStatus.AVAILABLE,
        nullable=False,
        index=True,
    )
    slot_type: Mapped[SlotType | None] = mapped_column(
        Enum(SlotType, name="slot_type", values_callable=enum_values), nullable=True
    )
    is_hidden: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Owning booking while pending/confirmed; no FK because the claim precedes the insert.
    booking_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
