from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Enum, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from slotbook.models.base import Base, enum_values, utcnow

if TYPE_CHECKING:
    from slotbook.models.booking import Booking


class PhotoCategory(str, enum.Enum):
    INSPIRATION = "inspiration"
    CURRENT_STATE = "currentState"


class BookingPhoto(Base):
    """Client-submitted photo reference, subject to retention cleanup."""

    __tablename__ = "booking_photos"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), index=True
    )
    category: Mapped[PhotoCategory] = mapped_column(
        Enum(PhotoCategory, name="photo_category", values_callable=enum_values),
        nullable=False,
    )
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    ref: Mapped[str] = mapped_column(String(512), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(default=utcnow)

    booking: Mapped["Booking"] = relationship(back_populates="photos")
