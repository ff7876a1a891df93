from __future__ import annotations

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from slotbook.models.base import Base, TimestampMixin


class BookingCounter(Base, TimestampMixin):
    """Per-day sequence used to mint booking codes."""

    __tablename__ = "booking_counters"

    date_key: Mapped[str] = mapped_column(String(8), primary_key=True)
    seq: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
