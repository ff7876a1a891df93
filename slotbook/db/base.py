"""Import SQLAlchemy models for Alembic's autogenerate feature."""

from slotbook.models.base import Base
from slotbook.models import (  # noqa: F401
    AuditLog,
    Booking,
    BookingCounter,
    BookingPhoto,
    Customer,
    NotificationLog,
    Provider,
    Slot,
)

__all__ = [
    "Base",
    "AuditLog",
    "Booking",
    "BookingCounter",
    "BookingPhoto",
    "Customer",
    "NotificationLog",
    "Provider",
    "Slot",
]
