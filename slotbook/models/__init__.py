"""SQLAlchemy models for the Slotbook API."""

from slotbook.models.audit_log import AuditLog
from slotbook.models.booking import (
    TERMINAL_STATUSES,
    Booking,
    BookingStatus,
    PaymentStatus,
)
from slotbook.models.booking_counter import BookingCounter
from slotbook.models.booking_photo import BookingPhoto, PhotoCategory
from slotbook.models.customer import Customer
from slotbook.models.notification_log import NotificationLog, NotificationType
from slotbook.models.provider import Provider
from slotbook.models.slot import Slot, SlotStatus, SlotType

__all__ = [
    "AuditLog",
    "Booking",
    "BookingCounter",
    "BookingPhoto",
    "BookingStatus",
    "Customer",
    "NotificationLog",
    "NotificationType",
    "PaymentStatus",
    "PhotoCategory",
    "Provider",
    "Slot",
    "SlotStatus",
    "SlotType",
    "TERMINAL_STATUSES",
]
