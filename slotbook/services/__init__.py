"""Service layer for the Slotbook API."""

from slotbook.services.audit import AuditRecorder, DatabaseAuditRecorder
from slotbook.services.booking_lifecycle import (
    BookingRequest,
    cancel_booking,
    complete_booking,
    confirm_booking,
    create_booking,
    get_booking,
    issue_booking_invoice,
    list_bookings,
    record_payment,
    reschedule_booking,
    serialize_booking,
    upload_payment_proof,
)
from slotbook.services.dispatcher import HttpReminderDispatcher, ReminderDispatcher
from slotbook.services.notification_sweep import (
    NotificationSweepResult,
    ReminderPolicy,
    run_notification_sweep,
)
from slotbook.services.photos import add_client_photo, parse_category, remove_client_photo
from slotbook.services.retention_sweep import RetentionSweepResult, run_photo_retention_sweep
from slotbook.services.storage import HttpObjectStorage, ObjectStorage, StoredObject
from slotbook.services.throttle import WindowCounter

__all__ = [
    "AuditRecorder",
    "BookingRequest",
    "DatabaseAuditRecorder",
    "HttpObjectStorage",
    "HttpReminderDispatcher",
    "NotificationSweepResult",
    "ObjectStorage",
    "ReminderDispatcher",
    "ReminderPolicy",
    "RetentionSweepResult",
    "StoredObject",
    "WindowCounter",
    "add_client_photo",
    "cancel_booking",
    "complete_booking",
    "confirm_booking",
    "create_booking",
    "get_booking",
    "issue_booking_invoice",
    "list_bookings",
    "parse_category",
    "record_payment",
    "remove_client_photo",
    "reschedule_booking",
    "run_notification_sweep",
    "run_photo_retention_sweep",
    "serialize_booking",
    "upload_payment_proof",
]
