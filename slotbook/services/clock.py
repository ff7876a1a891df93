"""Time helpers shared by the booking engine.

Slots are stored as business-local calendar dates and wall-clock times while
every timestamp column is stored in UTC.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from slotbook.core.config import settings


def business_timezone() -> ZoneInfo:
    """Return the configured business timezone, falling back to UTC."""

    try:
        return ZoneInfo(settings.timezone)
    except ZoneInfoNotFoundError:  # pragma: no cover
        return ZoneInfo("UTC")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Coerce a datetime into UTC timezone-aware form."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_now(now: datetime | None = None) -> datetime:
    """Return ``now`` (default: current time) in the business timezone."""

    return ensure_utc(now or utcnow()).astimezone(business_timezone())


def slot_start_utc(slot_date: date, slot_time: time) -> datetime:
    """Convert a local slot date/time into an aware UTC datetime."""

    local = datetime.combine(slot_date, slot_time, tzinfo=business_timezone())
    return local.astimezone(timezone.utc)


def has_started(slot_date: date, slot_time: time, now: datetime | None = None) -> bool:
    return slot_start_utc(slot_date, slot_time) <= ensure_utc(now or utcnow())
