"""Prometheus collectors for the background sweeps."""

from __future__ import annotations

from prometheus_client import Counter

SWEEP_ITEMS = Counter(
    "slotbook_sweep_items_total",
    "Items handled by background sweeps, by outcome.",
    ["sweep", "outcome"],
)
NOTIFICATIONS_SENT = Counter(
    "slotbook_notifications_sent_total",
    "Scheduled notifications dispatched and logged.",
    ["type"],
)

__all__ = ["NOTIFICATIONS_SENT", "SWEEP_ITEMS"]
