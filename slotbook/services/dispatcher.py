"""Thin wrapper around the email/SMS notification gateway."""

from __future__ import annotations

import logging
from typing import Protocol
from uuid import UUID

import httpx

from slotbook.core.config import settings
from slotbook.core.errors import UpstreamFailure
from slotbook.models import NotificationType

logger = logging.getLogger(__name__)

_TIMEOUT = httpx.Timeout(connect=5.0, read=15.0, write=15.0, pool=5.0)


class ReminderDispatcher(Protocol):
    def send(self, booking_id: UUID, notification_type: NotificationType) -> None:
        ...


class HttpReminderDispatcher:
    """Ask the gateway to deliver one templated reminder for a booking."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        mock_mode: bool | None = None,
    ) -> None:
        self.base_url = (base_url or settings.notify_api_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.notify_api_key
        self.mock_mode = settings.notify_mock_mode if mock_mode is None else mock_mode

    def send(self, booking_id: UUID, notification_type: NotificationType) -> None:
        payload = {"booking_id": str(booking_id), "type": notification_type.value}
        if self.mock_mode:
            logger.info("Mocking reminder dispatch", extra=payload)
            return

        if not self.api_key:
            raise UpstreamFailure("NOTIFY_API_KEY is not configured")

        try:
            with httpx.Client(timeout=_TIMEOUT) as client:
                response = client.post(
                    f"{self.base_url}/notifications",
                    headers={"apikey": self.api_key, "Content-Type": "application/json"},
                    json=payload,
                )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamFailure("Reminder dispatch failed", **payload) from exc

        logger.debug("Notification gateway accepted reminder", extra=payload)


__all__ = ["HttpReminderDispatcher", "ReminderDispatcher"]
