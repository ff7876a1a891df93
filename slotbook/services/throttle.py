"""Shared time-windowed counters backed by Redis.

Both the slot-sweep throttle and the HTTP rate limiter live here so that every
API instance sees the same window instead of a process-local timestamp.
"""

from __future__ import annotations

import logging
from typing import Final

import redis

from slotbook.core.config import settings

logger = logging.getLogger(__name__)

_KEY_PREFIX: Final[str] = "slotbook"
SLOT_SWEEP_KEY: Final[str] = "throttle:slot-sweep"


def _get_client() -> redis.Redis:
    """Return a Redis client configured via application settings."""

    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


class WindowCounter:
    """Atomic windowed gates keyed by identity, with explicit TTLs."""

    def __init__(self, client: redis.Redis | None = None, prefix: str = _KEY_PREFIX) -> None:
        self._client = client
        self.prefix = prefix

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = _get_client()
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def acquire(self, key: str, interval_seconds: int) -> bool:
        """Return True for the first caller within ``interval_seconds``."""

        interval_ms = max(1, int(interval_seconds * 1000))
        return bool(self.client.set(self._key(key), "1", nx=True, px=interval_ms))

    def hit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Count one hit for ``key``; return whether it is within ``limit``."""

        full_key = self._key(key)
        count = int(self.client.incr(full_key))
        if count == 1:
            self.client.expire(full_key, max(1, window_seconds))
        return count <= max(1, limit)


__all__ = ["SLOT_SWEEP_KEY", "WindowCounter"]
