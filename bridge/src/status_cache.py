# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Time-bounded in-memory cache of device status snapshots.

Keys name a scope: one device, or every device of a site. ``wrap`` fills a
missing key at most once at a time; concurrent callers for the same key wait
for the in-flight fetch and share its result. Failed fetches are not cached.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

STATUS_CACHE_KEY = "outlet-status"


def clamp_seconds(value: float | None, default: float,
                  minimum: float, maximum: float) -> float:
    """Return *value* clamped into [minimum, maximum]; unset or non-positive uses default."""
    if value is None or value <= 0:
        value = default
    return max(minimum, min(maximum, value))


def device_cache_key(site: str | None, device_id: str | None = None) -> str:
    """Cache key for one device, or for the whole site when device_id is None."""
    return f"{STATUS_CACHE_KEY}.{site or 'default'}.{device_id or 'ALL'}"


class StatusCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._fill_locks: dict[str, asyncio.Lock] = {}

        # Health tracking
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (self._clock() + ttl, value)

    def invalidate(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            logger.debug("Invalidated cache entry %s", key)

    def clear(self) -> None:
        self._entries.clear()

    async def wrap(self, key: str, fetch: Callable[[], Awaitable[Any]], ttl: float) -> Any:
        """Return the cached value for *key*, fetching and storing it on a miss."""
        value = self.get(key)
        if value is not None:
            self._hits += 1
            return value

        lock = self._fill_locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another caller may have filled it while we waited
            value = self.get(key)
            if value is not None:
                self._hits += 1
                return value
            self._misses += 1
            value = await fetch()
            self.set(key, value, ttl)
            return value

    def get_health(self) -> dict:
        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
        }
