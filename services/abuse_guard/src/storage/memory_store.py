"""In-process counter store used standalone or as the failover backend."""

import time
from collections.abc import Callable
from typing import Any

import structlog

from .base import CounterStore

logger = structlog.get_logger(__name__)


class MemoryCounterStore(CounterStore):
    """Dictionary-backed counter store with lazy expiry.

    Expired entries are dropped when read. ``purge_expired`` reclaims memory
    eagerly but is not needed for correctness. Every method body runs without
    awaiting, so each operation is atomic on the event loop.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize the store.

        Args:
            clock: Source of epoch seconds
        """
        self._clock = clock
        self._counts: dict[str, tuple[int, float]] = {}
        self._windows: dict[str, tuple[float, float]] = {}

    def _live_count(self, key: str, now: float) -> int | None:
        entry = self._counts.get(key)
        if entry is None:
            return None
        count, expires_at = entry
        if now >= expires_at:
            del self._counts[key]
            return None
        return count

    def _live_window(self, key: str, now: float) -> float | None:
        entry = self._windows.get(key)
        if entry is None:
            return None
        start, expires_at = entry
        if now >= expires_at:
            del self._windows[key]
            return None
        return start

    def _increment(self, key: str, window_seconds: int, now: float) -> int:
        current = self._live_count(key, now)
        if current is None:
            self._counts[key] = (1, now + window_seconds)
            return 1
        _, expires_at = self._counts[key]
        self._counts[key] = (current + 1, expires_at)
        return current + 1

    async def get_count(self, key: str) -> int:
        return self._live_count(key, self._clock()) or 0

    async def increment_count(self, key: str, window_seconds: int) -> int:
        return self._increment(key, window_seconds, self._clock())

    async def get_window_start(self, key: str) -> float | None:
        return self._live_window(key, self._clock())

    async def set_window_start(self, key: str, timestamp: float, ttl_seconds: int) -> None:
        self._windows[key] = (timestamp, self._clock() + ttl_seconds)

    async def reset(self, key: str) -> None:
        self._counts.pop(key, None)
        self._windows.pop(key, None)

    def is_available(self) -> bool:
        return True

    async def check_and_increment(self, key: str, now: float, window_seconds: int) -> tuple[int, float]:
        start = self._live_window(key, now)
        if start is None or now - start >= window_seconds:
            self._counts.pop(key, None)
            self._windows[key] = (now, now + window_seconds)
            start = now
        return self._increment(key, window_seconds, now), start

    def purge_expired(self) -> int:
        """Drop every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired_counts = [k for k, (_, exp) in self._counts.items() if now >= exp]
        expired_windows = [k for k, (_, exp) in self._windows.items() if now >= exp]
        for key in expired_counts:
            del self._counts[key]
        for key in expired_windows:
            del self._windows[key]

        removed = len(expired_counts) + len(expired_windows)
        if removed:
            logger.debug("Purged expired counter entries", removed=removed)
        return removed

    def clear(self) -> None:
        """Drop all entries."""
        self._counts.clear()
        self._windows.clear()

    async def health_check(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "available": True,
            "counters": len(self._counts),
            "windows": len(self._windows),
        }
