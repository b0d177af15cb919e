"""Counter store contract shared by the Redis and in-memory backends."""

from abc import ABC, abstractmethod
from typing import Any


class CounterStore(ABC):
    """Keyed counters and window timestamps with TTL semantics.

    Timestamps are epoch seconds. A key whose TTL has elapsed reads as absent
    (count 0, no window start).
    """

    name: str = "counter_store"

    @abstractmethod
    async def get_count(self, key: str) -> int:
        """Return the current count for a key, 0 when absent."""

    @abstractmethod
    async def increment_count(self, key: str, window_seconds: int) -> int:
        """Atomically increment a counter.

        The expiry is set only when the increment creates the counter.

        Args:
            key: Counter key
            window_seconds: TTL applied on first increment

        Returns:
            Count after the increment
        """

    @abstractmethod
    async def get_window_start(self, key: str) -> float | None:
        """Return the stored window start for a key, or None."""

    @abstractmethod
    async def set_window_start(self, key: str, timestamp: float, ttl_seconds: int) -> None:
        """Store a window start that expires after ``ttl_seconds``."""

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Delete both the counter and the window start for a key."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether this backend should be used for the next call."""

    async def check_and_increment(self, key: str, now: float, window_seconds: int) -> tuple[int, float]:
        """Start a new window if the current one expired, then increment.

        Backends that can do this in one step override it. This default
        composes the primitives and leaves a narrow race between the
        expiry check and the increment.

        Args:
            key: Counter key
            now: Current time in epoch seconds
            window_seconds: Window size

        Returns:
            Tuple of (count after increment, window start)
        """
        start = await self.get_window_start(key)
        if start is None or now - start >= window_seconds:
            await self.reset(key)
            await self.set_window_start(key, now, window_seconds)
            start = now
        count = await self.increment_count(key, window_seconds)
        return count, start

    async def health_check(self) -> dict[str, Any]:
        """Report backend health."""
        return {"backend": self.name, "available": self.is_available()}

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""
