"""Per-call selection between the shared store and the in-process fallback."""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from ..exceptions import CounterStoreError
from .base import CounterStore
from .memory_store import MemoryCounterStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class FailoverCounterStore(CounterStore):
    """Routes each call to the primary store while it is available.

    When the primary reports unavailable, or a call to it raises
    ``CounterStoreError``, the call is served by the fallback instead. There
    is no sticky mode: the primary is tried again as soon as it reports
    available, so a transient outage heals on its own.
    """

    name = "failover"

    def __init__(self, primary: CounterStore, fallback: CounterStore | None = None) -> None:
        """Initialize the failover store.

        Args:
            primary: Shared backend, usually ``RedisCounterStore``
            fallback: In-process backend, ``MemoryCounterStore`` by default
        """
        self.primary = primary
        self.fallback = fallback or MemoryCounterStore()
        self._stats = {"primary_calls": 0, "fallback_calls": 0, "failovers": 0}

    async def _call(self, operation: str, fn: Callable[[CounterStore], Awaitable[T]]) -> T:
        if self.primary.is_available():
            self._stats["primary_calls"] += 1
            try:
                return await fn(self.primary)
            except CounterStoreError as e:
                self._stats["failovers"] += 1
                logger.warning(
                    "Counter store call failed, using fallback",
                    operation=operation,
                    backend=self.primary.name,
                    fallback=self.fallback.name,
                    error=e.message,
                )

        self._stats["fallback_calls"] += 1
        return await fn(self.fallback)

    @property
    def active_backend(self) -> str:
        """Name of the backend the next call will try first."""
        return self.primary.name if self.primary.is_available() else self.fallback.name

    async def get_count(self, key: str) -> int:
        return await self._call("get_count", lambda s: s.get_count(key))

    async def increment_count(self, key: str, window_seconds: int) -> int:
        return await self._call("increment_count", lambda s: s.increment_count(key, window_seconds))

    async def get_window_start(self, key: str) -> float | None:
        return await self._call("get_window_start", lambda s: s.get_window_start(key))

    async def set_window_start(self, key: str, timestamp: float, ttl_seconds: int) -> None:
        await self._call("set_window_start", lambda s: s.set_window_start(key, timestamp, ttl_seconds))

    async def reset(self, key: str) -> None:
        await self._call("reset", lambda s: s.reset(key))

    async def check_and_increment(self, key: str, now: float, window_seconds: int) -> tuple[int, float]:
        return await self._call("check_and_increment", lambda s: s.check_and_increment(key, now, window_seconds))

    def is_available(self) -> bool:
        return self.primary.is_available() or self.fallback.is_available()

    def status(self) -> dict[str, Any]:
        """Report which backend is serving calls."""
        return {
            "active_backend": self.active_backend,
            "primary": {"backend": self.primary.name, "available": self.primary.is_available()},
            "fallback": {"backend": self.fallback.name, "available": self.fallback.is_available()},
            "stats": dict(self._stats),
        }

    async def health_check(self) -> dict[str, Any]:
        return {
            **self.status(),
            "primary_health": await self.primary.health_check(),
            "fallback_health": await self.fallback.health_check(),
        }

    async def close(self) -> None:
        await self.primary.close()
        await self.fallback.close()
