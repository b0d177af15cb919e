"""Redis-backed counter store shared by every engine instance."""

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from ..exceptions import CounterStoreError, CounterStoreTimeoutError
from .base import CounterStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# INCR and set the expiry only when the counter was just created.
INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

# Window expiry check, reset and increment in one round trip.
# Returns {count, window_start}; the start is a string so fractional seconds survive.
CHECK_AND_INCREMENT_SCRIPT = """
local count_key = KEYS[1]
local window_key = KEYS[2]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])

local start = redis.call('GET', window_key)
if (not start) or (now - tonumber(start) >= window) then
    start = ARGV[1]
    redis.call('DEL', count_key)
    redis.call('SET', window_key, start, 'EX', ttl)
end

local count = redis.call('INCR', count_key)
if count == 1 then
    redis.call('EXPIRE', count_key, ttl)
end
return {count, start}
"""


def _ttl(seconds: float) -> int:
    """Redis expiries are whole seconds and must be positive."""
    return max(1, math.ceil(seconds))


class RedisCounterStore(CounterStore):
    """Counter store on Redis with bounded call times.

    Any failure marks the store unavailable. After ``retry_interval`` seconds
    ``is_available`` reports True again so the next call probes Redis; a
    successful call restores normal operation.
    """

    name = "redis"

    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = "abuse_guard:",
        operation_timeout: float = 0.5,
        retry_interval: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the store.

        Args:
            redis_client: Async Redis client
            key_prefix: Namespace prepended to every key
            operation_timeout: Upper bound for a single Redis call in seconds
            retry_interval: Seconds to wait before probing after a failure
            clock: Source of epoch seconds
        """
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.operation_timeout = operation_timeout
        self.retry_interval = retry_interval
        self._clock = clock

        self._available = True
        self._last_failure: float | None = None
        self._consecutive_failures = 0
        self._stats = {"operations": 0, "failures": 0, "timeouts": 0}

    def _count_key(self, key: str) -> str:
        return f"{self.key_prefix}count:{key}"

    def _window_key(self, key: str) -> str:
        return f"{self.key_prefix}window:{key}"

    async def _execute(self, operation: str, call: Awaitable[T]) -> T:
        """Run one Redis call with a timeout and track availability."""
        self._stats["operations"] += 1
        try:
            result = await asyncio.wait_for(call, timeout=self.operation_timeout)
        except TimeoutError as e:
            self._stats["timeouts"] += 1
            self._mark_failure(operation, e)
            raise CounterStoreTimeoutError(
                f"Redis {operation} timed out after {self.operation_timeout}s",
                backend=self.name,
                operation=operation,
            ) from e
        except (RedisError, OSError) as e:
            self._mark_failure(operation, e)
            raise CounterStoreError(f"Redis {operation} failed: {e}", backend=self.name, operation=operation) from e

        if not self._available:
            logger.info("Redis counter store recovered", after_failures=self._consecutive_failures)
        self._available = True
        self._consecutive_failures = 0
        return result

    def _mark_failure(self, operation: str, error: Exception) -> None:
        self._stats["failures"] += 1
        self._consecutive_failures += 1
        self._last_failure = self._clock()
        if self._available:
            logger.warning("Redis counter store marked unavailable", operation=operation, error=str(error))
        self._available = False

    def is_available(self) -> bool:
        if self._available:
            return True
        return self._last_failure is None or self._clock() - self._last_failure >= self.retry_interval

    async def get_count(self, key: str) -> int:
        raw = await self._execute("get_count", self.redis.get(self._count_key(key)))
        return int(raw) if raw is not None else 0

    async def increment_count(self, key: str, window_seconds: int) -> int:
        result = await self._execute(
            "increment_count",
            self.redis.eval(INCREMENT_SCRIPT, 1, self._count_key(key), _ttl(window_seconds)),
        )
        return int(result)

    async def get_window_start(self, key: str) -> float | None:
        raw = await self._execute("get_window_start", self.redis.get(self._window_key(key)))
        return float(raw) if raw is not None else None

    async def set_window_start(self, key: str, timestamp: float, ttl_seconds: int) -> None:
        await self._execute(
            "set_window_start",
            self.redis.set(self._window_key(key), repr(float(timestamp)), ex=_ttl(ttl_seconds)),
        )

    async def reset(self, key: str) -> None:
        await self._execute("reset", self.redis.delete(self._count_key(key), self._window_key(key)))

    async def check_and_increment(self, key: str, now: float, window_seconds: int) -> tuple[int, float]:
        count, start = await self._execute(
            "check_and_increment",
            self.redis.eval(
                CHECK_AND_INCREMENT_SCRIPT,
                2,
                self._count_key(key),
                self._window_key(key),
                repr(float(now)),
                window_seconds,
                _ttl(window_seconds),
            ),
        )
        return int(count), float(start)

    async def ping(self) -> bool:
        """Probe Redis, updating availability."""
        try:
            return bool(await self._execute("ping", self.redis.ping()))
        except CounterStoreError:
            return False

    async def health_check(self) -> dict[str, Any]:
        connected = await self.ping()
        return {
            "backend": self.name,
            "available": self.is_available(),
            "redis_connected": connected,
            "consecutive_failures": self._consecutive_failures,
            "stats": dict(self._stats),
        }

    async def close(self) -> None:
        await self.redis.aclose()
