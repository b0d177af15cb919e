"""Windowed rate limiting over a counter store.

The algorithm is a fixed window with lazy reset: a window starts on the first
request after the previous one expired, and the count resets with it. A burst
straddling a window boundary can briefly admit up to twice ``max_requests``;
that is the cost of O(1) storage per key. Older callers refer to this as a
"sliding window"; the behaviour has always been fixed-window.
"""

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from ..exceptions import ConfigurationError, CounterStoreError
from ..storage.base import CounterStore

logger = structlog.get_logger(__name__)


@dataclass
class RateLimitConfig:
    """One quota rule."""

    max_requests: int
    window_size_seconds: int
    identifier: str
    key_prefix: str = "rate_limit"

    def __post_init__(self) -> None:
        if self.max_requests <= 0:
            raise ConfigurationError("max_requests must be positive", "max_requests", self.max_requests)
        if self.window_size_seconds <= 0:
            raise ConfigurationError(
                "window_size_seconds must be positive", "window_size_seconds", self.window_size_seconds
            )

    @property
    def key(self) -> str:
        """Storage key; the window size is part of it so different windows never collide."""
        return f"{self.key_prefix}:{self.identifier}:{self.window_size_seconds}"


@dataclass
class RateLimitStatus:
    """Result of a rate limit check."""

    is_limited: bool
    current_requests: int
    max_requests: int
    reset_time_seconds: int
    window_start: datetime
    reset_time: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.max_requests - self.current_requests)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "is_limited": self.is_limited,
            "current_requests": self.current_requests,
            "max_requests": self.max_requests,
            "remaining": self.remaining,
            "reset_time_seconds": self.reset_time_seconds,
            "window_start": self.window_start.isoformat(),
            "reset_time": self.reset_time.isoformat(),
        }


class WindowedRateLimiter:
    """Fixed-window rate limiter backed by a ``CounterStore``."""

    def __init__(self, store: CounterStore, clock: Callable[[], float] = time.time) -> None:
        """Initialize rate limiter.

        Args:
            store: Counter store, usually a ``FailoverCounterStore``
            clock: Source of epoch seconds
        """
        self.store = store
        self._clock = clock

    def _status(
        self, config: RateLimitConfig, count: int, window_start: float, now: float, limited: bool
    ) -> RateLimitStatus:
        window_end = window_start + config.window_size_seconds
        return RateLimitStatus(
            is_limited=limited,
            current_requests=count,
            max_requests=config.max_requests,
            reset_time_seconds=max(0, math.ceil(window_end - now)),
            window_start=datetime.fromtimestamp(window_start, UTC),
            reset_time=datetime.fromtimestamp(window_end, UTC),
        )

    async def check_limit(self, config: RateLimitConfig) -> RateLimitStatus:
        """Count a request against the quota.

        Starts a new window when none exists or the current one has elapsed,
        then increments. The request that brings the count to exactly
        ``max_requests`` is still allowed.

        Args:
            config: Quota rule to apply

        Returns:
            Status after counting this request
        """
        now = self._clock()
        try:
            count, window_start = await self.store.check_and_increment(config.key, now, config.window_size_seconds)
        except CounterStoreError as e:
            logger.error("Rate limit check failed, allowing request", key=config.key, error=e.message)
            return self._status(config, 0, now, now, limited=False)

        status = self._status(config, count, window_start, now, limited=count > config.max_requests)
        if status.is_limited:
            logger.info(
                "Rate limit exceeded",
                key=config.key,
                current=count,
                max=config.max_requests,
                reset_in=status.reset_time_seconds,
            )
        return status

    async def check_limit_only(self, config: RateLimitConfig) -> RateLimitStatus:
        """Read the quota without consuming it.

        ``is_limited`` here means the quota is used up, so the next counted
        request would be refused. An absent or elapsed window reads as empty.

        Args:
            config: Quota rule to inspect

        Returns:
            Current status; the store is not modified
        """
        now = self._clock()
        try:
            window_start = await self.store.get_window_start(config.key)
            if window_start is None or now - window_start >= config.window_size_seconds:
                return self._status(config, 0, now, now, limited=False)
            count = await self.store.get_count(config.key)
        except CounterStoreError as e:
            logger.error("Rate limit status read failed, reporting empty window", key=config.key, error=e.message)
            return self._status(config, 0, now, now, limited=False)

        return self._status(config, count, window_start, now, limited=count >= config.max_requests)

    async def get_status(self, config: RateLimitConfig) -> RateLimitStatus:
        """Alias of ``check_limit_only`` for status queries."""
        return await self.check_limit_only(config)

    async def reset_limit(self, config: RateLimitConfig) -> None:
        """Clear the counter and window start for a quota."""
        try:
            await self.store.reset(config.key)
            logger.info("Rate limit reset", key=config.key)
        except CounterStoreError as e:
            logger.error("Rate limit reset failed", key=config.key, error=e.message)
