"""Unit tests for the windowed rate limiter."""

import pytest

from services.abuse_guard.src.exceptions import ConfigurationError
from services.abuse_guard.src.rate_limiting.limiter import RateLimitConfig, WindowedRateLimiter


@pytest.fixture
def limiter(memory_store, clock):
    """Create rate limiter over the memory store."""
    return WindowedRateLimiter(memory_store, clock=clock)


@pytest.fixture
def config():
    """Create a 3-per-minute quota."""
    return RateLimitConfig(max_requests=3, window_size_seconds=60, identifier="user:alice")


class TestRateLimitConfig:
    """Test RateLimitConfig validation and keys."""

    def test_key_includes_window(self):
        """Test the storage key carries prefix, identifier and window."""
        config = RateLimitConfig(max_requests=5, window_size_seconds=300, identifier="job:build", key_prefix="job")
        assert config.key == "job:job:build:300"

    def test_default_prefix(self, config):
        """Test the default key prefix."""
        assert config.key == "rate_limit:user:alice:60"

    @pytest.mark.parametrize(("max_requests", "window"), [(0, 60), (-1, 60), (5, 0)])
    def test_rejects_non_positive_values(self, max_requests, window):
        """Test invalid quotas are rejected on construction."""
        with pytest.raises(ConfigurationError):
            RateLimitConfig(max_requests=max_requests, window_size_seconds=window, identifier="x")


class TestWindowedRateLimiter:
    """Test WindowedRateLimiter counting."""

    @pytest.mark.asyncio
    async def test_allows_up_to_max_then_limits(self, limiter, config):
        """Test requests 1..N pass and N+1 is limited."""
        for expected in range(1, 4):
            status = await limiter.check_limit(config)
            assert status.is_limited is False
            assert status.current_requests == expected

        status = await limiter.check_limit(config)
        assert status.is_limited is True
        assert status.current_requests == 4
        assert status.remaining == 0

    @pytest.mark.asyncio
    async def test_window_resets_after_expiry(self, limiter, config, clock):
        """Test the count restarts once the window has elapsed."""
        for _ in range(4):
            await limiter.check_limit(config)

        clock.advance(60)
        status = await limiter.check_limit(config)

        assert status.is_limited is False
        assert status.current_requests == 1
        assert status.window_start.timestamp() == clock()

    @pytest.mark.asyncio
    async def test_reset_time_counts_down(self, limiter, config, clock):
        """Test reset seconds reflect time left in the window."""
        await limiter.check_limit(config)
        clock.advance(20.5)

        status = await limiter.check_limit(config)

        assert status.reset_time_seconds == 40
        assert status.reset_time.timestamp() == clock() - 20.5 + 60

    @pytest.mark.asyncio
    async def test_check_limit_only_does_not_consume(self, limiter, config, memory_store):
        """Test read-only checks leave the counter untouched."""
        await limiter.check_limit(config)

        for _ in range(5):
            status = await limiter.check_limit_only(config)

        assert status.current_requests == 1
        assert await memory_store.get_count(config.key) == 1

    @pytest.mark.asyncio
    async def test_check_limit_only_reports_exhausted_quota(self, limiter, config):
        """Test a fully used quota reads as limited."""
        for _ in range(3):
            await limiter.check_limit(config)

        status = await limiter.check_limit_only(config)

        assert status.is_limited is True
        assert status.current_requests == 3

    @pytest.mark.asyncio
    async def test_check_limit_only_empty_window(self, limiter, config, clock):
        """Test an elapsed window reads as empty without a store write."""
        await limiter.check_limit(config)
        clock.advance(61)

        status = await limiter.check_limit_only(config)

        assert status.is_limited is False
        assert status.current_requests == 0

    @pytest.mark.asyncio
    async def test_reset_limit(self, limiter, config):
        """Test reset clears the quota."""
        for _ in range(4):
            await limiter.check_limit(config)

        await limiter.reset_limit(config)
        status = await limiter.check_limit(config)

        assert status.current_requests == 1
        assert status.is_limited is False

    @pytest.mark.asyncio
    async def test_distinct_windows_do_not_collide(self, limiter):
        """Test the same identifier with different windows counts separately."""
        short = RateLimitConfig(max_requests=1, window_size_seconds=10, identifier="user:bob")
        long = RateLimitConfig(max_requests=1, window_size_seconds=3600, identifier="user:bob")

        await limiter.check_limit(short)
        status = await limiter.check_limit(long)

        assert status.current_requests == 1

    @pytest.mark.asyncio
    async def test_store_failure_allows_request(self, failing_store, clock, config):
        """Test storage errors never block."""
        limiter = WindowedRateLimiter(failing_store, clock=clock)

        status = await limiter.check_limit(config)
        read_only = await limiter.check_limit_only(config)

        assert status.is_limited is False
        assert read_only.is_limited is False
        assert failing_store.calls == 2

    @pytest.mark.asyncio
    async def test_status_to_dict(self, limiter, config):
        """Test status serialization."""
        await limiter.check_limit(config)
        status = await limiter.check_limit(config)

        data = status.to_dict()

        assert data["remaining"] == 1
        assert data["reset_time_seconds"] == 60
        assert data["window_start"].startswith("2023-11-14T22:13:20")
