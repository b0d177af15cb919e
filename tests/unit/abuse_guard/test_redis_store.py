"""Unit tests for the Redis counter store."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from services.abuse_guard.src.exceptions import CounterStoreError, CounterStoreTimeoutError
from services.abuse_guard.src.storage.redis_store import (
    CHECK_AND_INCREMENT_SCRIPT,
    INCREMENT_SCRIPT,
    RedisCounterStore,
)


@pytest.fixture
def mock_redis():
    """Create mock Redis client."""
    redis_mock = AsyncMock()
    redis_mock.ping.return_value = True
    return redis_mock


@pytest.fixture
def store(mock_redis, clock):
    """Create Redis counter store."""
    return RedisCounterStore(mock_redis, key_prefix="test:", operation_timeout=0.05, retry_interval=5.0, clock=clock)


class TestRedisCounterStore:
    """Test RedisCounterStore operations."""

    @pytest.mark.asyncio
    async def test_get_count(self, store, mock_redis):
        """Test counts are read from the prefixed count key."""
        mock_redis.get.return_value = "4"

        assert await store.get_count("user:1") == 4
        mock_redis.get.assert_awaited_once_with("test:count:user:1")

    @pytest.mark.asyncio
    async def test_get_count_missing(self, store, mock_redis):
        """Test a missing counter reads as zero."""
        mock_redis.get.return_value = None

        assert await store.get_count("user:1") == 0

    @pytest.mark.asyncio
    async def test_increment_uses_atomic_script(self, store, mock_redis):
        """Test increments go through the INCR+EXPIRE script."""
        mock_redis.eval.return_value = 1

        assert await store.increment_count("user:1", 60) == 1
        mock_redis.eval.assert_awaited_once_with(INCREMENT_SCRIPT, 1, "test:count:user:1", 60)

    @pytest.mark.asyncio
    async def test_window_start_round_trip_arguments(self, store, mock_redis):
        """Test window starts are written with an expiry and parsed as floats."""
        await store.set_window_start("user:1", 1700000000.25, 30)
        mock_redis.set.assert_awaited_once_with("test:window:user:1", "1700000000.25", ex=30)

        mock_redis.get.return_value = "1700000000.25"
        assert await store.get_window_start("user:1") == 1700000000.25

    @pytest.mark.asyncio
    async def test_reset_deletes_both_keys(self, store, mock_redis):
        """Test reset removes counter and window keys."""
        await store.reset("user:1")
        mock_redis.delete.assert_awaited_once_with("test:count:user:1", "test:window:user:1")

    @pytest.mark.asyncio
    async def test_check_and_increment_single_round_trip(self, store, mock_redis):
        """Test the window check and increment run as one script."""
        mock_redis.eval.return_value = [3, "1700000000.0"]

        count, start = await store.check_and_increment("user:1", 1700000010.0, 60)

        assert (count, start) == (3, 1700000000.0)
        args = mock_redis.eval.await_args.args
        assert args[0] == CHECK_AND_INCREMENT_SCRIPT
        assert args[1:4] == (2, "test:count:user:1", "test:window:user:1")

    @pytest.mark.asyncio
    async def test_redis_error_marks_unavailable(self, store, mock_redis):
        """Test backend errors are wrapped and flip availability."""
        mock_redis.get.side_effect = RedisConnectionError("Connection refused")

        with pytest.raises(CounterStoreError) as exc_info:
            await store.get_count("user:1")

        assert exc_info.value.operation == "get_count"
        assert store.is_available() is False

    @pytest.mark.asyncio
    async def test_timeout_is_bounded(self, store, mock_redis):
        """Test slow calls are cut off by the operation timeout."""

        async def slow_get(key):
            await asyncio.sleep(1)
            return "1"

        mock_redis.get.side_effect = slow_get

        with pytest.raises(CounterStoreTimeoutError):
            await store.get_count("user:1")
        assert store.is_available() is False

    @pytest.mark.asyncio
    async def test_availability_recovers_after_retry_interval(self, store, mock_redis, clock):
        """Test the store probes again after the retry interval and heals on success."""
        mock_redis.get.side_effect = RedisConnectionError("down")
        with pytest.raises(CounterStoreError):
            await store.get_count("user:1")

        clock.advance(4)
        assert store.is_available() is False
        clock.advance(1)
        assert store.is_available() is True

        mock_redis.get.side_effect = None
        mock_redis.get.return_value = "2"
        assert await store.get_count("user:1") == 2
        assert store._available is True

    @pytest.mark.asyncio
    async def test_health_check(self, store, mock_redis):
        """Test health check pings Redis."""
        health = await store.health_check()

        assert health["backend"] == "redis"
        assert health["redis_connected"] is True
        assert health["available"] is True
