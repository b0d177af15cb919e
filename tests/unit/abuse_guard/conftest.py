"""Shared fixtures for abuse guard tests."""

import pytest

from services.abuse_guard.src.exceptions import CounterStoreError
from services.abuse_guard.src.storage.base import CounterStore
from services.abuse_guard.src.storage.memory_store import MemoryCounterStore

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingCounterStore(CounterStore):
    """Store whose backend is unreachable for every call."""

    name = "failing"

    def __init__(self) -> None:
        self.calls = 0

    def _fail(self, operation: str) -> CounterStoreError:
        self.calls += 1
        return CounterStoreError("Connection refused", backend=self.name, operation=operation)

    async def get_count(self, key: str) -> int:
        raise self._fail("get_count")

    async def increment_count(self, key: str, window_seconds: int) -> int:
        raise self._fail("increment_count")

    async def get_window_start(self, key: str) -> float | None:
        raise self._fail("get_window_start")

    async def set_window_start(self, key: str, timestamp: float, ttl_seconds: int) -> None:
        raise self._fail("set_window_start")

    async def reset(self, key: str) -> None:
        raise self._fail("reset")

    def is_available(self) -> bool:
        return False


@pytest.fixture
def clock():
    """Create a fake clock."""
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    """Create an in-memory counter store on the fake clock."""
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def failing_store():
    """Create a counter store that fails every call."""
    return FailingCounterStore()
