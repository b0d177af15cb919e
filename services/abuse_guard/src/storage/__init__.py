"""Counter store backends."""

from .base import CounterStore
from .failover import FailoverCounterStore
from .memory_store import MemoryCounterStore
from .redis_store import RedisCounterStore

__all__ = [
    "CounterStore",
    "FailoverCounterStore",
    "MemoryCounterStore",
    "RedisCounterStore",
]
