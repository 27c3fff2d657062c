"""
Small in-process cache with pluggable eviction.

Each cache is owned by whoever constructs it (the services container owns the
shop lookup cache) and is cleared when its owner closes. Expiry is lazy: an
entry past its TTL is dropped the next time it is read or on
:meth:`Cache.purge_expired`.
"""
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from threading import RLock
from typing import Callable, Dict, Generic, Optional, TypeVar

K = TypeVar('K')
V = TypeVar('V')


class EvictionPolicy(Enum):
    LRU = "LRU"
    FIFO = "FIFO"


@dataclass
class CacheEntry(Generic[V]):
    value: V
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class EvictionStrategy(ABC, Generic[K]):

    @abstractmethod
    def on_get(self, key: K) -> None:
        pass

    @abstractmethod
    def on_put(self, key: K) -> None:
        pass

    @abstractmethod
    def evict(self) -> Optional[K]:
        """Select and forget the key to evict."""

    @abstractmethod
    def remove(self, key: K) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass


class LRUEvictionStrategy(EvictionStrategy[K]):
    """Least recently used"""

    def __init__(self):
        self._order: "OrderedDict[K, None]" = OrderedDict()

    def on_get(self, key: K) -> None:
        if key in self._order:
            self._order.move_to_end(key)

    def on_put(self, key: K) -> None:
        self._order[key] = None
        self._order.move_to_end(key)

    def evict(self) -> Optional[K]:
        if not self._order:
            return None
        key, _ = self._order.popitem(last=False)
        return key

    def remove(self, key: K) -> None:
        self._order.pop(key, None)

    def clear(self) -> None:
        self._order.clear()


class FIFOEvictionStrategy(EvictionStrategy[K]):
    """First in, first out; reads do not refresh position"""

    def __init__(self):
        self._queue: "OrderedDict[K, None]" = OrderedDict()

    def on_get(self, key: K) -> None:
        pass

    def on_put(self, key: K) -> None:
        if key not in self._queue:
            self._queue[key] = None

    def evict(self) -> Optional[K]:
        if not self._queue:
            return None
        key, _ = self._queue.popitem(last=False)
        return key

    def remove(self, key: K) -> None:
        self._queue.pop(key, None)

    def clear(self) -> None:
        self._queue.clear()


_STRATEGIES = {
    EvictionPolicy.LRU: LRUEvictionStrategy,
    EvictionPolicy.FIFO: FIFOEvictionStrategy,
}


def create_strategy(policy: EvictionPolicy) -> EvictionStrategy:
    strategy_class = _STRATEGIES.get(policy)
    if strategy_class is None:
        raise ValueError(f"Unknown eviction policy: {policy}")
    return strategy_class()


class Cache(Generic[K, V]):
    """
    Thread-safe bounded cache.

    :param capacity: maximum number of entries.
    :param eviction_policy: which entry to drop when full.
    :param ttl_seconds: default lifetime of an entry, ``None`` for no expiry.
    :param time_func: monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        capacity: int,
        eviction_policy: EvictionPolicy = EvictionPolicy.LRU,
        ttl_seconds: Optional[float] = None,
        time_func: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0:
            raise ValueError("Capacity must be positive")
        self._capacity = capacity
        self._ttl = ttl_seconds
        self._time = time_func
        self._entries: Dict[K, CacheEntry[V]] = {}
        self._strategy = create_strategy(eviction_policy)
        self._stats = CacheStats()
        self._lock = RLock()
        self._closed = False

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            if entry.is_expired(self._time()):
                self._remove_entry(key)
                self._stats.misses += 1
                self._stats.expirations += 1
                return None
            self._strategy.on_get(key)
            self._stats.hits += 1
            return entry.value

    def put(self, key: K, value: V, ttl_seconds: Optional[float] = None) -> None:
        if self._closed:
            raise RuntimeError("Cache is closed")
        ttl = ttl_seconds if ttl_seconds is not None else self._ttl
        expires_at = self._time() + ttl if ttl is not None else None
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._capacity:
                evicted = self._strategy.evict()
                if evicted is not None:
                    del self._entries[evicted]
                    self._stats.evictions += 1
            self._entries[key] = CacheEntry(value=value, expires_at=expires_at)
            self._strategy.on_put(key)

    def remove(self, key: K) -> bool:
        with self._lock:
            if key in self._entries:
                self._remove_entry(key)
                return True
            return False

    def _remove_entry(self, key: K) -> None:
        del self._entries[key]
        self._strategy.remove(key)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._time()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                self._remove_entry(key)
            self._stats.expirations += len(expired)
            return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(**vars(self._stats))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._strategy.clear()

    def close(self) -> None:
        self.clear()
        self._closed = True
