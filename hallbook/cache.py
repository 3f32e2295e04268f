"""Short-lived in-process caches for hall status and resolved principals."""
from __future__ import annotations

from threading import RLock
from typing import Callable, Generic, Hashable, Optional, TypeVar

from cachetools import TTLCache

T = TypeVar("T")


class SimpleTTLCache(Generic[T]):
    """Thread-safe TTL cache.

    Sync routes run in the threadpool, so reads and writes go through a lock.
    """

    def __init__(self, ttl: float, maxsize: int = 256) -> None:
        self._cache: TTLCache[Hashable, T] = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = RLock()

    def get(self, key: Hashable) -> Optional[T]:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: Hashable, value: T) -> None:
        with self._lock:
            self._cache[key] = value

    def get_or_set(self, key: Hashable, factory: Callable[[], T]) -> T:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = factory()
        self.set(key, value)
        return value

    def pop(self, key: Hashable) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
