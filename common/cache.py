"""Retention-window cache for query entries."""
from __future__ import annotations

import time
from typing import Callable, Generic, Hashable, List, Optional, TypeVar

from cachetools import TLRUCache

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class RetentionCache(Generic[K, V]):
    """Entries are evicted ``retention(value)`` seconds after they were last used.

    Every ``get`` or ``set`` restarts the entry's retention window, so an entry
    only disappears once nothing has touched it for that long.
    """

    def __init__(
        self,
        retention: Callable[[V], float],
        maxsize: int = 1024,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._retention = retention
        self._cache: TLRUCache[K, V] = TLRUCache(maxsize=maxsize, ttu=self._time_to_use, timer=timer)

    def _time_to_use(self, _key: K, value: V, now: float) -> float:
        return now + self._retention(value)

    def get(self, key: K) -> Optional[V]:
        value = self._cache.get(key)
        if value is not None:
            self._cache[key] = value
        return value

    def set(self, key: K, value: V) -> None:
        self._cache[key] = value

    def pop(self, key: K) -> None:
        self._cache.pop(key, None)

    def keys(self) -> List[K]:
        self._cache.expire()
        return list(self._cache.keys())

    def clear(self) -> None:
        self._cache.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        self._cache.expire()
        return len(self._cache)
