"""
Bounded in-memory caches.

LRUCache is a plain entry-count bounded mapping; RetrievalCache puts a
retrieval hook in front of it so misses are resolved from the origin.
"""
from collections import OrderedDict
from typing import Awaitable, Callable, Generic, Hashable, Optional, TypeVar

import structlog
from prometheus_client import Counter

log = structlog.get_logger()

CACHE_HITS = Counter('profiles_cache_hits_total', 'Retrieval cache hits')
CACHE_MISSES = Counter('profiles_cache_misses_total', 'Retrieval cache misses')

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

RetrievalHook = Callable[[K, int], Awaitable[Optional[V]]]


class LRUCache(Generic[K, V]):
    """Least-recently-used mapping bounded by entry count."""

    def __init__(self, max_size: int):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._entries: "OrderedDict[K, V]" = OrderedDict()

    def get(self, key: K) -> Optional[V]:
        if key not in self._entries:
            return None
        self._entries.move_to_end(key)
        return self._entries[key]

    def set(self, key: K, value: V):
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            log.debug("cache_evicted", key=evicted)

    def delete(self, key: K):
        self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()

    def __contains__(self, key) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class RetrievalCache(Generic[K, V]):
    """
    LRU cache that resolves misses through a retrieval hook.

    Hook failures propagate and nothing is cached. Concurrent misses for the
    same key each call the hook; there is no request coalescing.
    """

    def __init__(self, max_size: int, retrieval_hook: RetrievalHook):
        self._cache: LRUCache[K, V] = LRUCache(max_size)
        self._retrieval_hook = retrieval_hook

    async def get(self, key: K, timeout_ms: int) -> Optional[V]:
        cached = self._cache.get(key)
        if cached is not None:
            CACHE_HITS.inc()
            log.debug("cache_hit", key=key)
            return cached

        CACHE_MISSES.inc()
        log.debug("cache_miss", key=key)
        value = await self._retrieval_hook(key, timeout_ms)
        if value is not None:
            self._cache.set(key, value)
        return value

    def set(self, key: K, value: V):
        self._cache.set(key, value)

    def delete(self, key: K):
        self._cache.delete(key)

    def __contains__(self, key) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        return len(self._cache)
