"""
Cache backends for the question cache
- key/value with per-entry TTL
- LRU eviction (in-memory)
- vector search over stored question embeddings
"""
from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import Callable, List, Optional, Sequence, Tuple

from bicopilot.context.models import CacheEntry
from bicopilot.core.embedding import cosine_similarity

__all__ = ["CacheBackend", "InMemoryCacheBackend"]


class CacheBackend:
    """get/set/remove by key with TTL, plus top-k vector search"""

    name = "abstract"

    async def get(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    async def set(self, key: str, entry: CacheEntry) -> None:
        """Store ``entry``; its ``expires_at`` carries the TTL."""
        raise NotImplementedError

    async def remove(self, key: str) -> bool:
        raise NotImplementedError

    async def keys(self) -> List[str]:
        raise NotImplementedError

    async def vector_search(self, embedding: Sequence[float], top_k: int) -> List[Tuple[str, CacheEntry, float]]:
        """(key, entry, cosine similarity), best first; expired entries excluded."""
        raise NotImplementedError

    async def clear(self) -> int:
        raise NotImplementedError

    async def size(self) -> int:
        return len(await self.keys())


class InMemoryCacheBackend(CacheBackend):
    """LRU dict guarded by an asyncio.Lock"""

    name = "memory"

    def __init__(self, max_entries: int = 1000, *, clock: Callable[[], float] = time.time):
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = asyncio.Lock()

    def _drop_expired(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._cache.items() if e.is_expired(now)]:
            del self._cache[key]

    async def get(self, key: str) -> Optional[CacheEntry]:
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._cache[key]
                return None
            # LRU: most recently used goes to the end
            self._cache.move_to_end(key)
            return entry

    async def set(self, key: str, entry: CacheEntry) -> None:
        async with self._lock:
            self._cache.pop(key, None)
            while len(self._cache) >= self._max_entries:
                self._cache.popitem(last=False)
            self._cache[key] = entry

    async def remove(self, key: str) -> bool:
        async with self._lock:
            return self._cache.pop(key, None) is not None

    async def keys(self) -> List[str]:
        async with self._lock:
            self._drop_expired()
            return list(self._cache.keys())

    async def vector_search(self, embedding: Sequence[float], top_k: int) -> List[Tuple[str, CacheEntry, float]]:
        async with self._lock:
            now = self._clock()
            scored = [
                (key, entry, cosine_similarity(embedding, entry.question_embedding))
                for key, entry in self._cache.items()
                if entry.question_embedding and not entry.is_expired(now)
            ]
        scored.sort(key=lambda x: (-x[2], x[0]))
        return scored[: max(0, int(top_k))]

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._cache)
            self._cache.clear()
            return count
