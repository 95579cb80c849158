"""
In-Memory Cache Repository

Fast tier: per-namespace LRU with TTL expiry kept in process memory.
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

from ...domain.cache.entities import CacheEntry
from ...domain.cache.repository_interfaces import CacheTierRepository
from ...domain.cache.value_objects import CacheKey, CachePattern, CacheTier

logger = logging.getLogger(__name__)


class MemoryCacheRepository(CacheTierRepository):
    """
    LRU cache bounded per namespace.

    Reads refresh recency; writes evict the least recently used entries once
    the namespace exceeds its capacity. Expired entries are dropped lazily.
    """

    tier = CacheTier.FAST

    def __init__(
        self,
        default_max_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        if default_max_size < 1:
            raise ValueError("default_max_size must be at least 1")
        self.default_max_size = default_max_size
        self._clock = clock
        self._namespaces: Dict[str, "OrderedDict[str, CacheEntry]"] = {}
        self._limits: Dict[str, int] = {}
        self._evictions = 0
        self._expirations = 0

    def _bucket(self, namespace: str) -> "OrderedDict[str, CacheEntry]":
        return self._namespaces.setdefault(namespace, OrderedDict())

    async def get(self, namespace: str, key: CacheKey) -> Optional[CacheEntry]:
        bucket = self._namespaces.get(namespace)
        if not bucket:
            return None

        entry = bucket.get(key.value)
        if entry is None:
            return None

        if not entry.is_fresh(self._clock()):
            del bucket[key.value]
            self._expirations += 1
            return None

        bucket.move_to_end(key.value)
        return entry

    async def set(self, entry: CacheEntry, max_entries: Optional[int] = None) -> None:
        if max_entries is not None:
            self._limits[entry.namespace] = max_entries
        limit = self._limits.get(entry.namespace, self.default_max_size)

        bucket = self._bucket(entry.namespace)
        bucket[entry.key.value] = entry
        bucket.move_to_end(entry.key.value)

        while len(bucket) > limit:
            evicted_key, _ = bucket.popitem(last=False)
            self._evictions += 1
            logger.debug(f"Evicted {entry.namespace}:{evicted_key} from fast tier")

    async def delete(self, namespace: str, key: CacheKey) -> bool:
        bucket = self._namespaces.get(namespace)
        if not bucket:
            return False
        return bucket.pop(key.value, None) is not None

    async def exists(self, namespace: str, key: CacheKey) -> bool:
        return await self.get(namespace, key) is not None

    async def clear(self, namespace: str, pattern: CachePattern) -> int:
        bucket = self._namespaces.get(namespace)
        if not bucket:
            return 0

        if pattern.value == "*":
            removed = len(bucket)
            bucket.clear()
            return removed

        if not pattern.is_wildcard:
            return 1 if bucket.pop(pattern.value, None) is not None else 0

        matched = [key for key in bucket if pattern.matches(key)]
        for key in matched:
            del bucket[key]
        return len(matched)

    def size(self, namespace: Optional[str] = None) -> int:
        """Number of stored entries, including not yet collected expired ones."""
        if namespace is not None:
            return len(self._namespaces.get(namespace, ()))
        return sum(len(bucket) for bucket in self._namespaces.values())

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "entries": self.size(),
            "namespaces": {ns: len(bucket) for ns, bucket in self._namespaces.items()},
            "evictions": self._evictions,
            "expirations": self._expirations,
        }
