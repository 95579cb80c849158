"""
Cache Repository Interfaces

Abstract interface implemented by every cache tier.
Defines the contract the tiered cache relies on.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .entities import CacheEntry
from .value_objects import CacheKey, CachePattern, CacheTier


class CacheTierRepository(ABC):
    """
    Storage tier holding cache entries grouped by namespace.

    Implementations backed by remote storage raise ``CacheTierUnavailable``
    when the backing store cannot be reached; in-process implementations
    never raise.
    """

    tier: CacheTier

    @abstractmethod
    async def get(self, namespace: str, key: CacheKey) -> Optional[CacheEntry]:
        """Return the fresh entry for key, or None if absent or expired."""

    @abstractmethod
    async def set(self, entry: CacheEntry, max_entries: Optional[int] = None) -> None:
        """Store an entry.

        Args:
            entry: Entry to store (namespace and TTL come from the entry)
            max_entries: Capacity hint for tiers with bounded size
        """

    @abstractmethod
    async def delete(self, namespace: str, key: CacheKey) -> bool:
        """Remove one key. Returns True if something was removed."""

    @abstractmethod
    async def exists(self, namespace: str, key: CacheKey) -> bool:
        """Check whether a fresh entry exists."""

    @abstractmethod
    async def clear(self, namespace: str, pattern: CachePattern) -> int:
        """Remove every key in namespace matching pattern. Returns count."""

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        """Tier-specific counters for monitoring."""

    async def close(self) -> None:
        """Release resources held by the tier."""
