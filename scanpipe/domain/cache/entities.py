"""
Cache Domain Entities

Core domain entities for tiered cache management.
Encapsulates freshness rules and the durable storage envelope.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .value_objects import TTL, CacheKey, CacheTier


@dataclass
class CacheEntry:
    """
    Cached value stored in one tier.

    An entry whose age exceeds its TTL is logically absent: tiers drop it
    on read instead of returning it.
    """

    key: CacheKey
    value: Any
    tier: CacheTier
    namespace: str
    ttl: TTL
    written_at: float
    compress: bool = False

    @classmethod
    def create(
        cls,
        key: CacheKey,
        value: Any,
        tier: CacheTier,
        namespace: str,
        ttl: TTL,
        compress: bool = False,
        now: Optional[float] = None,
    ) -> "CacheEntry":
        """Create a new entry stamped with the current time."""
        return cls(
            key=key,
            value=value,
            tier=tier,
            namespace=namespace,
            ttl=ttl,
            written_at=time.time() if now is None else now,
            compress=compress,
        )

    @property
    def storage_key(self) -> str:
        return self.key.namespaced(self.namespace)

    @property
    def expires_at(self) -> float:
        return self.written_at + self.ttl.seconds

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since the entry was written."""
        now = time.time() if now is None else now
        return max(0.0, now - self.written_at)

    def is_fresh(self, now: Optional[float] = None) -> bool:
        """Check if the entry is still within its TTL."""
        return self.age(now) <= self.ttl.seconds

    def remaining_ttl(self, now: Optional[float] = None) -> float:
        """Seconds left before the entry expires."""
        return max(0.0, self.ttl.seconds - self.age(now))

    def to_envelope(self) -> Dict[str, Any]:
        """Serializable envelope stored by the durable tier."""
        return {"v": self.value, "w": self.written_at, "t": self.ttl.seconds}

    @classmethod
    def from_envelope(
        cls,
        key: CacheKey,
        namespace: str,
        envelope: Dict[str, Any],
        compress: bool = False,
    ) -> "CacheEntry":
        """Rebuild an entry read back from the durable tier.

        Raises:
            ValueError: If the envelope is malformed
        """
        try:
            return cls(
                key=key,
                value=envelope["v"],
                tier=CacheTier.DURABLE,
                namespace=namespace,
                ttl=TTL(float(envelope["t"])),
                written_at=float(envelope["w"]),
                compress=compress,
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed cache envelope for {key}: {e}") from e
