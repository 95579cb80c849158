"""
Cache Value Objects

Immutable value objects for the tiered cache following DDD principles.
Provides type safety for keys, patterns, TTLs and tier strategies.
"""

import fnmatch
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from ...constants import ANALYTICS_NAMESPACE, SCANS_NAMESPACE


class CacheTier(str, Enum):
    """Storage tiers consulted by the tiered cache, fastest first."""

    FAST = "fast"
    DURABLE = "durable"


@dataclass(frozen=True)
class TTL:
    """
    Time To Live value object for cache expiration.

    Stored in seconds; fractional values are allowed for the in-process tier.
    """

    seconds: float

    MAX_SECONDS = 86400 * 30

    def __post_init__(self) -> None:
        """Validate TTL value."""
        if self.seconds <= 0:
            raise ValueError("TTL must be positive")
        if self.seconds > self.MAX_SECONDS:
            raise ValueError("TTL too large (max 30 days)")

    @classmethod
    def milliseconds(cls, milliseconds: int) -> "TTL":
        """Create TTL from milliseconds."""
        return cls(milliseconds / 1000)

    @classmethod
    def minutes(cls, minutes: int) -> "TTL":
        """Create TTL from minutes."""
        return cls(minutes * 60)

    @classmethod
    def hours(cls, hours: int) -> "TTL":
        """Create TTL from hours."""
        return cls(hours * 3600)

    @classmethod
    def days(cls, days: int) -> "TTL":
        """Create TTL from days."""
        return cls(days * 86400)

    @property
    def whole_seconds(self) -> int:
        """TTL rounded up to whole seconds (Redis EX granularity)."""
        whole = int(self.seconds)
        return whole if whole == self.seconds else whole + 1

    def __str__(self) -> str:
        return f"{self.seconds:g}s"


@dataclass(frozen=True)
class CacheKey:
    """
    Immutable cache key value object.

    Keys are relative to a namespace; the namespace is applied by the tier.
    """

    value: str

    MAX_LENGTH = 250

    def __post_init__(self) -> None:
        """Validate cache key format."""
        if not self.value:
            raise ValueError("Cache key cannot be empty")

        if len(self.value) > self.MAX_LENGTH:
            raise ValueError(f"Cache key too long (max {self.MAX_LENGTH} characters)")

        if any(char.isspace() for char in self.value):
            raise ValueError("Cache key cannot contain whitespace")

        if "*" in self.value:
            raise ValueError("Cache key cannot contain wildcards, use CachePattern")

    @classmethod
    def scan(cls, subject: str, chains: Optional[Iterable[str]] = None) -> "CacheKey":
        """Create scan result key, optionally scoped to a chain selection."""
        if chains:
            return cls(f"scan:{subject}:{','.join(sorted(chains))}")
        return cls(f"scan:{subject}")

    @classmethod
    def positions(cls, subject: str, suffix: str = "all") -> "CacheKey":
        """Create positions key for a subject."""
        return cls(f"positions:{subject}:{suffix}")

    @classmethod
    def analytics(cls, subject: str, timeframe: str) -> "CacheKey":
        """Create analytics key for a subject and timeframe."""
        return cls(f"analytics:{subject}:{timeframe}")

    def namespaced(self, namespace: str) -> str:
        """Return the fully qualified storage key."""
        return f"{namespace}:{self.value}"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class CachePattern:
    """
    Key pattern used for bulk removal.

    Either an exact key or a glob pattern (``scan:0xabc*``, ``*``).
    """

    value: str

    def __post_init__(self) -> None:
        """Validate pattern format."""
        if not self.value:
            raise ValueError("Cache pattern cannot be empty")

        if any(char.isspace() for char in self.value):
            raise ValueError("Cache pattern cannot contain whitespace")

    @classmethod
    def all(cls) -> "CachePattern":
        """Pattern matching every key in a namespace."""
        return cls("*")

    @property
    def is_wildcard(self) -> bool:
        """Check if pattern needs glob matching."""
        return any(char in self.value for char in "*?[")

    def matches(self, key: str) -> bool:
        """Check if a namespace-relative key matches this pattern."""
        if not self.is_wildcard:
            return key == self.value
        return fnmatch.fnmatchcase(key, self.value)

    def namespaced(self, namespace: str) -> str:
        """Return the fully qualified storage pattern."""
        return f"{namespace}:{self.value}"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class FastTierConfig:
    """In-process tier configuration."""

    namespace: str
    ttl: TTL
    max_size: int = 1000

    def __post_init__(self) -> None:
        if not self.namespace:
            raise ValueError("Fast tier namespace cannot be empty")
        if self.max_size < 1:
            raise ValueError("Fast tier max_size must be at least 1")


@dataclass(frozen=True)
class DurableTierConfig:
    """Durable (Redis) tier configuration."""

    namespace: str
    ttl: TTL
    compress: bool = False

    def __post_init__(self) -> None:
        if not self.namespace:
            raise ValueError("Durable tier namespace cannot be empty")


@dataclass(frozen=True)
class CacheStrategy:
    """
    Tier configuration for a family of cached values.

    A strategy has no state; the tiered cache reads it on every call.
    With ``write_through`` disabled the durable write happens in the
    background after the fast tier has been updated (write-back).
    """

    name: str
    fast_tier: Optional[FastTierConfig] = None
    durable_tier: Optional[DurableTierConfig] = None
    write_through: bool = True

    def __post_init__(self) -> None:
        if self.fast_tier is None and self.durable_tier is None:
            raise ValueError(f"Cache strategy '{self.name}' must configure a tier")

    @property
    def namespaces(self) -> Tuple[str, ...]:
        """Distinct namespaces used by the configured tiers."""
        names: List[str] = []
        for tier in (self.fast_tier, self.durable_tier):
            if tier and tier.namespace not in names:
                names.append(tier.namespace)
        return tuple(names)

    @property
    def namespace(self) -> str:
        """Primary namespace used for statistics."""
        return self.namespaces[0]


def _strategy(
    name: str,
    namespace: str,
    fast_ttl: TTL,
    durable_ttl: TTL,
    compress: bool = False,
    write_through: bool = True,
    max_size: int = 1000,
) -> CacheStrategy:
    return CacheStrategy(
        name=name,
        fast_tier=FastTierConfig(namespace=namespace, ttl=fast_ttl, max_size=max_size),
        durable_tier=DurableTierConfig(
            namespace=namespace, ttl=durable_ttl, compress=compress
        ),
        write_through=write_through,
    )


class CacheStrategies:
    """Preset strategies for common access profiles."""

    FAST_ACCESS = _strategy(
        "fast_access", "fast", TTL.minutes(5), TTL.minutes(30), compress=True
    )
    PERSISTENT = _strategy("persistent", "persistent", TTL.minutes(30), TTL.days(1))
    WRITE_HEAVY = _strategy(
        "write_heavy", "write", TTL.minutes(10), TTL.hours(1), write_through=False
    )
    READ_HEAVY = _strategy("read_heavy", "read", TTL.minutes(30), TTL.hours(12))
    SCANS = _strategy(
        "scans", SCANS_NAMESPACE, TTL.minutes(30), TTL.hours(12), compress=True
    )
    ANALYTICS = _strategy(
        "analytics", ANALYTICS_NAMESPACE, TTL.minutes(10), TTL.hours(1)
    )

    @classmethod
    def all(cls) -> List[CacheStrategy]:
        """List every preset."""
        return [
            cls.FAST_ACCESS,
            cls.PERSISTENT,
            cls.WRITE_HEAVY,
            cls.READ_HEAVY,
            cls.SCANS,
            cls.ANALYTICS,
        ]


@dataclass
class CacheStats:
    """Hit/miss counters for one namespace."""

    lookups: int = 0
    memory_hits: int = 0
    memory_misses: int = 0
    durable_hits: int = 0
    durable_misses: int = 0
    durable_errors: int = 0
    loader_calls: int = 0
    loader_errors: int = 0
    rejected: int = 0
    sets: int = 0
    set_failures: int = 0
    deletes: int = 0

    @property
    def hits(self) -> int:
        return self.memory_hits + self.durable_hits

    @property
    def misses(self) -> int:
        return self.lookups - self.hits

    @property
    def memory_hit_rate(self) -> float:
        total = self.memory_hits + self.memory_misses
        return self.memory_hits / total if total else 0.0

    @property
    def durable_hit_rate(self) -> float:
        total = self.durable_hits + self.durable_misses
        return self.durable_hits / total if total else 0.0

    @property
    def combined_hit_rate(self) -> float:
        return self.hits / self.lookups if self.lookups else 0.0

    def merge(self, other: "CacheStats") -> "CacheStats":
        """Return a new stats object summing both counters."""
        return CacheStats(
            **{
                name: getattr(self, name) + getattr(other, name)
                for name in self.__dataclass_fields__
            }
        )

    def to_dict(self) -> Dict[str, float]:
        data: Dict[str, float] = {
            name: getattr(self, name) for name in self.__dataclass_fields__
        }
        data.update(
            {
                "hits": self.hits,
                "misses": self.misses,
                "memory_hit_rate": round(self.memory_hit_rate, 4),
                "durable_hit_rate": round(self.durable_hit_rate, 4),
                "combined_hit_rate": round(self.combined_hit_rate, 4),
            }
        )
        return data
