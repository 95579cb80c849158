"""
Cache Invalidation Service

Expands a subject key and a set of data dimensions into namespace patterns
and clears them through the tiered cache. Invalidation is idempotent.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from opentelemetry import trace

from ...constants import get_current_timestamp
from ...core.exceptions import ValidationError
from ...domain.cache.value_objects import CachePattern, CacheStrategies, CacheStrategy
from ...domain.jobs.payloads import validate_subject
from .cache_manager import TieredCacheManager

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class InvalidationDimension(str, Enum):
    """Families of cached data derived from one subject."""

    SCAN = "scan"
    POSITIONS = "positions"
    ANALYTICS = "analytics"
    HISTORY = "history"

    def patterns(self, subject_key: str) -> List[CachePattern]:
        """Namespace-relative patterns covering this dimension for a subject."""
        if self is InvalidationDimension.SCAN:
            # Bare key plus chain-scoped variants, never other subjects sharing the prefix
            return [
                CachePattern(f"scan:{subject_key}"),
                CachePattern(f"scan:{subject_key}:*"),
            ]
        return [CachePattern(f"{self.value}:{subject_key}:*")]


class InvalidationReason(str, Enum):
    """Why an invalidation was requested."""

    MANUAL = "manual"
    POSITION_CHANGE = "position_change"
    WALLET_ACTIVITY = "wallet_activity"
    SCAN_REFRESH = "scan_refresh"


# Dimensions cleared by each event reason
REASON_DIMENSIONS: Dict[InvalidationReason, Sequence[InvalidationDimension]] = {
    InvalidationReason.POSITION_CHANGE: (
        InvalidationDimension.SCAN,
        InvalidationDimension.POSITIONS,
        InvalidationDimension.ANALYTICS,
    ),
    InvalidationReason.WALLET_ACTIVITY: tuple(InvalidationDimension),
    InvalidationReason.SCAN_REFRESH: (
        InvalidationDimension.SCAN,
        InvalidationDimension.POSITIONS,
    ),
    InvalidationReason.MANUAL: tuple(InvalidationDimension),
}

ReasonLike = Union[InvalidationReason, str]


def reason_label(reason: ReasonLike) -> str:
    """
    Normalize an invalidation reason to its label.

    Known reasons map to their enum value; any other non-empty string is kept
    as an opaque label for statistics and logs.

    Raises:
        ValidationError: If the reason is empty
    """
    if isinstance(reason, InvalidationReason):
        return reason.value
    label = (reason or "").strip()
    if not label:
        raise ValidationError("Invalidation reason cannot be empty", field="reason")
    return label


@dataclass
class InvalidationEvent:
    """External trigger for invalidation."""

    reason: ReasonLike
    subject_key: Optional[str] = None
    dimensions: Optional[List[InvalidationDimension]] = None
    global_scope: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InvalidationStats:
    total_invalidations: int = 0
    total_entries_removed: int = 0
    by_reason: Dict[str, int] = field(default_factory=dict)
    total_time_ms: float = 0.0
    last_invalidation_at: Optional[datetime] = None

    @property
    def average_time_ms(self) -> float:
        if not self.total_invalidations:
            return 0.0
        return self.total_time_ms / self.total_invalidations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_invalidations": self.total_invalidations,
            "total_entries_removed": self.total_entries_removed,
            "by_reason": dict(self.by_reason),
            "average_time_ms": round(self.average_time_ms, 3),
            "last_invalidation_at": (
                self.last_invalidation_at.isoformat()
                if self.last_invalidation_at
                else None
            ),
        }


class CacheInvalidationService:
    """
    Invalidation coordinator.

    Patterns are cleared in every strategy the service was configured with,
    since derived data for a subject may live in several namespaces.
    """

    def __init__(
        self,
        cache_manager: TieredCacheManager,
        strategies: Optional[Iterable[CacheStrategy]] = None,
    ):
        self.cache_manager = cache_manager
        self.strategies: List[CacheStrategy] = list(
            strategies if strategies is not None else CacheStrategies.all()
        )
        self._stats = InvalidationStats()

    async def _clear_patterns(self, patterns: Sequence[CachePattern], reason: str) -> int:
        started = time.perf_counter()
        removed = 0

        with tracer.start_as_current_span("cache_invalidation.clear") as span:
            span.set_attribute("invalidation.reason", reason)
            span.set_attribute("invalidation.patterns", [p.value for p in patterns])

            for strategy in self.strategies:
                for pattern in patterns:
                    removed += await self.cache_manager.clear(pattern, strategy)

            span.set_attribute("invalidation.removed", removed)

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._stats.total_invalidations += 1
        self._stats.total_entries_removed += removed
        self._stats.total_time_ms += elapsed_ms
        self._stats.by_reason[reason] = self._stats.by_reason.get(reason, 0) + 1
        self._stats.last_invalidation_at = get_current_timestamp()

        logger.info(
            f"Invalidated {removed} cache entries ({reason})",
            extra={
                "patterns": [p.value for p in patterns],
                "duration_ms": round(elapsed_ms, 2),
            },
        )
        return removed

    async def invalidate(
        self,
        subject_key: str,
        dimensions: Optional[Iterable[InvalidationDimension]] = None,
        reason: ReasonLike = InvalidationReason.MANUAL,
    ) -> int:
        """
        Clear every cached dimension derived from a subject.

        Args:
            subject_key: Subject (wallet) whose data changed
            dimensions: Dimensions to clear (None or empty clears all)
            reason: Label recorded in statistics and logs

        Returns:
            Number of removed entries (0 when nothing was cached)

        Raises:
            ValidationError: If subject_key is empty or contains glob characters,
                a dimension is unknown or the reason is empty
        """
        label = reason_label(reason)
        try:
            subject_key = validate_subject(subject_key or "")
        except ValueError as e:
            raise ValidationError(str(e), field="subject_key", value=subject_key) from e

        selected = list(dict.fromkeys(dimensions or ())) or list(InvalidationDimension)
        try:
            selected = [InvalidationDimension(dimension) for dimension in selected]
        except ValueError as e:
            raise ValidationError(str(e), field="dimensions") from e

        patterns = [
            pattern
            for dimension in selected
            for pattern in dimension.patterns(subject_key)
        ]
        return await self._clear_patterns(patterns, label)

    async def invalidate_keys(
        self,
        keys: Iterable[str],
        reason: ReasonLike = InvalidationReason.MANUAL,
    ) -> int:
        """Clear explicit keys or patterns."""
        label = reason_label(reason)
        patterns = [CachePattern(key) for key in keys]
        if not patterns:
            return 0
        return await self._clear_patterns(patterns, label)

    async def invalidate_all(
        self, reason: ReasonLike = InvalidationReason.MANUAL
    ) -> int:
        """Clear every namespace of every configured strategy."""
        return await self._clear_patterns([CachePattern.all()], reason_label(reason))

    async def handle_event(self, event: InvalidationEvent) -> int:
        """
        Apply the rule table for an invalidation event.

        Reasons outside the table clear every dimension of the subject.
        """
        if event.global_scope:
            return await self.invalidate_all(event.reason)

        if not event.subject_key:
            raise ValidationError(
                "subject_key is required unless global_scope is set",
                field="subject_key",
            )

        dimensions = event.dimensions or REASON_DIMENSIONS.get(
            event.reason, tuple(InvalidationDimension)
        )
        return await self.invalidate(event.subject_key, dimensions, event.reason)

    def get_stats(self) -> Dict[str, Any]:
        return self._stats.to_dict()
