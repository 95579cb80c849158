"""
Tiered Cache Manager

Read-through / write-through cache over a fast in-process tier and a durable
Redis tier. Durable tier outages degrade to misses and never reach callers.
"""

import asyncio
import logging
import time
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Optional,
    Set,
    Union,
)

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from ...core.config import Settings
from ...core.exceptions import CacheTierUnavailable
from ...domain.cache.entities import CacheEntry
from ...domain.cache.repository_interfaces import CacheTierRepository
from ...domain.cache.value_objects import (
    CacheKey,
    CachePattern,
    CacheStats,
    CacheStrategy,
    CacheTier,
    DurableTierConfig,
    FastTierConfig,
    TTL,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Loader = Callable[[], Awaitable[Any]]
FreshnessPredicate = Callable[[Any], bool]
KeyLike = Union[CacheKey, str]


def _as_key(key: KeyLike) -> CacheKey:
    return key if isinstance(key, CacheKey) else CacheKey(key)


def _as_pattern(pattern: Union[CachePattern, CacheKey, str]) -> CachePattern:
    if isinstance(pattern, CachePattern):
        return pattern
    return CachePattern(str(pattern))


def strategy_from_settings(settings: Settings) -> CacheStrategy:
    """Strategy for values cached without a dedicated preset."""
    namespace = settings.CACHE_DEFAULT_NAMESPACE
    return CacheStrategy(
        name="default",
        fast_tier=FastTierConfig(
            namespace=namespace,
            ttl=TTL(settings.CACHE_FAST_TTL_SECONDS),
            max_size=settings.CACHE_FAST_MAX_SIZE,
        ),
        durable_tier=DurableTierConfig(
            namespace=namespace,
            ttl=TTL(settings.CACHE_DURABLE_TTL_SECONDS),
            compress=settings.CACHE_COMPRESS,
        ),
    )


class TieredCacheManager:
    """
    Cache coordinator consulting tiers fastest first.

    Lookup order is fast tier, durable tier, then the optional loader. A
    durable hit is copied back into the fast tier in the background. Values
    rejected by the freshness predicate are removed from the tier they came
    from and never returned.
    """

    def __init__(
        self,
        fast_tier: Optional[CacheTierRepository] = None,
        durable_tier: Optional[CacheTierRepository] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.fast_tier = fast_tier
        self.durable_tier = durable_tier
        self._clock = clock
        self._stats: Dict[str, CacheStats] = {}
        self._background: Set[asyncio.Task] = set()

    def _stats_for(self, strategy: CacheStrategy) -> CacheStats:
        return self._stats.setdefault(strategy.namespace, CacheStats())

    def _schedule(self, coro: Awaitable[Any], description: str) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._background.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.warning(
                    f"Background cache task failed ({description}): {finished.exception()}"
                )

        task.add_done_callback(_done)

    async def _durable_read(
        self, strategy: CacheStrategy, key: CacheKey, stats: CacheStats
    ) -> Optional[CacheEntry]:
        try:
            return await self.durable_tier.get(strategy.durable_tier.namespace, key)
        except CacheTierUnavailable as e:
            stats.durable_errors += 1
            logger.warning(f"Durable tier read failed for {key}, treating as miss: {e}")
            return None

    async def _durable_delete(self, strategy: CacheStrategy, key: CacheKey) -> bool:
        try:
            return await self.durable_tier.delete(strategy.durable_tier.namespace, key)
        except CacheTierUnavailable as e:
            self._stats_for(strategy).durable_errors += 1
            logger.warning(f"Durable tier delete failed for {key}: {e}")
            return False

    async def _backfill(self, strategy: CacheStrategy, entry: CacheEntry) -> None:
        config = strategy.fast_tier
        # The fast tier TTL counts from the backfill, not the durable write
        await self.fast_tier.set(
            CacheEntry.create(
                entry.key,
                entry.value,
                CacheTier.FAST,
                config.namespace,
                config.ttl,
                now=self._clock(),
            ),
            max_entries=config.max_size,
        )

    async def get(
        self,
        key: KeyLike,
        strategy: CacheStrategy,
        loader: Optional[Loader] = None,
        freshness_predicate: Optional[FreshnessPredicate] = None,
    ) -> Optional[Any]:
        """
        Read a value through the configured tiers.

        Args:
            key: Cache key relative to the strategy namespaces
            strategy: Tier configuration
            loader: Coroutine function producing the value on a full miss
            freshness_predicate: Returns False for values that must not be served

        Returns:
            Cached or loaded value, or None
        """
        key = _as_key(key)
        stats = self._stats_for(strategy)
        stats.lookups += 1

        with tracer.start_as_current_span("tiered_cache.get") as span:
            span.set_attribute("cache.key", key.value)
            span.set_attribute("cache.strategy", strategy.name)

            if self.fast_tier is not None and strategy.fast_tier is not None:
                entry = await self.fast_tier.get(strategy.fast_tier.namespace, key)
                if entry is not None:
                    if freshness_predicate is None or freshness_predicate(entry.value):
                        stats.memory_hits += 1
                        span.set_attribute("cache.hit_tier", CacheTier.FAST.value)
                        return entry.value
                    stats.rejected += 1
                    await self.fast_tier.delete(strategy.fast_tier.namespace, key)
                    logger.debug(f"Fast tier value for {key} rejected by predicate")
                stats.memory_misses += 1

            if self.durable_tier is not None and strategy.durable_tier is not None:
                entry = await self._durable_read(strategy, key, stats)
                if entry is not None:
                    if freshness_predicate is None or freshness_predicate(entry.value):
                        stats.durable_hits += 1
                        span.set_attribute("cache.hit_tier", CacheTier.DURABLE.value)
                        if self.fast_tier is not None and strategy.fast_tier is not None:
                            self._schedule(
                                self._backfill(strategy, entry), f"backfill {key}"
                            )
                        return entry.value
                    stats.rejected += 1
                    await self._durable_delete(strategy, key)
                    logger.debug(f"Durable tier value for {key} rejected by predicate")
                stats.durable_misses += 1

            span.set_attribute("cache.hit_tier", "none")
            if loader is None:
                return None

            stats.loader_calls += 1
            try:
                value = await loader()
            except Exception as e:
                stats.loader_errors += 1
                logger.error(f"Cache loader failed for {key}: {e}")
                span.set_status(Status(StatusCode.ERROR, str(e)))
                return None

            if value is None:
                return None
            if freshness_predicate is not None and not freshness_predicate(value):
                stats.rejected += 1
                logger.warning(f"Loaded value for {key} rejected by predicate")
                return None

            await self.set(key, value, strategy)
            return value

    async def set(self, key: KeyLike, value: Any, strategy: CacheStrategy) -> bool:
        """
        Write a value to every configured tier.

        With write-through the durable write is awaited; otherwise it is
        scheduled after the fast tier write (write-back).

        Returns:
            False if an awaited tier write failed
        """
        key = _as_key(key)
        stats = self._stats_for(strategy)
        stats.sets += 1
        now = self._clock()
        success = True

        with tracer.start_as_current_span("tiered_cache.set") as span:
            span.set_attribute("cache.key", key.value)
            span.set_attribute("cache.strategy", strategy.name)

            if self.fast_tier is not None and strategy.fast_tier is not None:
                config = strategy.fast_tier
                await self.fast_tier.set(
                    CacheEntry.create(
                        key, value, CacheTier.FAST, config.namespace, config.ttl, now=now
                    ),
                    max_entries=config.max_size,
                )

            if self.durable_tier is not None and strategy.durable_tier is not None:
                config = strategy.durable_tier
                entry = CacheEntry.create(
                    key,
                    value,
                    CacheTier.DURABLE,
                    config.namespace,
                    config.ttl,
                    compress=config.compress,
                    now=now,
                )
                if strategy.write_through:
                    success = await self._durable_write(strategy, entry)
                else:
                    self._schedule(
                        self._durable_write(strategy, entry), f"write-back {key}"
                    )

            if not success:
                stats.set_failures += 1
                span.set_status(Status(StatusCode.ERROR, "durable write failed"))
            return success

    async def _durable_write(self, strategy: CacheStrategy, entry: CacheEntry) -> bool:
        try:
            await self.durable_tier.set(entry)
            return True
        except CacheTierUnavailable as e:
            self._stats_for(strategy).durable_errors += 1
            logger.warning(f"Durable tier write failed for {entry.key}: {e}")
            return False

    async def delete(self, key: KeyLike, strategy: CacheStrategy) -> bool:
        """Remove a key from every tier. Returns True if any tier held it."""
        key = _as_key(key)
        self._stats_for(strategy).deletes += 1
        removed = False

        if self.fast_tier is not None and strategy.fast_tier is not None:
            removed = await self.fast_tier.delete(strategy.fast_tier.namespace, key)
        if self.durable_tier is not None and strategy.durable_tier is not None:
            removed = await self._durable_delete(strategy, key) or removed
        return removed

    async def exists(self, key: KeyLike, strategy: CacheStrategy) -> bool:
        """Check whether any tier holds a fresh value for key."""
        key = _as_key(key)
        if self.fast_tier is not None and strategy.fast_tier is not None:
            if await self.fast_tier.exists(strategy.fast_tier.namespace, key):
                return True
        if self.durable_tier is not None and strategy.durable_tier is not None:
            try:
                return await self.durable_tier.exists(
                    strategy.durable_tier.namespace, key
                )
            except CacheTierUnavailable as e:
                self._stats_for(strategy).durable_errors += 1
                logger.warning(f"Durable tier exists failed for {key}: {e}")
        return False

    async def clear(
        self, pattern: Union[CachePattern, CacheKey, str], strategy: CacheStrategy
    ) -> int:
        """
        Remove every key matching pattern from all tiers of a strategy.

        Args:
            pattern: Exact key or glob pattern relative to the namespace
            strategy: Strategy whose namespaces are cleared

        Returns:
            Number of removed entries across tiers
        """
        pattern = _as_pattern(pattern)
        removed = 0

        with tracer.start_as_current_span("tiered_cache.clear") as span:
            span.set_attribute("cache.pattern", pattern.value)
            span.set_attribute("cache.strategy", strategy.name)

            if self.fast_tier is not None and strategy.fast_tier is not None:
                removed += await self.fast_tier.clear(
                    strategy.fast_tier.namespace, pattern
                )

            if self.durable_tier is not None and strategy.durable_tier is not None:
                try:
                    removed += await self.durable_tier.clear(
                        strategy.durable_tier.namespace, pattern
                    )
                except CacheTierUnavailable as e:
                    self._stats_for(strategy).durable_errors += 1
                    logger.warning(f"Durable tier clear failed for {pattern}: {e}")
                    span.set_status(Status(StatusCode.ERROR, str(e)))

            span.set_attribute("cache.removed", removed)
            if removed:
                logger.info(
                    f"Cleared {removed} cache entries",
                    extra={"pattern": pattern.value, "strategy": strategy.name},
                )
            return removed

    async def warmup(
        self,
        keys: Iterable[KeyLike],
        loader: Callable[[CacheKey], Awaitable[Any]],
        strategy: CacheStrategy,
        concurrency: int = 5,
    ) -> Dict[str, Any]:
        """
        Populate absent keys with bounded concurrency.

        Returns:
            Counts of successful and failed loads plus error messages
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))
        results = {"successful": 0, "failed": 0, "skipped": 0, "errors": []}

        async def _warm(key: CacheKey) -> None:
            async with semaphore:
                if await self.exists(key, strategy):
                    results["skipped"] += 1
                    return
                try:
                    value = await loader(key)
                except Exception as e:
                    results["failed"] += 1
                    results["errors"].append(f"{key}: {e}")
                    return
                if value is None:
                    results["failed"] += 1
                    results["errors"].append(f"{key}: loader returned no value")
                    return
                await self.set(key, value, strategy)
                results["successful"] += 1

        await asyncio.gather(*(_warm(_as_key(key)) for key in keys))
        logger.info(
            f"Cache warmup finished for strategy {strategy.name}",
            extra={k: v for k, v in results.items() if k != "errors"},
        )
        return results

    def get_stats(self, namespace: Optional[str] = None) -> CacheStats:
        """Hit/miss statistics for one namespace or aggregated."""
        if namespace is not None:
            return self._stats.get(namespace, CacheStats())

        total = CacheStats()
        for stats in self._stats.values():
            total = total.merge(stats)
        return total

    def get_tier_stats(self) -> Dict[str, Any]:
        """Tier-level counters for monitoring endpoints."""
        return {
            "fast": self.fast_tier.get_stats() if self.fast_tier else None,
            "durable": self.durable_tier.get_stats() if self.durable_tier else None,
            "namespaces": {ns: stats.to_dict() for ns, stats in self._stats.items()},
        }

    def reset_stats(self) -> None:
        self._stats.clear()

    async def drain(self) -> None:
        """Wait for scheduled backfills and write-backs."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        for tier in (self.fast_tier, self.durable_tier):
            if tier is not None:
                await tier.close()
