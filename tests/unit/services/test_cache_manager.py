"""
Unit tests for the Tiered Cache Manager.

Tests tier ordering, backfill, freshness predicates, loader handling,
write-through / write-back and degraded durable tier behaviour.
"""

from unittest.mock import AsyncMock

import pytest

from scanpipe.core.config import Settings
from scanpipe.domain.cache.entities import CacheEntry
from scanpipe.domain.cache.value_objects import (
    TTL,
    CacheKey,
    CacheStrategies,
    CacheStrategy,
    CacheTier,
    DurableTierConfig,
    FastTierConfig,
)
from scanpipe.infrastructure.repositories.memory_cache_repository import (
    MemoryCacheRepository,
)
from scanpipe.services.cache.cache_manager import (
    TieredCacheManager,
    strategy_from_settings,
)
from tests.conftest import DictDurableTier

STRATEGY = CacheStrategy(
    name="test",
    fast_tier=FastTierConfig(namespace="t", ttl=TTL(60), max_size=10),
    durable_tier=DurableTierConfig(namespace="t", ttl=TTL(600)),
)


class TestTieredCacheManager:
    """Test TieredCacheManager."""

    @pytest.fixture
    def fast_tier(self, clock):
        return MemoryCacheRepository(clock=clock)

    @pytest.fixture
    def durable_tier(self, clock):
        return DictDurableTier(clock=clock)

    @pytest.fixture
    def cache_manager(self, fast_tier, durable_tier, clock):
        """Create cache manager over both tiers."""
        return TieredCacheManager(fast_tier, durable_tier, clock=clock)

    @pytest.mark.asyncio
    async def test_set_writes_both_tiers(self, cache_manager, fast_tier, durable_tier):
        """Test write-through reaches both tiers."""
        assert await cache_manager.set("k", {"a": 1}, STRATEGY)

        assert (await fast_tier.get("t", CacheKey("k"))).value == {"a": 1}
        assert "t:k" in durable_tier.entries

    @pytest.mark.asyncio
    async def test_fast_hit_skips_durable(self, cache_manager, durable_tier):
        """Test fast tier is consulted first."""
        await cache_manager.set("k", 1, STRATEGY)
        durable_tier.calls.clear()

        assert await cache_manager.get("k", STRATEGY) == 1
        assert "get" not in durable_tier.calls
        stats = cache_manager.get_stats("t")
        assert stats.memory_hits == 1
        assert stats.combined_hit_rate == 1.0

    @pytest.mark.asyncio
    async def test_durable_hit_backfills_fast_tier(
        self, cache_manager, fast_tier, durable_tier, clock
    ):
        """Test a durable hit is copied into the fast tier."""
        durable_tier.entries["t:k"] = CacheEntry.create(
            CacheKey("k"), "v", CacheTier.DURABLE, "t", TTL(600), now=clock() - 300
        )

        assert await cache_manager.get("k", STRATEGY) == "v"
        await cache_manager.drain()

        backfilled = await fast_tier.get("t", CacheKey("k"))
        assert backfilled.value == "v"
        assert backfilled.written_at == clock()
        assert cache_manager.get_stats("t").durable_hits == 1

    @pytest.mark.asyncio
    async def test_predicate_rejection_deletes_value(
        self, cache_manager, fast_tier, durable_tier
    ):
        """Test values failing the predicate are removed and never returned."""
        await cache_manager.set("k", {"stale": True}, STRATEGY)

        result = await cache_manager.get(
            "k", STRATEGY, freshness_predicate=lambda v: not v.get("stale")
        )

        assert result is None
        assert await fast_tier.get("t", CacheKey("k")) is None
        assert "t:k" not in durable_tier.entries
        assert cache_manager.get_stats("t").rejected == 2

    @pytest.mark.asyncio
    async def test_loader_populates_cache(self, cache_manager, durable_tier):
        """Test a full miss invokes the loader and writes through."""
        loader = AsyncMock(return_value={"loaded": True})

        assert await cache_manager.get("k", STRATEGY, loader=loader) == {"loaded": True}
        assert await cache_manager.get("k", STRATEGY, loader=loader) == {"loaded": True}

        loader.assert_awaited_once()
        assert "t:k" in durable_tier.entries

    @pytest.mark.asyncio
    async def test_loader_failure_is_a_miss(self, cache_manager):
        """Test loader exceptions do not escape."""
        loader = AsyncMock(side_effect=RuntimeError("upstream down"))

        assert await cache_manager.get("k", STRATEGY, loader=loader) is None
        assert cache_manager.get_stats("t").loader_errors == 1

    @pytest.mark.asyncio
    async def test_loaded_value_failing_predicate_not_cached(
        self, cache_manager, fast_tier
    ):
        """Test invalid loader output is not stored."""
        loader = AsyncMock(return_value={"positions": None})

        result = await cache_manager.get(
            "k",
            STRATEGY,
            loader=loader,
            freshness_predicate=lambda v: isinstance(v.get("positions"), list),
        )

        assert result is None
        assert await fast_tier.get("t", CacheKey("k")) is None

    @pytest.mark.asyncio
    async def test_durable_outage_degrades_to_miss(self, cache_manager, durable_tier):
        """Test durable failures fall through to the loader."""
        durable_tier.available = False
        loader = AsyncMock(return_value="fresh")

        assert await cache_manager.get("k", STRATEGY, loader=loader) == "fresh"
        stats = cache_manager.get_stats("t")
        assert stats.durable_errors == 2
        assert stats.set_failures == 1

    @pytest.mark.asyncio
    async def test_set_reports_durable_failure(self, cache_manager, fast_tier, durable_tier):
        """Test write-through returns False when the durable write fails."""
        durable_tier.available = False

        assert not await cache_manager.set("k", 1, STRATEGY)
        assert (await fast_tier.get("t", CacheKey("k"))).value == 1

    @pytest.mark.asyncio
    async def test_write_back(self, cache_manager, durable_tier):
        """Test write-back schedules the durable write."""
        strategy = CacheStrategies.WRITE_HEAVY

        assert await cache_manager.set("k", 1, strategy)
        await cache_manager.drain()

        assert "write:k" in durable_tier.entries

    @pytest.mark.asyncio
    async def test_expired_fast_entry_falls_back(self, cache_manager, clock):
        """Test fast tier expiry falls through to the durable tier."""
        await cache_manager.set("k", "v", STRATEGY)
        clock.advance(120)

        assert await cache_manager.get("k", STRATEGY) == "v"
        assert cache_manager.get_stats("t").durable_hits == 1
        await cache_manager.drain()

    @pytest.mark.asyncio
    async def test_clear_pattern(self, cache_manager, durable_tier):
        """Test pattern clearing across tiers."""
        for key in ("scan:0xa", "scan:0xa:eth", "scan:0xb"):
            await cache_manager.set(key, 1, STRATEGY)

        removed = await cache_manager.clear("scan:0xa*", STRATEGY)

        assert removed == 4
        assert list(durable_tier.entries) == ["t:scan:0xb"]

    @pytest.mark.asyncio
    async def test_clear_survives_durable_outage(self, cache_manager, durable_tier):
        """Test clear never raises."""
        await cache_manager.set("k", 1, STRATEGY)
        durable_tier.available = False

        assert await cache_manager.clear("k", STRATEGY) == 1

    @pytest.mark.asyncio
    async def test_fast_only_manager(self, clock):
        """Test manager without a durable tier."""
        manager = TieredCacheManager(MemoryCacheRepository(clock=clock), clock=clock)

        assert await manager.set("k", 1, STRATEGY)
        assert await manager.get("k", STRATEGY) == 1
        assert await manager.exists("k", STRATEGY)
        assert await manager.delete("k", STRATEGY)
        assert await manager.get("k", STRATEGY) is None

    @pytest.mark.asyncio
    async def test_warmup(self, cache_manager):
        """Test warmup loads absent keys and reports failures."""
        await cache_manager.set("present", 1, STRATEGY)

        async def loader(key):
            if key.value == "broken":
                raise RuntimeError("nope")
            return key.value

        results = await cache_manager.warmup(
            ["present", "a", "b", "broken"], loader, STRATEGY
        )

        assert results["successful"] == 2
        assert results["skipped"] == 1
        assert results["failed"] == 1
        assert await cache_manager.get("a", STRATEGY) == "a"

    @pytest.mark.asyncio
    async def test_stats_aggregate_namespaces(self, cache_manager):
        """Test aggregated statistics across strategies."""
        await cache_manager.get("k", STRATEGY)
        await cache_manager.get("k", CacheStrategies.SCANS)

        assert cache_manager.get_stats().lookups == 2
        assert set(cache_manager.get_tier_stats()["namespaces"]) == {"t", "scans"}
        cache_manager.reset_stats()
        assert cache_manager.get_stats().lookups == 0


class TestStrategyFromSettings:
    """Test settings derived default strategy."""

    def test_uses_cache_settings(self):
        """Test TTLs, size and compression come from settings."""
        settings = Settings(
            CACHE_DEFAULT_NAMESPACE="dflt",
            CACHE_FAST_TTL_SECONDS=30,
            CACHE_FAST_MAX_SIZE=5,
            CACHE_DURABLE_TTL_SECONDS=90,
            CACHE_COMPRESS=True,
        )
        strategy = strategy_from_settings(settings)

        assert strategy.namespace == "dflt"
        assert strategy.fast_tier.ttl == TTL(30)
        assert strategy.fast_tier.max_size == 5
        assert strategy.durable_tier.ttl == TTL(90)
        assert strategy.durable_tier.compress is True
