"""
Unit tests for the Cache Invalidation Service.
"""

import pytest
import pytest_asyncio

from scanpipe.core.exceptions import ValidationError
from scanpipe.domain.cache.value_objects import CacheKey, CacheStrategies
from scanpipe.infrastructure.repositories.memory_cache_repository import (
    MemoryCacheRepository,
)
from scanpipe.services.cache.cache_manager import TieredCacheManager
from scanpipe.services.cache.invalidation import (
    CacheInvalidationService,
    InvalidationDimension,
    InvalidationEvent,
    InvalidationReason,
)
from tests.conftest import DictDurableTier

SCANS = CacheStrategies.SCANS
ANALYTICS = CacheStrategies.ANALYTICS


class TestInvalidationDimension:
    """Test dimension pattern expansion."""

    def test_scan_patterns_do_not_cover_prefixed_subjects(self):
        """Test scan patterns stay within one subject."""
        patterns = InvalidationDimension.SCAN.patterns("0xab")

        assert any(p.matches("scan:0xab") for p in patterns)
        assert any(p.matches("scan:0xab:ethereum") for p in patterns)
        assert not any(p.matches("scan:0xabc") for p in patterns)

    def test_derived_dimension_pattern(self):
        """Test derived data patterns."""
        (pattern,) = InvalidationDimension.ANALYTICS.patterns("0xab")
        assert pattern.value == "analytics:0xab:*"


class TestCacheInvalidationService:
    """Test CacheInvalidationService."""

    @pytest.fixture
    def cache_manager(self, clock):
        return TieredCacheManager(
            MemoryCacheRepository(clock=clock), DictDurableTier(clock), clock=clock
        )

    @pytest.fixture
    def service(self, cache_manager):
        return CacheInvalidationService(cache_manager, [SCANS, ANALYTICS])

    @pytest_asyncio.fixture
    async def populated(self, cache_manager):
        """Cache scan and analytics data for two wallets."""
        await cache_manager.set(CacheKey.scan("0xab"), {"w": "0xab"}, SCANS)
        await cache_manager.set(CacheKey.scan("0xab", ["eth"]), {"w": "0xab"}, SCANS)
        await cache_manager.set(CacheKey.scan("0xabc"), {"w": "0xabc"}, SCANS)
        await cache_manager.set(CacheKey.analytics("0xab", "30d"), {}, ANALYTICS)
        return cache_manager

    @pytest.mark.asyncio
    async def test_invalidate_all_dimensions(self, service, populated):
        """Test every dimension of one subject is removed from both tiers."""
        removed = await service.invalidate("0xab")

        assert removed == 6
        assert await populated.get(CacheKey.scan("0xab"), SCANS) is None
        assert await populated.get(CacheKey.analytics("0xab", "30d"), ANALYTICS) is None
        assert await populated.get(CacheKey.scan("0xabc"), SCANS) == {"w": "0xabc"}

    @pytest.mark.asyncio
    async def test_invalidate_selected_dimension(self, service, populated):
        """Test only requested dimensions are cleared."""
        await service.invalidate("0xab", [InvalidationDimension.ANALYTICS])

        assert await populated.get(CacheKey.scan("0xab"), SCANS) == {"w": "0xab"}
        assert await populated.get(CacheKey.analytics("0xab", "30d"), ANALYTICS) is None

    @pytest.mark.asyncio
    async def test_idempotent(self, service, populated):
        """Test repeated invalidation is a no-op."""
        await service.invalidate("0xab")
        assert await service.invalidate("0xab") == 0
        assert service.get_stats()["total_invalidations"] == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("subject", ["", "   ", "0x*", "0x?"])
    async def test_rejects_bad_subject(self, service, subject):
        """Test malformed subjects never reach the cache."""
        with pytest.raises(ValidationError):
            await service.invalidate(subject)

    @pytest.mark.asyncio
    async def test_handle_event_rule_table(self, service, populated):
        """Test scan refresh keeps analytics."""
        await service.handle_event(
            InvalidationEvent(
                reason=InvalidationReason.SCAN_REFRESH, subject_key="0xab"
            )
        )

        assert await populated.get(CacheKey.scan("0xab"), SCANS) is None
        assert await populated.get(CacheKey.analytics("0xab", "30d"), ANALYTICS) == {}
        assert service.get_stats()["by_reason"] == {"scan_refresh": 1}

    @pytest.mark.asyncio
    async def test_handle_event_global_scope(self, service, populated):
        """Test global events clear every namespace."""
        removed = await service.handle_event(
            InvalidationEvent(reason=InvalidationReason.MANUAL, global_scope=True)
        )
        assert removed == 8

    @pytest.mark.asyncio
    async def test_handle_event_requires_subject(self, service):
        """Test subject-less events without global scope."""
        with pytest.raises(ValidationError):
            await service.handle_event(
                InvalidationEvent(reason=InvalidationReason.POSITION_CHANGE)
            )

    @pytest.mark.asyncio
    async def test_invalidate_keys(self, service, populated):
        """Test explicit keys."""
        assert await service.invalidate_keys(["scan:0xabc"]) == 2
        assert await service.invalidate_keys([]) == 0

    @pytest.mark.asyncio
    async def test_free_form_reason_recorded(self, service, populated):
        """Test reasons outside the enum are kept as labels."""
        removed = await service.invalidate("0xab", [], "deploy")

        assert removed == 6
        assert service.get_stats()["by_reason"] == {"deploy": 1}

    @pytest.mark.asyncio
    async def test_string_reason_matches_known_reason(self, service, populated):
        """Test a known reason given as a string uses the rule table."""
        await service.handle_event(
            InvalidationEvent(reason="scan_refresh", subject_key="0xab")
        )

        assert await populated.get(CacheKey.analytics("0xab", "30d"), ANALYTICS) == {}
        assert service.get_stats()["by_reason"] == {"scan_refresh": 1}

    @pytest.mark.asyncio
    async def test_unknown_event_reason_clears_everything(self, service, populated):
        """Test events with an unlisted reason clear every dimension."""
        removed = await service.handle_event(
            InvalidationEvent(reason="chain_reorg", subject_key="0xab")
        )
        assert removed == 6

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "dimensions, reason, field",
        [([], "  ", "reason"), (["balances"], "manual", "dimensions")],
    )
    async def test_invalid_arguments_raise_validation_error(
        self, service, dimensions, reason, field
    ):
        """Test bad reasons and dimensions map to ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            await service.invalidate("0xab", dimensions, reason)

        assert exc_info.value.details["field"] == field
        assert service.get_stats()["total_invalidations"] == 0
