"""
Main pytest configuration for ScanPipe tests.

Shared fixtures for unit, integration and API tests. Everything runs in
process; the durable tier is replaced by an in-memory stand-in implementing
the tier interface.
"""

import asyncio
import fnmatch
import os
from typing import Any, Dict, List, Optional

import pytest

# Set test environment variables before importing application modules
os.environ["ENVIRONMENT"] = "test"
os.environ["REDIS_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "DEBUG"

from scanpipe.core.config import Settings  # noqa: E402
from scanpipe.core.exceptions import CacheTierUnavailable  # noqa: E402
from scanpipe.domain.cache.entities import CacheEntry  # noqa: E402
from scanpipe.domain.cache.repository_interfaces import (  # noqa: E402
    CacheTierRepository,
)
from scanpipe.domain.cache.value_objects import (  # noqa: E402
    CacheKey,
    CachePattern,
    CacheTier,
)


class FakeClock:
    """Manually advanced clock for TTL and throttling tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class DictDurableTier(CacheTierRepository):
    """Durable tier stand-in keeping entries in a dict.

    Set ``available = False`` to simulate an outage.
    """

    tier = CacheTier.DURABLE

    def __init__(self, clock: Optional[FakeClock] = None):
        self.entries: Dict[str, CacheEntry] = {}
        self.available = True
        self.clock = clock
        self.calls: Dict[str, int] = {}

    def _check(self, operation: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        if not self.available:
            raise CacheTierUnavailable(tier="durable", operation=operation)

    async def get(self, namespace: str, key: CacheKey) -> Optional[CacheEntry]:
        self._check("get")
        entry = self.entries.get(key.namespaced(namespace))
        if entry is None:
            return None
        now = self.clock() if self.clock else None
        return entry if entry.is_fresh(now) else None

    async def set(self, entry: CacheEntry, max_entries: Optional[int] = None) -> None:
        self._check("set")
        self.entries[entry.storage_key] = entry

    async def delete(self, namespace: str, key: CacheKey) -> bool:
        self._check("delete")
        return self.entries.pop(key.namespaced(namespace), None) is not None

    async def exists(self, namespace: str, key: CacheKey) -> bool:
        return await self.get(namespace, key) is not None

    async def clear(self, namespace: str, pattern: CachePattern) -> int:
        self._check("clear")
        storage_pattern = pattern.namespaced(namespace)
        matched = [
            key
            for key in self.entries
            if fnmatch.fnmatchcase(key, storage_pattern)
        ]
        for key in matched:
            del self.entries[key]
        return len(matched)

    def get_stats(self) -> Dict[str, Any]:
        return {"tier": self.tier.value, "entries": len(self.entries)}


class StaticScanner:
    """Scanner returning a fixed set of positions.

    Clear ``gate`` to hold scans in flight; set ``error`` to make them fail.
    """

    DEFAULT_POSITIONS = [
        {"protocol": "aave", "chain": "ethereum", "value_usd": 1500.0},
        {"protocol": "uniswap", "chain": "ethereum", "value_usd": 500.0},
        {"protocol": "gmx", "chain": "arbitrum", "value_usd": 250.0},
    ]

    def __init__(self, positions: Optional[List[Dict[str, Any]]] = None):
        self.positions = positions if positions is not None else self.DEFAULT_POSITIONS
        self.calls: List[str] = []
        self.gate = asyncio.Event()
        self.gate.set()
        self.error: Optional[Exception] = None
        self.result: Optional[Any] = None

    async def scan(self, wallet, chains, context):
        self.calls.append(wallet)
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        positions = [dict(position) for position in self.positions]
        return {
            "wallet": wallet,
            "chains": list(chains or []),
            "positions": positions,
            "total_value_usd": sum(p["value_usd"] for p in positions),
        }


@pytest.fixture
def clock():
    """Fake wall clock."""
    return FakeClock()


@pytest.fixture
def test_settings():
    """Settings tuned for fast tests."""
    return Settings(
        ENVIRONMENT="test",
        REDIS_ENABLED=False,
        QUICK_SCAN_POLL_INTERVAL_MS=10,
        QUICK_SCAN_TIMEOUT_MS=2000,
        EVENTS_DEFAULT_UPDATE_FREQUENCY_MS=0,
        QUEUE_SHUTDOWN_TIMEOUT=1.0,
        QUEUE_RETRY_DELAY_SCALE=0.0,
    )


@pytest.fixture
def scanner():
    """Scanner returning fixed positions."""
    return StaticScanner()
