"""
Redis Cache Repository

Durable tier: stores cache envelopes in Redis under ``namespace:key`` with
native expiry, optionally zlib-compressed.
"""

import asyncio
import json
import logging
import zlib
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from opentelemetry import trace
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ...core.exceptions import CacheTierUnavailable
from ...domain.cache.entities import CacheEntry
from ...domain.cache.repository_interfaces import CacheTierRepository
from ...domain.cache.value_objects import CacheKey, CachePattern, CacheTier
from ..redis.circuit_breaker import RedisCircuitBreaker
from ..redis.exceptions import RedisException

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")

# One-byte markers distinguishing stored encodings
RAW_MARKER = b"j"
ZLIB_MARKER = b"z"
COMPRESSION_LEVEL = 6
SCAN_BATCH_SIZE = 500


def encode_entry(entry: CacheEntry) -> bytes:
    """Serialize an entry envelope, compressing when the entry asks for it."""
    data = json.dumps(entry.to_envelope(), separators=(",", ":"), default=str).encode(
        "utf-8"
    )
    if entry.compress:
        return ZLIB_MARKER + zlib.compress(data, level=COMPRESSION_LEVEL)
    return RAW_MARKER + data


def decode_envelope(raw: bytes) -> Dict[str, Any]:
    """Inverse of ``encode_entry``.

    Raises:
        ValueError: If the payload is corrupt
    """
    if not raw:
        raise ValueError("Empty cache payload")

    marker, body = raw[:1], raw[1:]
    try:
        if marker == ZLIB_MARKER:
            body = zlib.decompress(body)
        elif marker != RAW_MARKER:
            raise ValueError(f"Unknown cache payload marker {marker!r}")
        envelope = json.loads(body.decode("utf-8"))
    except (zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Corrupt cache payload: {e}") from e

    if not isinstance(envelope, dict):
        raise ValueError("Cache payload is not an envelope")
    return envelope


class RedisCacheRepository(CacheTierRepository):
    """
    Durable cache tier backed by Redis.

    Every Redis failure surfaces as ``CacheTierUnavailable``; the tiered
    cache decides how to degrade.
    """

    tier = CacheTier.DURABLE

    def __init__(
        self,
        redis: Redis,
        circuit_breaker: Optional[RedisCircuitBreaker] = None,
    ):
        self._redis = redis
        self._circuit_breaker = circuit_breaker
        self._stats = {
            "reads": 0,
            "writes": 0,
            "deletes": 0,
            "errors": 0,
            "corrupt_entries": 0,
        }

    async def _call(
        self,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args,
        key: Optional[str] = None,
        **kwargs,
    ) -> T:
        try:
            if self._circuit_breaker is not None:
                return await self._circuit_breaker.call(operation, func, *args, **kwargs)
            return await func(*args, **kwargs)
        except (RedisError, RedisException, OSError, asyncio.TimeoutError) as e:
            self._stats["errors"] += 1
            raise CacheTierUnavailable(
                tier=self.tier.value, operation=operation, key=key, original_error=e
            ) from e

    async def get(self, namespace: str, key: CacheKey) -> Optional[CacheEntry]:
        storage_key = key.namespaced(namespace)
        self._stats["reads"] += 1
        raw = await self._call("get", self._redis.get, storage_key, key=storage_key)
        if raw is None:
            return None

        try:
            envelope = decode_envelope(raw)
            entry = CacheEntry.from_envelope(
                key, namespace, envelope, compress=raw[:1] == ZLIB_MARKER
            )
        except ValueError as e:
            self._stats["corrupt_entries"] += 1
            logger.warning(f"Dropping corrupt durable cache entry {storage_key}: {e}")
            await self._call("delete", self._redis.delete, storage_key, key=storage_key)
            return None

        if not entry.is_fresh():
            return None
        return entry

    async def set(self, entry: CacheEntry, max_entries: Optional[int] = None) -> None:
        storage_key = entry.storage_key
        remaining = entry.remaining_ttl()
        if remaining <= 0:
            return

        self._stats["writes"] += 1
        # Redis expiry has millisecond granularity
        await self._call(
            "set",
            self._redis.set,
            storage_key,
            encode_entry(entry),
            px=max(1, int(remaining * 1000)),
            key=storage_key,
        )

    async def delete(self, namespace: str, key: CacheKey) -> bool:
        storage_key = key.namespaced(namespace)
        self._stats["deletes"] += 1
        removed = await self._call(
            "delete", self._redis.delete, storage_key, key=storage_key
        )
        return bool(removed)

    async def exists(self, namespace: str, key: CacheKey) -> bool:
        storage_key = key.namespaced(namespace)
        count = await self._call(
            "exists", self._redis.exists, storage_key, key=storage_key
        )
        return bool(count)

    async def _scan_keys(self, match: str) -> List[bytes]:
        keys: List[bytes] = []
        async for key in self._redis.scan_iter(match=match, count=SCAN_BATCH_SIZE):
            keys.append(key)
        return keys

    async def clear(self, namespace: str, pattern: CachePattern) -> int:
        storage_pattern = pattern.namespaced(namespace)

        with tracer.start_as_current_span("redis_cache.clear") as span:
            span.set_attribute("cache.pattern", storage_pattern)

            if not pattern.is_wildcard:
                removed = await self._call(
                    "delete", self._redis.delete, storage_pattern, key=storage_pattern
                )
                span.set_attribute("cache.removed", int(removed))
                return int(removed)

            keys = await self._call(
                "scan", self._scan_keys, storage_pattern, key=storage_pattern
            )
            removed = 0
            for start in range(0, len(keys), SCAN_BATCH_SIZE):
                batch = keys[start : start + SCAN_BATCH_SIZE]
                removed += await self._call(
                    "delete", self._redis.delete, *batch, key=storage_pattern
                )

            self._stats["deletes"] += removed
            span.set_attribute("cache.removed", removed)
            return removed

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"tier": self.tier.value, **self._stats}
        if self._circuit_breaker is not None:
            stats["circuit_breaker"] = self._circuit_breaker.get_status()
        return stats
