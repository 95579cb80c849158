"""
Unit tests for the Redis connection factory.

The connection pool and client classes are patched; no Redis server is used.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from tenacity import wait_none

from scanpipe.infrastructure.redis.connection_factory import RedisConnectionFactory
from scanpipe.infrastructure.redis.exceptions import RedisConnectionException

MODULE = "scanpipe.infrastructure.redis.connection_factory"


@pytest.fixture
def redis_client():
    client = AsyncMock()
    client.ping.return_value = True
    return client


@pytest.fixture
def pool():
    pool = MagicMock()
    pool.disconnect = AsyncMock()
    return pool


@pytest.fixture
def patched(redis_client, pool):
    with patch(f"{MODULE}.ConnectionPool") as pool_cls, patch(
        f"{MODULE}.Redis", return_value=redis_client
    ):
        pool_cls.from_url.return_value = pool
        yield pool_cls


@pytest.fixture
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(RedisConnectionFactory._test_connection.retry, "wait", wait_none())


class TestRedisConnectionFactory:
    """Test RedisConnectionFactory."""

    def test_client_before_initialize(self, test_settings):
        """Test the client is unavailable until initialized."""
        factory = RedisConnectionFactory(test_settings)

        with pytest.raises(RedisConnectionException):
            factory.get_client()
        assert not factory.is_initialized

    @pytest.mark.asyncio
    async def test_health_before_initialize(self, test_settings):
        """Test health reports an uninitialized factory as unhealthy."""
        health = await RedisConnectionFactory(test_settings).health_check()

        assert health["status"] == "unhealthy"
        assert health["circuit_breaker"]["state"] == "closed"

    @pytest.mark.asyncio
    async def test_initialize_and_close(self, test_settings, patched, redis_client, pool):
        """Test pool creation, health and shutdown."""
        factory = RedisConnectionFactory(test_settings)
        await factory.initialize()
        await factory.initialize()

        patched.from_url.assert_called_once()
        assert patched.from_url.call_args.kwargs["decode_responses"] is False
        assert factory.get_client() is redis_client

        health = await factory.health_check()
        assert health["status"] == "healthy"
        assert "response_time_ms" in health

        await factory.close()
        redis_client.aclose.assert_awaited_once()
        pool.disconnect.assert_awaited_once()
        assert not factory.is_initialized

    @pytest.mark.asyncio
    async def test_initialize_failure(
        self, test_settings, patched, redis_client, pool, no_retry_wait
    ):
        """Test an unreachable server after retries."""
        redis_client.ping.side_effect = RedisConnectionError("connection refused")
        factory = RedisConnectionFactory(test_settings)

        with pytest.raises(RedisConnectionException) as exc_info:
            await factory.initialize()

        assert redis_client.ping.await_count == 3
        assert exc_info.value.details["url"] == test_settings.REDIS_URL
        assert exc_info.value.details["original_error_type"] == "ConnectionError"
        pool.disconnect.assert_awaited_once()
        assert not factory.is_initialized

    @pytest.mark.asyncio
    async def test_health_ping_failure(self, test_settings, patched, redis_client):
        """Test a failing ping reports unhealthy."""
        factory = RedisConnectionFactory(test_settings)
        await factory.initialize()
        redis_client.ping.side_effect = RedisConnectionError("gone")

        health = await factory.health_check()

        assert health["status"] == "unhealthy"
        assert health["error"] == "gone"
