from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

from portal.core.config import settings
from portal.core.exceptions import BaseAPIException
from portal.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)

# Global Redis connection pool
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[redis.Redis] = None


class RedisUnavailableError(BaseAPIException):
    """Redis could not be reached."""
    def __init__(self, message: str = "Redis connection failed", **kwargs):
        super().__init__(message, status_code=503, **kwargs)


async def init_redis_pool() -> None:
    """Initialize Redis connection pool."""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return

    try:
        retry = Retry(
            backoff=ExponentialBackoff(base=1, cap=4),
            retries=3,
        )

        _redis_pool = ConnectionPool.from_url(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_connect_timeout,
            retry=retry,
            retry_on_error=[redis.ConnectionError, redis.TimeoutError],
            health_check_interval=30,
            decode_responses=True,
        )
        client = redis.Redis(connection_pool=_redis_pool)
        await client.ping()
        _redis_client = client

        logger.info(
            "redis.connected",
            max_connections=settings.redis_max_connections,
        )

    except Exception as e:
        logger.error("redis.connection_failed", error=str(e))
        if _redis_pool is not None:
            await _redis_pool.disconnect()
        _redis_pool = None
        raise RedisUnavailableError(details={"error": str(e)}) from e


async def get_redis_client() -> redis.Redis:
    """Get Redis client instance."""
    if _redis_client is None:
        await init_redis_pool()

    return _redis_client


async def close_redis_pool() -> None:
    """Close Redis connection pool."""
    global _redis_pool, _redis_client, cache

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None

    cache = None
    logger.info("redis.connections_closed")


class RedisCache:
    """JSON cache on top of Redis. Failures are logged and read as a miss."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "cache"):
        self.redis = redis_client
        self.prefix = prefix

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str, default: Any = None) -> Any:
        try:
            value = await self.redis.get(self._make_key(key))
            if value is None:
                return default
            return json.loads(value)

        except (redis.RedisError, json.JSONDecodeError) as e:
            logger.error("cache.get_error", key=key, error=str(e))
            return default

    async def set(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        try:
            payload = json.dumps(value, default=str)
            if expire:
                await self.redis.setex(self._make_key(key), expire, payload)
            else:
                await self.redis.set(self._make_key(key), payload)
            return True

        except (redis.RedisError, TypeError) as e:
            logger.error("cache.set_error", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        try:
            return await self.redis.delete(self._make_key(key)) > 0

        except redis.RedisError as e:
            logger.error("cache.delete_error", key=key, error=str(e))
            return False


class RedisLock:
    """Distributed lock using Redis, used to keep a single sweeper running."""

    RELEASE_SCRIPT = """
        if redis.call("get", KEYS[1]) == ARGV[1] then
            return redis.call("del", KEYS[1])
        else
            return 0
        end
    """

    def __init__(self, redis_client: redis.Redis, key: str, timeout: int = 30):
        self.redis = redis_client
        self.key = f"lock:{key}"
        self.timeout = timeout
        self.identifier: Optional[str] = None

    async def acquire(self) -> bool:
        self.identifier = str(uuid.uuid4())
        try:
            acquired = await self.redis.set(self.key, self.identifier, ex=self.timeout, nx=True)
            return bool(acquired)

        except redis.RedisError as e:
            logger.error("redis_lock.acquire_error", key=self.key, error=str(e))
            return False

    async def release(self) -> bool:
        if not self.identifier:
            return False

        try:
            result = await self.redis.eval(self.RELEASE_SCRIPT, 1, self.key, self.identifier)
            return result > 0

        except redis.RedisError as e:
            logger.error("redis_lock.release_error", key=self.key, error=str(e))
            return False


async def health_check() -> Dict[str, Any]:
    """Check Redis health."""
    try:
        client = await get_redis_client()

        loop = asyncio.get_running_loop()
        start_time = loop.time()
        pong = await client.ping()
        response_time = (loop.time() - start_time) * 1000

        return {
            "status": "healthy" if pong else "unhealthy",
            "response_time_ms": response_time,
        }

    except Exception as e:
        logger.error("redis.health_check_failed", error=str(e))
        return {
            "status": "unhealthy",
            "error": str(e),
            "response_time_ms": None,
        }


# Global cache instance
cache: Optional[RedisCache] = None


async def get_cache() -> Optional[RedisCache]:
    """Shared cache, or None when Redis is disabled (testing) or unreachable."""
    global cache

    if settings.is_testing:
        return None

    if cache is None:
        try:
            client = await get_redis_client()
        except RedisUnavailableError:
            return None
        cache = RedisCache(client)

    return cache
