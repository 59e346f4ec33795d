# leadbot/services/redis.py
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

from leadbot.core.config import settings
from leadbot.core.exceptions import ServiceUnavailableError
from leadbot.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)

# Global Redis connection pool
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[redis.Redis] = None

_RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
"""


async def init_redis_pool() -> None:
    """Initialize Redis connection pool."""
    global _redis_pool, _redis_client

    if _redis_pool is not None:
        return

    try:
        retry = Retry(
            backoff=ExponentialBackoff(base=1, cap=3),
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

        _redis_client = redis.Redis(connection_pool=_redis_pool)

        await _redis_client.ping()

        logger.info(
            "redis.connected",
            url=settings.redis_url,
            max_connections=settings.redis_max_connections,
        )

    except Exception as e:
        logger.error("redis.connection_failed", error=str(e))
        _redis_client = None
        if _redis_pool is not None:
            await _redis_pool.disconnect()
            _redis_pool = None
        raise ServiceUnavailableError(
            message="Redis connection failed",
            details={"error": str(e)},
        ) from e


def get_redis_client() -> Optional[redis.Redis]:
    """Return the shared client, or None when the pool was never opened."""
    return _redis_client


async def close_redis_pool() -> None:
    """Close Redis connection pool."""
    global _redis_pool, _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None

    logger.info("redis.connections_closed")


@dataclass(frozen=True)
class Reservation:
    key: str
    token: str
    acquired: bool
    # True when Redis could not be reached and the caller proceeded without a claim
    degraded: bool = False


class ReservationStore:
    """Short-lived exclusive claims backed by ``SET key token NX EX ttl``.

    A claim stops overlapping deliveries of the same work from both getting
    past the ledger lookups. When Redis is down the claim is granted in
    degraded mode and the ledger checks alone decide.
    """

    def __init__(self, redis_client: Optional[redis.Redis], prefix: str = "leadbot:reserve"):
        self.redis = redis_client
        self.prefix = prefix

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def acquire(self, key: str, ttl_seconds: int) -> Reservation:
        full_key = self._make_key(key)
        token = str(uuid.uuid4())

        if self.redis is None:
            logger.warning("reservation.unavailable", key=full_key, error="redis not configured")
            return Reservation(key=full_key, token=token, acquired=True, degraded=True)

        try:
            acquired = await self.redis.set(full_key, token, ex=ttl_seconds, nx=True)
        except redis.RedisError as e:
            logger.warning("reservation.unavailable", key=full_key, error=str(e))
            return Reservation(key=full_key, token=token, acquired=True, degraded=True)

        if acquired:
            logger.debug("reservation.acquired", key=full_key, token=token[:8])
        else:
            logger.info("reservation.contended", key=full_key)

        return Reservation(key=full_key, token=token, acquired=bool(acquired))

    async def release(self, reservation: Reservation) -> bool:
        if not reservation.acquired or reservation.degraded or self.redis is None:
            return False

        try:
            result = await self.redis.eval(_RELEASE_SCRIPT, 1, reservation.key, reservation.token)
        except redis.RedisError as e:
            logger.warning("reservation.release_failed", key=reservation.key, error=str(e))
            return False

        released = result > 0
        if released:
            logger.debug("reservation.released", key=reservation.key, token=reservation.token[:8])
        return released


async def health_check() -> Dict[str, Any]:
    """Check Redis health."""
    client = get_redis_client()
    if client is None:
        return {"status": "unavailable", "error": "Redis pool not initialized"}

    try:
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        pong = await client.ping()
        response_time = (loop.time() - start_time) * 1000

        if not pong:
            return {
                "status": "unhealthy",
                "error": "Ping failed",
                "response_time_ms": response_time,
            }

        info = await client.info()

        return {
            "status": "healthy",
            "response_time_ms": response_time,
            "version": info.get("redis_version"),
            "connected_clients": info.get("connected_clients"),
        }

    except Exception as e:
        logger.error("redis.health_check_failed", error=str(e))
        return {
            "status": "unhealthy",
            "error": str(e),
            "response_time_ms": None,
        }
