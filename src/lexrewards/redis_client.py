"""Redis connection pools: plain client (pub/sub, counters) and arq job queue."""

from __future__ import annotations

import redis.asyncio as redis
from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

_pool: redis.Redis | None = None
_arq_pool: ArqRedis | None = None


async def init_redis(url: str, arq_url: str | None = None) -> None:
    """Initialize the Redis client and, when a queue URL is given, the arq pool."""
    global _pool, _arq_pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    if arq_url:
        _arq_pool = await create_pool(RedisSettings.from_dsn(arq_url))


async def close_redis() -> None:
    """Close both pools."""
    global _pool, _arq_pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None
    if _arq_pool:
        await _arq_pool.aclose()
        _arq_pool = None


def get_redis() -> redis.Redis:
    """Get the Redis client (FastAPI dependency)."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool


def get_arq_pool() -> ArqRedis | None:
    """Get the arq pool, or None when the queue is not configured."""
    return _arq_pool
