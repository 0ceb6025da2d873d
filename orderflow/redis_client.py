"""
Shared Redis connection: session lookups, idempotency keys and the Redis event feed.
"""
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from orderflow.config import Settings, settings

logger = logging.getLogger(__name__)

_redis: redis.Redis | None = None


def uses_redis(cfg: Settings = settings) -> bool:
    return cfg.session_backend == "redis" or cfg.event_backend == "redis"


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout,
        )
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def redis_reachable() -> bool:
    try:
        r = await get_redis()
        return bool(await r.ping())
    except (RedisError, OSError) as e:
        logger.warning("Redis ping failed: %s", e)
        return False
