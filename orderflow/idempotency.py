"""
Idempotency keys for order placement: a retried POST /orders with the same
Idempotency-Key returns the order created by the first request.
"""
import redis.asyncio as redis

from orderflow.config import settings


class IdempotencyRegistry:
    async def claim(self, key: str, value: str) -> str | None:
        """Bind key to value if unbound. Returns None when this caller won the key,
        otherwise the value bound by the earlier caller."""
        raise NotImplementedError

    async def release(self, key: str) -> None:
        raise NotImplementedError


class InMemoryIdempotencyRegistry(IdempotencyRegistry):
    def __init__(self) -> None:
        self._keys: dict[str, str] = {}

    async def claim(self, key: str, value: str) -> str | None:
        existing = self._keys.setdefault(key, value)
        return None if existing == value else existing

    async def release(self, key: str) -> None:
        self._keys.pop(key, None)


class RedisIdempotencyRegistry(IdempotencyRegistry):
    def __init__(self, client: redis.Redis, ttl_seconds: int | None = None) -> None:
        self._redis = client
        self._ttl = ttl_seconds or settings.idempotency_ttl_seconds

    async def claim(self, key: str, value: str) -> str | None:
        # SET NX: if we set it we're first; otherwise report who was
        was_set = await self._redis.set(key, value, nx=True, ex=self._ttl)
        if was_set:
            return None
        return await self._redis.get(key)

    async def release(self, key: str) -> None:
        await self._redis.delete(key)
