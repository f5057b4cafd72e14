from __future__ import annotations

import contextlib
from typing import Dict, Iterator, List, Mapping, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from userservice.storage.errors import StorageError


@contextlib.contextmanager
def _translate(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise StorageError(operation, str(exc)) from exc


class RedisSessionStore:
    """Thin Redis wrapper exposing only the primitives session tokens need."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()

    async def exists(self, key: str) -> bool:
        with _translate("exists"):
            return bool(await self.client.exists(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with _translate("expire"):
            return bool(await self.client.expire(key, ttl_seconds))

    async def hset(self, key: str, mapping: Mapping[str, str]) -> int:
        with _translate("hset"):
            return int(await self.client.hset(key, mapping=dict(mapping)))

    async def hget(self, key: str, field: str) -> Optional[str]:
        with _translate("hget"):
            return await self.client.hget(key, field)

    async def hgetall(self, key: str) -> Dict[str, str]:
        with _translate("hgetall"):
            return dict(await self.client.hgetall(key))

    async def hdel(self, key: str, *fields: str) -> int:
        with _translate("hdel"):
            return int(await self.client.hdel(key, *fields))

    async def sadd(self, key: str, *members: str) -> int:
        with _translate("sadd"):
            return int(await self.client.sadd(key, *members))

    async def srem(self, key: str, *members: str) -> int:
        with _translate("srem"):
            return int(await self.client.srem(key, *members))

    async def smembers(self, key: str) -> List[str]:
        with _translate("smembers"):
            return sorted(await self.client.smembers(key))
