"""Redis-backed cache for short-lived bot state.

Holds modal staging blobs, cached task lists, rate-limit counters, OAuth
state and sync bookkeeping. Everything stored here is disposable.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from naffles_bot.shared.config import get_settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis_client(url: Optional[str] = None) -> redis.Redis:
    """Get the shared Redis client, creating it on first use."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            url or get_settings().redis_url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )
    return _redis_client


async def close_redis_client() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


class CacheManager:
    """Thin JSON cache over a ``redis.asyncio`` client.

    Args:
        client: Redis client (``decode_responses=True``)
        prefix: Namespace prepended to every key
    """

    def __init__(self, client: redis.Redis, prefix: str = "naffles:"):
        self.client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.client.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            await self.client.delete(self._key(key))
            return None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        payload = json.dumps(value, default=str)
        if ttl:
            await self.client.set(self._key(key), payload, ex=ttl)
        else:
            await self.client.set(self._key(key), payload)

    async def pop_json(self, key: str) -> Optional[Any]:
        """Read and delete a key in one round trip."""
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.get(self._key(key))
            pipe.delete(self._key(key))
            raw, _ = await pipe.execute()
        if raw is None:
            return None
        return json.loads(raw)

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(self._key(key)))

    async def increment(self, key: str, ttl: int) -> int:
        """Atomically increment a counter, setting its expiry on first use."""
        full_key = self._key(key)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(full_key)
            pipe.expire(full_key, ttl, nx=True)
            count, _ = await pipe.execute()
        return int(count)

    async def ttl(self, key: str) -> int:
        """Remaining time to live in seconds, or -2 when the key is missing."""
        return int(await self.client.ttl(self._key(key)))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def cleanup(self) -> None:
        await self.client.aclose()
