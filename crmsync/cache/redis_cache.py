"""
Namespaced Redis key/value access
Every key written by this deployment is prefixed with ``<namespace>:``.
Errors are raised to the caller; the caches built on top decide how to degrade.
"""

import json
from typing import Any, List, Optional

import redis.asyncio as aioredis
import structlog

from ..config import get_settings

logger = structlog.get_logger("crmsync.cache.redis")


class RedisCache:
    """JSON values over Redis with a per-deployment key namespace"""

    def __init__(self, client: Optional[aioredis.Redis] = None, namespace: Optional[str] = None):
        self.settings = get_settings()
        self.namespace = namespace or self.settings.cache_namespace
        self._redis_client = client

    async def get_redis_client(self) -> aioredis.Redis:
        """Get Redis client with lazy initialization"""
        if self._redis_client is None:
            self._redis_client = aioredis.from_url(
                self.settings.redis_url,
                decode_responses=True
            )
            logger.info("Redis client created", namespace=self.namespace)
        return self._redis_client

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _strip(self, full_key: str) -> str:
        prefix = f"{self.namespace}:"
        return full_key[len(prefix):] if full_key.startswith(prefix) else full_key

    async def get(self, key: str) -> Optional[Any]:
        client = await self.get_redis_client()
        value = await client.get(self._key(key))
        if value is None:
            return None
        return json.loads(value)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        client = await self.get_redis_client()
        await client.set(self._key(key), json.dumps(value, default=str), ex=ttl)

    async def exists(self, key: str) -> bool:
        client = await self.get_redis_client()
        return bool(await client.exists(self._key(key)))

    async def keys(self, pattern: str) -> List[str]:
        """Keys matching ``pattern`` inside the namespace, returned without the prefix"""
        client = await self.get_redis_client()
        found = []
        async for full_key in client.scan_iter(match=self._key(pattern)):
            found.append(self._strip(full_key))
        return found

    async def flush_pattern(self, pattern: str) -> int:
        """Delete every namespaced key matching ``pattern``"""
        client = await self.get_redis_client()
        full_keys = [full_key async for full_key in client.scan_iter(match=self._key(pattern))]
        if not full_keys:
            return 0
        return await client.delete(*full_keys)

    async def ping(self) -> bool:
        client = await self.get_redis_client()
        return bool(await client.ping())

    async def info_memory(self) -> Optional[str]:
        client = await self.get_redis_client()
        info = await client.info("memory")
        return info.get("used_memory_human")

    async def close(self) -> None:
        if self._redis_client is not None:
            await self._redis_client.aclose()
            self._redis_client = None
            logger.info("Redis connection closed")
