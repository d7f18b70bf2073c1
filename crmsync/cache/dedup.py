"""
Webhook deduplication markers
``webhook:<user>:<external id>:<rule>:<action timestamp | default>`` with a fixed TTL.
A failing store never fails the job: a lookup error reads as "not processed",
a mark error is only logged.
"""

import time
from typing import Any, Optional

import structlog

from ..config import get_settings
from .redis_cache import RedisCache

logger = structlog.get_logger("crmsync.cache.dedup")


class DeduplicationStore:
    """Records which (user, entity, rule, timestamp) combinations were acted on"""

    KEY_PREFIX = "webhook"
    DEFAULT_TIMESTAMP = "default"

    def __init__(self, cache: RedisCache, ttl_seconds: Optional[int] = None):
        self.cache = cache
        self.ttl_seconds = ttl_seconds or get_settings().dedup_ttl_seconds

    @classmethod
    def build_key(
        cls,
        user_id: str,
        external_id: str,
        rule_id: Any,
        timestamp: Optional[Any] = None
    ) -> str:
        ts = timestamp if timestamp not in (None, "", 0) else cls.DEFAULT_TIMESTAMP
        return f"{cls.KEY_PREFIX}:{user_id}:{external_id}:{rule_id}:{ts}"

    async def exists(self, key: str) -> bool:
        try:
            return await self.cache.exists(key)
        except Exception as e:
            logger.warning("Dedup lookup failed, treating as not processed", key=key, error=str(e))
            return False

    async def mark(self, key: str, ttl: Optional[int] = None) -> None:
        try:
            await self.cache.set(
                key,
                {"processed": True, "timestamp": time.time()},
                ttl or self.ttl_seconds
            )
        except Exception as e:
            logger.error("Dedup mark failed", key=key, error=str(e))

    async def clear_user(self, user_id: str) -> int:
        try:
            return await self.cache.flush_pattern(f"{self.KEY_PREFIX}:{user_id}:*")
        except Exception as e:
            logger.warning("Dedup clear failed", user_id=user_id, error=str(e))
            return 0

    async def clear_all(self) -> int:
        try:
            return await self.cache.flush_pattern(f"{self.KEY_PREFIX}:*")
        except Exception as e:
            logger.warning("Dedup clear failed", error=str(e))
            return 0
