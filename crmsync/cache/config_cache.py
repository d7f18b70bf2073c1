"""
Read-through cache over the configuration store
Rules, platform settings and platform metadata, each with its own TTL.
Keys are user-first (``config:<user_id>:<kind>[:<part>...]``) so a user's
entries can be dropped with one pattern.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from pydantic import TypeAdapter, ValidationError

from ..config import get_settings
from ..models import ConfigurationStore, Platform, PlatformSettings, SyncRule
from .redis_cache import RedisCache

logger = structlog.get_logger("crmsync.cache.config")


class CacheKind(str, Enum):
    RULES = "rules"
    SETTINGS = "settings"
    METADATA = "metadata"


_ADAPTERS: Dict[CacheKind, TypeAdapter] = {
    CacheKind.RULES: TypeAdapter(List[SyncRule]),
    CacheKind.SETTINGS: TypeAdapter(PlatformSettings),
    CacheKind.METADATA: TypeAdapter(Any),
}


class ConfigCache:
    """Read-through cache; never authoritative for writes"""

    KEY_PREFIX = "config"

    def __init__(self, cache: RedisCache, store: ConfigurationStore):
        self.cache = cache
        self.store = store
        settings = get_settings()
        self.ttls: Dict[CacheKind, int] = {
            CacheKind.RULES: settings.rules_cache_ttl,
            CacheKind.SETTINGS: settings.settings_cache_ttl,
            CacheKind.METADATA: settings.metadata_cache_ttl,
        }

    @classmethod
    def build_key(cls, kind: CacheKind, user_id: str, *parts: Any) -> str:
        segments = [cls.KEY_PREFIX, str(user_id), CacheKind(kind).value]
        segments.extend(str(getattr(p, "value", p)) for p in parts)
        return ":".join(segments)

    async def _load(self, kind: CacheKind, user_id: str, *parts: Any) -> Any:
        if kind == CacheKind.RULES:
            return await self.store.get_sync_rules(user_id)
        if kind == CacheKind.SETTINGS:
            return await self.store.get_settings(user_id, Platform(parts[0]))
        return await self.store.get_metadata(user_id, Platform(parts[0]), str(parts[1]))

    async def get(self, kind: CacheKind, user_id: str, *parts: Any) -> Any:
        """Cached value, loading and caching it from the store on a miss"""
        kind = CacheKind(kind)
        key = self.build_key(kind, user_id, *parts)
        adapter = _ADAPTERS[kind]

        cached = None
        try:
            cached = await self.cache.get(key)
        except Exception as e:
            logger.warning("Config cache get failed", key=key, error=str(e))

        if cached is not None:
            try:
                value = adapter.validate_python(cached)
                logger.debug("Config cache hit", key=key)
                return value
            except ValidationError as e:
                logger.warning("Discarding undecodable cache entry", key=key, error=str(e))

        value = await self._load(kind, user_id, *parts)
        if value is None:
            return None

        try:
            await self.cache.set(key, adapter.dump_python(value, mode="json"), self.ttls[kind])
            logger.debug("Config cached", key=key, ttl=self.ttls[kind])
        except Exception as e:
            logger.warning("Config cache save failed", key=key, error=str(e))

        return value

    async def get_sync_rules(self, user_id: str) -> List[SyncRule]:
        return await self.get(CacheKind.RULES, user_id) or []

    async def get_settings(self, user_id: str, platform: Platform) -> Optional[PlatformSettings]:
        return await self.get(CacheKind.SETTINGS, user_id, Platform(platform))

    async def get_metadata(self, user_id: str, platform: Platform, metadata_kind: str) -> Any:
        return await self.get(CacheKind.METADATA, user_id, Platform(platform), metadata_kind)

    async def invalidate(self, user_id: str) -> int:
        """Drop every cached entry of one user, across all kinds"""
        try:
            removed = await self.cache.flush_pattern(f"{self.KEY_PREFIX}:{user_id}:*")
            logger.info("User config cache invalidated", user_id=user_id, removed=removed)
            return removed
        except Exception as e:
            logger.warning("Config cache invalidation failed", user_id=user_id, error=str(e))
            return 0

    async def clear_all(self) -> int:
        try:
            removed = await self.cache.flush_pattern(f"{self.KEY_PREFIX}:*")
            logger.info("Config cache cleared", removed=removed)
            return removed
        except Exception as e:
            logger.warning("Config cache clear failed", error=str(e))
            return 0

    async def size(self, kind: Optional[CacheKind] = None) -> int:
        pattern = f"{self.KEY_PREFIX}:*:{CacheKind(kind).value}*" if kind else f"{self.KEY_PREFIX}:*"
        try:
            return len(await self.cache.keys(pattern))
        except Exception as e:
            logger.warning("Config cache size lookup failed", error=str(e))
            return 0
