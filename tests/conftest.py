"""
Общие фикстуры для тестов
"""

import fnmatch
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from crmsync.cache.redis_cache import RedisCache
from crmsync.models import Platform, PlatformSettings, SyncRule
from crmsync.utils.log_sink import LogEvent, LogSink


class FakeRedis:
    """Redis in memory with a manual clock for TTL checks"""

    def __init__(self):
        self.now = 0.0
        self.data: Dict[str, Any] = {}
        self.fail = False

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis is down")

    def _alive(self, key: str) -> Optional[Any]:
        item = self.data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self.now:
            del self.data[key]
            return None
        return value

    async def get(self, key):
        self._check()
        return self._alive(key)

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and self._alive(key) is not None:
            return None
        self.data[key] = (value, self.now + ex if ex else None)
        return True

    async def exists(self, *keys):
        self._check()
        return sum(1 for key in keys if self._alive(key) is not None)

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self._alive(key) is not None:
                del self.data[key]
                removed += 1
        return removed

    async def scan_iter(self, match=None):
        self._check()
        for key in list(self.data):
            if self._alive(key) is not None and fnmatch.fnmatchcase(key, match or "*"):
                yield key

    async def ping(self):
        self._check()
        return True

    async def info(self, section=None):
        self._check()
        return {"used_memory_human": "1.00M"}

    async def aclose(self):
        pass


class RecordingLogSink(LogSink):
    """LogSink that also keeps every accepted event in memory"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.events: List[LogEvent] = []

    def record(self, level, user_id, message, context=None, category="webhook"):
        self.events.append(LogEvent(level, user_id, message, context or {}, category))
        super().record(level, user_id, message, context, category)

    def levels(self, level: str) -> List[LogEvent]:
        return [e for e in self.events if e.level == level]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_cache(fake_redis):
    return RedisCache(client=fake_redis, namespace="test")


@pytest.fixture
def log_sink():
    return RecordingLogSink(max_queue_size=10000)


@pytest.fixture
def amocrm_settings():
    return PlatformSettings(
        user_id="user-1",
        platform=Platform.AMOCRM,
        subdomain="acme",
        api_key="amo-key"
    )


@pytest.fixture
def lptracker_settings():
    return PlatformSettings(
        user_id="user-1",
        platform=Platform.LPTRACKER,
        project_id="42",
        api_key="lpt-key"
    )


@pytest.fixture
def mock_store(amocrm_settings, lptracker_settings):
    """Мок хранилища конфигурации"""
    store = AsyncMock()
    store.get_sync_rules.return_value = []
    store.get_settings.return_value = None
    store.get_metadata.return_value = None

    async def all_settings(platform):
        return [s for s in (amocrm_settings, lptracker_settings) if s.platform == Platform(platform)]

    store.get_all_settings.side_effect = all_settings
    return store


def make_rule(
    rule_id: int,
    conditions: Optional[Dict[str, Any]] = None,
    actions: Optional[List[Dict[str, Any]]] = None,
    source: str = "amocrm",
    is_active: bool = True,
    user_id: str = "user-1"
) -> SyncRule:
    return SyncRule(
        id=rule_id,
        user_id=user_id,
        name=f"rule {rule_id}",
        webhook_source=source,
        is_active=is_active,
        conditions=conditions if conditions is not None else {"operator": "AND", "rules": []},
        actions={"list": actions if actions is not None else [{"type": "sync_to_amocrm"}]},
    )
