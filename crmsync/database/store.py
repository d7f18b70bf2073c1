"""
SQL-backed configuration store
Implements the ConfigurationStore interface the webhook pipeline reads from,
plus the writes the admin side performs. Every write notifies the registered
change listeners so caches can drop the user's entries.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ..models import Platform, PlatformSettings, SyncRule
from ..utils.log_sink import LogEvent
from ..utils.security import SecurityManager
from .crud import MetadataCRUD, PlatformSettingsCRUD, SyncRuleCRUD, SystemLogCRUD
from .init_db import DatabaseManager, db_manager
from .models import PlatformSettingsRecord, SyncRuleRecord

logger = structlog.get_logger("crmsync.database.store")

ChangeListener = Callable[[str], Awaitable[Any]]


def _rule_from_record(record: SyncRuleRecord) -> SyncRule:
    return SyncRule(
        id=record.id,
        user_id=record.user_id,
        name=record.name or "",
        webhook_source=record.webhook_source,
        is_active=record.is_active,
        conditions=record.conditions or {},
        actions=record.actions or {},
        execution_count=record.execution_count or 0,
    )


class SqlConfigurationStore:
    """ConfigurationStore over SQLAlchemy"""

    def __init__(
        self,
        database: Optional[DatabaseManager] = None,
        security: Optional[SecurityManager] = None
    ):
        self.db = database or db_manager
        self.security = security or SecurityManager()
        self._listeners: List[ChangeListener] = []

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    async def _notify(self, user_id: str) -> None:
        for listener in self._listeners:
            try:
                await listener(user_id)
            except Exception as e:
                logger.warning("Config change listener failed", user_id=user_id, error=str(e))

    def _settings_from_record(self, record: PlatformSettingsRecord) -> PlatformSettings:
        api_key = None
        if record.api_key_encrypted:
            try:
                api_key = self.security.decrypt_data(record.api_key_encrypted)
            except ValueError as e:
                logger.error("Failed to decrypt API key", user_id=record.user_id, platform=record.platform, error=str(e))
        return PlatformSettings(
            user_id=record.user_id,
            platform=Platform(record.platform),
            subdomain=record.subdomain,
            project_id=record.project_id,
            api_key=api_key,
        )

    # Reads

    async def get_sync_rules(self, user_id: str) -> List[SyncRule]:
        async with self.db.get_session() as session:
            records = await SyncRuleCRUD.get_rules_for_user(session, user_id)
            return [_rule_from_record(r) for r in records]

    async def get_settings(self, user_id: str, platform: Platform) -> Optional[PlatformSettings]:
        async with self.db.get_session() as session:
            record = await PlatformSettingsCRUD.get(session, user_id, Platform(platform).value)
            return self._settings_from_record(record) if record else None

    async def get_all_settings(self, platform: Platform) -> List[PlatformSettings]:
        async with self.db.get_session() as session:
            records = await PlatformSettingsCRUD.get_all(session, Platform(platform).value)
            return [self._settings_from_record(r) for r in records]

    async def get_metadata(self, user_id: str, platform: Platform, kind: str) -> Optional[Any]:
        async with self.db.get_session() as session:
            record = await MetadataCRUD.get(session, user_id, Platform(platform).value, kind)
            return record.data if record else None

    async def increment_rule_execution(self, rule_id: int) -> None:
        async with self.db.get_session() as session:
            await SyncRuleCRUD.increment_execution(session, rule_id)

    # Writes

    async def save_settings(
        self,
        user_id: str,
        platform: Platform,
        api_key: Optional[str] = None,
        subdomain: Optional[str] = None,
        project_id: Optional[str] = None
    ) -> None:
        async with self.db.get_session() as session:
            await PlatformSettingsCRUD.save(
                session,
                user_id=user_id,
                platform=Platform(platform).value,
                subdomain=subdomain,
                project_id=str(project_id) if project_id is not None else None,
                api_key_encrypted=self.security.encrypt_data(api_key) if api_key else None,
            )
        await self._notify(user_id)

    async def create_rule(
        self,
        user_id: str,
        name: str,
        webhook_source: str,
        conditions: Dict[str, Any],
        actions: Dict[str, Any],
        is_active: bool = True
    ) -> SyncRule:
        async with self.db.get_session() as session:
            record = await SyncRuleCRUD.create_rule(
                session, user_id, name, webhook_source, conditions, actions, is_active
            )
            rule = _rule_from_record(record)
        await self._notify(user_id)
        return rule

    async def set_rule_active(self, user_id: str, rule_id: int, is_active: bool) -> bool:
        async with self.db.get_session() as session:
            changed = await SyncRuleCRUD.set_active(session, rule_id, is_active)
        if changed:
            await self._notify(user_id)
        return changed

    async def delete_rule(self, user_id: str, rule_id: int) -> bool:
        async with self.db.get_session() as session:
            deleted = await SyncRuleCRUD.delete_rule(session, rule_id)
        if deleted:
            await self._notify(user_id)
        return deleted

    async def save_metadata(self, user_id: str, platform: Platform, kind: str, data: Any) -> None:
        async with self.db.get_session() as session:
            await MetadataCRUD.save(session, user_id, Platform(platform).value, kind, data)
        await self._notify(user_id)

    # Log persistence

    async def persist_log_event(self, event: LogEvent) -> None:
        async with self.db.get_session() as session:
            await SystemLogCRUD.log_event(
                session,
                level=event.level,
                message=event.message,
                context=event.context,
                source=event.category,
                user_id=event.user_id,
            )
