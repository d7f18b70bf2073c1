"""
CRUD operations for database models
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, delete, and_, desc
from sqlalchemy.ext.asyncio import AsyncSession

from .models import PlatformMetadata, PlatformSettingsRecord, SyncRuleRecord, SystemLog


class PlatformSettingsCRUD:
    """CRUD operations for PlatformSettingsRecord"""

    @staticmethod
    async def get(
        session: AsyncSession,
        user_id: str,
        platform: str
    ) -> Optional[PlatformSettingsRecord]:
        result = await session.execute(
            select(PlatformSettingsRecord).where(
                and_(
                    PlatformSettingsRecord.user_id == user_id,
                    PlatformSettingsRecord.platform == platform
                )
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_all(session: AsyncSession, platform: str) -> List[PlatformSettingsRecord]:
        result = await session.execute(
            select(PlatformSettingsRecord)
            .where(PlatformSettingsRecord.platform == platform)
            .order_by(PlatformSettingsRecord.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def save(
        session: AsyncSession,
        user_id: str,
        platform: str,
        subdomain: Optional[str] = None,
        project_id: Optional[str] = None,
        api_key_encrypted: Optional[str] = None
    ) -> PlatformSettingsRecord:
        """Create or replace the settings of one user on one platform"""
        record = await PlatformSettingsCRUD.get(session, user_id, platform)
        if record is None:
            record = PlatformSettingsRecord(user_id=user_id, platform=platform)
            session.add(record)

        record.subdomain = subdomain
        record.project_id = project_id
        record.api_key_encrypted = api_key_encrypted
        await session.flush()
        return record


class SyncRuleCRUD:
    """CRUD operations for SyncRuleRecord"""

    @staticmethod
    async def get_rules_for_user(session: AsyncSession, user_id: str) -> List[SyncRuleRecord]:
        """Rules of a user in stored order"""
        result = await session.execute(
            select(SyncRuleRecord)
            .where(SyncRuleRecord.user_id == user_id)
            .order_by(SyncRuleRecord.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def create_rule(
        session: AsyncSession,
        user_id: str,
        name: str,
        webhook_source: str,
        conditions: Dict[str, Any],
        actions: Dict[str, Any],
        is_active: bool = True
    ) -> SyncRuleRecord:
        rule = SyncRuleRecord(
            user_id=user_id,
            name=name,
            webhook_source=webhook_source,
            conditions=conditions,
            actions=actions,
            is_active=is_active
        )
        session.add(rule)
        await session.flush()
        return rule

    @staticmethod
    async def set_active(session: AsyncSession, rule_id: int, is_active: bool) -> bool:
        result = await session.execute(
            update(SyncRuleRecord)
            .where(SyncRuleRecord.id == rule_id)
            .values(is_active=is_active)
        )
        return result.rowcount > 0

    @staticmethod
    async def delete_rule(session: AsyncSession, rule_id: int) -> bool:
        result = await session.execute(
            delete(SyncRuleRecord).where(SyncRuleRecord.id == rule_id)
        )
        return result.rowcount > 0

    @staticmethod
    async def increment_execution(session: AsyncSession, rule_id: int) -> None:
        """Atomic counter increment"""
        await session.execute(
            update(SyncRuleRecord)
            .where(SyncRuleRecord.id == rule_id)
            .values(
                execution_count=SyncRuleRecord.execution_count + 1,
                last_executed_at=datetime.utcnow()
            )
        )


class MetadataCRUD:
    """CRUD operations for PlatformMetadata"""

    @staticmethod
    async def get(
        session: AsyncSession,
        user_id: str,
        platform: str,
        kind: str
    ) -> Optional[PlatformMetadata]:
        result = await session.execute(
            select(PlatformMetadata).where(
                and_(
                    PlatformMetadata.user_id == user_id,
                    PlatformMetadata.platform == platform,
                    PlatformMetadata.kind == kind
                )
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def save(
        session: AsyncSession,
        user_id: str,
        platform: str,
        kind: str,
        data: Any
    ) -> PlatformMetadata:
        record = await MetadataCRUD.get(session, user_id, platform, kind)
        if record is None:
            record = PlatformMetadata(user_id=user_id, platform=platform, kind=kind)
            session.add(record)
        record.data = data
        await session.flush()
        return record


class SystemLogCRUD:
    """CRUD operations for SystemLog model"""

    @staticmethod
    async def log_event(
        session: AsyncSession,
        level: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> None:
        """Log system event"""
        log_entry = SystemLog(
            level=level,
            user_id=user_id,
            message=message,
            context=context,
            source=source
        )
        session.add(log_entry)
        await session.flush()

    @staticmethod
    async def get_recent_logs(
        session: AsyncSession,
        level: Optional[str] = None,
        source: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100
    ) -> List[SystemLog]:
        """Get recent log entries"""
        query = select(SystemLog)

        if level:
            query = query.where(SystemLog.level == level)
        if source:
            query = query.where(SystemLog.source == source)
        if user_id:
            query = query.where(SystemLog.user_id == user_id)

        query = query.order_by(desc(SystemLog.created_at)).limit(limit)

        result = await session.execute(query)
        return list(result.scalars().all())
