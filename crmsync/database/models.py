"""
SQLAlchemy models for crmsync
Platform settings, sync rules, cached platform metadata and system logs
"""

from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, Text, JSON,
    Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base


Base = declarative_base()


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at = Column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
        index=True
    )
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False
    )


class PlatformSettingsRecord(Base, TimestampMixin):
    """Per-user credentials for AmoCRM or LPTracker"""
    __tablename__ = "platform_settings"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    platform = Column(String(20), nullable=False, index=True)  # amocrm, lptracker

    subdomain = Column(String(255), nullable=True, index=True)  # AmoCRM
    project_id = Column(String(64), nullable=True, index=True)  # LPTracker
    api_key_encrypted = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "platform", name="uq_settings_user_platform"),
    )


class SyncRuleRecord(Base, TimestampMixin):
    """User-defined condition -> action rule"""
    __tablename__ = "sync_rules"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="")
    webhook_source = Column(String(20), nullable=False)  # amocrm, lptracker
    is_active = Column(Boolean, default=True, nullable=False)

    # {"operator": "AND", "rules": [...]} / {"list": [...]}
    conditions = Column(JSON, nullable=False, default=dict)
    actions = Column(JSON, nullable=False, default=dict)

    execution_count = Column(Integer, default=0, nullable=False)
    last_executed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_rules_user_source", "user_id", "webhook_source"),
    )


class PlatformMetadata(Base, TimestampMixin):
    """Pipelines, statuses, projects... fetched from a CRM"""
    __tablename__ = "platform_metadata"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    platform = Column(String(20), nullable=False)
    kind = Column(String(50), nullable=False)
    data = Column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "platform", "kind", name="uq_metadata_user_platform_kind"),
    )


class SystemLog(Base, TimestampMixin):
    """System logs for monitoring and debugging"""
    __tablename__ = "system_logs"

    id = Column(Integer, primary_key=True)
    level = Column(String(20), nullable=False, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    message = Column(Text, nullable=False)
    context = Column(JSON, nullable=True)
    source = Column(String(100), nullable=True, index=True)

    __table_args__ = (
        Index("idx_logs_level_created", "level", "created_at"),
        Index("idx_logs_source_created", "source", "created_at"),
    )
