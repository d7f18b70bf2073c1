"""
Database initialization and connection management
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy import text

from ..config import get_settings
from .models import Base

logger = structlog.get_logger("crmsync.database")


class DatabaseManager:
    """Database connection and session management"""

    def __init__(self, database_url: Optional[str] = None):
        self.settings = get_settings()
        self.database_url = database_url or self.settings.database_url
        self.engine = None
        self.session_factory = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    async def init_database(self):
        """Initialize database connection and create tables"""
        engine_kwargs = {"echo": self.settings.debug}
        if self.is_sqlite:
            engine_kwargs.update(
                connect_args={"check_same_thread": False, "timeout": 30},
                poolclass=StaticPool,
            )
        else:
            engine_kwargs.update(
                pool_size=20,
                pool_pre_ping=True,
                pool_recycle=3600,  # Recycle connections every hour
            )

        self.engine = create_async_engine(self.database_url, **engine_kwargs)

        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

            if self.is_sqlite and ":memory:" not in self.database_url:
                await conn.execute(text("PRAGMA journal_mode=WAL"))
                await conn.execute(text("PRAGMA synchronous=NORMAL"))

        logger.info("Database initialized", sqlite=self.is_sqlite)

    @asynccontextmanager
    async def get_session(self):
        """Get database session as async context manager"""
        if not self.session_factory:
            await self.init_database()

        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def check_connection(self) -> bool:
        async with self.get_session() as session:
            await session.execute(text("SELECT 1"))
        return True

    async def close(self):
        """Close database connections"""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None


# Global database manager
db_manager = DatabaseManager()


async def init_database():
    """Initialize the global database"""
    await db_manager.init_database()
