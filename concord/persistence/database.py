"""Async database connection management for the SQL journal."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from concord.core.config import get_settings
from concord.persistence.models import Base


class Database:
    """
    Owns one async engine and its session maker.

    Example:
        >>> db = Database("sqlite+aiosqlite:///concord.db")
        >>> async with db.session() as session:
        ...     await session.execute(query)
    """

    def __init__(self, url: str | None = None, echo: bool | None = None) -> None:
        settings = get_settings()
        url = url or settings.database_url_async
        if url is None:
            raise ValueError("No database URL configured (set DATABASE_URL)")

        self.url = url
        options: dict = {"echo": settings.concord_debug if echo is None else echo}
        if url.startswith("postgresql"):
            options.update(
                pool_size=10,
                max_overflow=20,
                pool_timeout=30,
                pool_recycle=3600,
                pool_pre_ping=True,
            )

        self.engine: AsyncEngine = create_async_engine(url, **options)
        self.session_maker: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database engine created")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session.

        Commits on success and rolls back on any exception.
        """
        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_schema(self) -> None:
        """Create all journal tables if they don't exist."""
        logger.info("Initializing database schema")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema initialized")

    async def drop_schema(self) -> None:
        """
        Drop all journal tables.

        WARNING: This will delete all data!
        """
        logger.warning("Dropping all database tables")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def close(self) -> None:
        """Close database connections."""
        await self.engine.dispose()
        logger.info("Database connections closed")

    async def health_check(self) -> bool:
        """Return True if the database is reachable."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False
