"""
Async engine and session handling for the PostgreSQL store.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from caseflow.config import get_settings


class Database:
    """
    Owns the engine for one database URL.

    PostgresWorkflowStore opens one session per store call through
    ``session()``; nothing holds a session across an await on another
    instance's lock.
    """

    def __init__(self, url: Optional[str] = None):
        self._url = url
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    async def init(self) -> None:
        settings = get_settings()
        pg = settings.postgres

        self._engine = create_async_engine(
            self._url or pg.url,
            pool_size=pg.pool_size,
            max_overflow=pg.max_overflow,
            pool_timeout=pg.pool_timeout,
            pool_pre_ping=True,
            connect_args={"server_settings": {"application_name": settings.app_name}},
        )
        # Loaded rows are converted to pydantic models before the session closes
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False, autoflush=False)

    async def create_tables(self) -> None:
        """Create missing tables. Deployed databases are migrated with alembic."""
        from caseflow.storage.postgres.models import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        One unit of work: committed when the block exits cleanly, rolled
        back when it raises.

        Usage:
            async with database.session() as session:
                session.add(row)
        """
        if self._sessions is None:
            raise RuntimeError("Database not initialized. Call init() first.")

        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
