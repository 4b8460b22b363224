"""
Async engine and session handling for the graph tables.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from process_workflow.config import get_settings
from process_workflow.config.settings import PostgresSettings
from process_workflow.storage.postgres.models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Engine and session factory for PostgresGraphRepository.

    One session is opened per repository call; it commits when the block
    exits cleanly and rolls back otherwise.
    """

    def __init__(self, settings: Optional[PostgresSettings] = None):
        self.settings = settings or get_settings().postgres
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    async def init(self) -> None:
        s = self.settings
        self._engine = create_async_engine(
            s.url,
            pool_size=s.pool_size,
            max_overflow=s.max_overflow,
            pool_timeout=s.pool_timeout,
            pool_pre_ping=True,
        )
        # Graphs are converted to pydantic models before the session closes
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False, autoflush=False)
        logger.debug(f"Graph database at {s.host}:{s.port}/{s.database}")

        if s.create_schema:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Graph tables created where missing")

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Open a session scoped to one repository call.

        Usage:
            async with database.session() as session:
                model = await WorkflowGraphRepository(session).get_template(workflow_id)
        """
        if self._sessions is None:
            raise RuntimeError("Database used before init()")

        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
