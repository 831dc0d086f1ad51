"""Async database engine and session management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from ..config import get_settings

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the process-wide async engine and session factory."""

    def __init__(self):
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    def initialize(self, database_url: Optional[str] = None) -> None:
        """Create the engine and session factory (idempotent per URL)."""
        settings = get_settings()
        url = database_url or settings.get_database_url()

        if url.startswith("sqlite"):
            # One connection per session; the busy timeout lets concurrent
            # writers queue on the database lock instead of failing.
            engine = create_async_engine(
                url,
                echo=False,
                poolclass=NullPool,
                connect_args={"timeout": 30},
            )
        else:
            engine = create_async_engine(
                url,
                echo=False,
                pool_size=10,
                max_overflow=20,
                pool_pre_ping=True,
            )

        self.bind(engine)
        logger.info("Database engine initialized (%s)", engine.url.get_backend_name())

    def bind(self, engine: AsyncEngine) -> None:
        """Use an existing engine (tests, embedding applications)."""
        self.engine = engine
        self.session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self.session_factory = None

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self.session_factory is None:
            self.initialize()
        return self.session_factory


db_manager = DatabaseManager()


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Async context manager yielding a session outside of request scope."""
    async with db_manager._factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise

