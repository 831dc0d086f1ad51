"""Database migration utilities."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from ..models.base import Base
from ..models.credit_transaction import CreditTransaction  # noqa: F401
from ..models.instance import Instance  # noqa: F401
from .connection import db_manager


def _resolve_engine(engine: Optional[AsyncEngine]) -> AsyncEngine:
    if engine is None:
        if not db_manager.engine:
            db_manager.initialize()
        engine = db_manager.engine
    return engine


async def create_tables(engine: Optional[AsyncEngine] = None):
    """Create all database tables."""
    async with _resolve_engine(engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(engine: Optional[AsyncEngine] = None):
    """Drop all database tables."""
    async with _resolve_engine(engine).begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
