"""
Database configuration and session management.
Uses SQLAlchemy 2.0 with async support.
"""

from typing import Any, AsyncGenerator, Dict, Optional, Sequence
from contextlib import asynccontextmanager

from sqlalchemy import insert, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine
)

from .config import settings, DatabaseConfig
from .logging import get_logger

logger = get_logger(__name__)

# Process-wide engine and session maker, set by init_database()
async_engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None

# Dialects with native INSERT ... ON CONFLICT DO NOTHING
_CONFLICT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory used by the stores and handlers."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def init_database(database_url: Optional[str] = None) -> async_sessionmaker[AsyncSession]:
    """Initialize database connections and session makers."""
    global async_engine, async_session_maker

    logger.info("Initializing database connections")

    url = database_url or settings.database_url
    async_engine = create_async_engine(
        DatabaseConfig.get_database_url(url, async_driver=True),
        **DatabaseConfig.get_engine_config(url),
        echo=settings.debug
    )
    async_session_maker = create_session_maker(async_engine)

    logger.info("Database connections initialized")
    return async_session_maker


async def close_database() -> None:
    """Close database connections."""
    global async_engine, async_session_maker

    logger.info("Closing database connections")

    if async_engine:
        await async_engine.dispose()
    async_engine = None
    async_session_maker = None

    logger.info("Database connections closed")


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Return the initialized session factory."""
    if not async_session_maker:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return async_session_maker


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session with automatic cleanup.

    Usage:
        async with get_async_session() as session:
            # Use session here
            pass
    """
    async with get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def insert_or_ignore(
    session: AsyncSession,
    model: Any,
    values: Dict[str, Any],
    conflict_columns: Sequence[str]
) -> Optional[int]:
    """
    Insert a row unless it collides on a unique key.

    Returns the new row id, or None when the row already existed.
    """
    dialect = session.get_bind().dialect.name
    if dialect in _CONFLICT_INSERTS:
        stmt = (
            _CONFLICT_INSERTS[dialect](model)
            .values(**values)
            .on_conflict_do_nothing(index_elements=list(conflict_columns))
            .returning(model.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    try:
        async with session.begin_nested():
            result = await session.execute(insert(model).values(**values).returning(model.id))
            return result.scalar_one()
    except IntegrityError:
        return None


class DatabaseManager:
    """Database manager for administrative operations."""

    @staticmethod
    def _engine(engine: Optional[AsyncEngine]) -> AsyncEngine:
        engine = engine or async_engine
        if not engine:
            raise RuntimeError("Database not initialized")
        return engine

    @staticmethod
    async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
        """Create all tables in the database."""
        from chain_indexer.models import Base

        logger.info("Creating database tables")
        async with DatabaseManager._engine(engine).begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    @staticmethod
    async def drop_tables(engine: Optional[AsyncEngine] = None) -> None:
        """Drop all tables in the database."""
        from chain_indexer.models import Base

        logger.warning("Dropping all database tables")
        async with DatabaseManager._engine(engine).begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped")

    @staticmethod
    async def health_check() -> bool:
        """Check database connectivity."""
        try:
            async with get_async_session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False
