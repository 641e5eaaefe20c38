"""Database configuration and utilities."""
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str, echo: bool = False, **engine_options: Any):
        """
        Initialize database connection.

        Args:
            database_url: Async SQLAlchemy connection URL
            echo: Whether to echo SQL queries
            engine_options: Overrides for the engine pool settings
        """
        options = {
            "pool_size": 10,
            "max_overflow": 20,
            "pool_pre_ping": True,
        }
        options.update(engine_options)

        self.engine = create_async_engine(database_url, echo=echo, **options)

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_tables(self):
        """Create all database tables."""
        # Registers the mapped classes on Base.metadata
        from . import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()
        logger.info("Database connections closed")
