"""Async SQLAlchemy engine, sessions and the shared declarative base."""
import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time without tzinfo; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Database:
    """
    Owns the engine for one service.

    PostgreSQL (asyncpg) gets a sized connection pool. SQLite (aiosqlite, used
    by the test suite) keeps SQLAlchemy's default pool.
    """

    def __init__(self, database_url: str, echo: bool = False):
        options = {"echo": echo, "pool_pre_ping": True}
        if database_url.startswith("postgresql"):
            options.update(pool_size=10, max_overflow=20)

        self.engine = create_async_engine(database_url, **options)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Schema ready on {self.engine.url.get_backend_name()}")

    async def close(self):
        await self.engine.dispose()
        logger.info("Database engine disposed")
