# knowledge_index/db.py
import logging
from sqlalchemy import text
from sqlalchemy.pool import NullPool
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from knowledge_index.config import settings
from knowledge_index.models import Base

logger = logging.getLogger(__name__)

# asyncpg pool; size comes from settings
engine = create_async_engine(
    settings.database_url,
    echo=settings.db_echo,
    future=True,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_models() -> None:
    """
    Development helper that enables pgvector and creates tables from ORM metadata.
    In production, prefer Alembic migrations instead of create_all().
    """
    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created/checked")


async def ping() -> bool:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    return True


async def close_engine() -> None:
    """Call this on app shutdown to cleanly dispose connection pool."""
    await engine.dispose()
    logger.info("Database engine disposed")


def create_worker_engine():
    """
    Engine for a short-lived event loop (one Celery task = one asyncio.run).
    NullPool so no connection outlives the loop that opened it.
    """
    return create_async_engine(settings.database_url, echo=settings.db_echo, poolclass=NullPool)
