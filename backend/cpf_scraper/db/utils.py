"""Database utility functions: schema creation, bulk clear, health check."""

from typing import Dict

import structlog
from sqlalchemy import delete, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cpf_scraper.models import Base, Training, TrainingCenter

logger = structlog.get_logger(__name__)


async def create_tables(bind: AsyncEngine) -> None:
    """Create all tables from SQLAlchemy models (no-op for existing tables)."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("database_tables_verified")


async def clear_tables(session_factory: async_sessionmaker[AsyncSession]) -> Dict[str, int]:
    """Delete every Training, then every TrainingCenter, in one transaction.

    Returns:
        dict with 'trainings' and 'centers' row counts removed
    """
    async with session_factory() as session:
        async with session.begin():
            trainings = await session.execute(delete(Training))
            centers = await session.execute(delete(TrainingCenter))

    counts = {"trainings": trainings.rowcount or 0, "centers": centers.rowcount or 0}
    logger.info("tables_cleared", **counts)
    return counts


async def check_database_health(session_factory: async_sessionmaker[AsyncSession]) -> dict:
    """Check if database is accessible and responsive.

    Returns:
        dict with 'healthy' boolean and optional 'error' message
    """
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            return {"healthy": True}
    except Exception as e:
        return {"healthy": False, "error": str(e)}
