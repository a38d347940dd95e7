"""Helpers shared by the command-line entry points."""

import structlog

from cpf_scraper.core.exceptions import CpfScraperException
from cpf_scraper.db.session import async_session_factory, engine
from cpf_scraper.db.utils import check_database_health, create_tables

logger = structlog.get_logger(__name__)


class StoreUnavailableError(CpfScraperException):
    """The configured database cannot be reached."""


async def prepare_store() -> None:
    """Create missing tables and make sure the store answers.

    Raises:
        StoreUnavailableError: the database is unreachable
    """
    try:
        await create_tables(engine)
    except Exception as e:
        raise StoreUnavailableError(f"Cannot create tables: {e}") from e

    health = await check_database_health(async_session_factory)
    if not health["healthy"]:
        raise StoreUnavailableError(f"Database unreachable: {health.get('error')}")
    logger.debug("store_ready")


async def release_store() -> None:
    await engine.dispose()
