"""cpf-sync-opendata: fill registry identifiers of centers from open data."""

import argparse
import asyncio
import sys
from typing import List, Optional

import structlog

from cpf_scraper.cli.common import prepare_store, release_store
from cpf_scraper.config import settings
from cpf_scraper.core.logging import configure_logging
from cpf_scraper.db.session import async_session_factory
from cpf_scraper.services.opendata_service import OpenDataCrossReferencer, SyncStats

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    return argparse.ArgumentParser(
        prog="cpf-sync-opendata",
        description=(
            "Look up centers missing SIREN, SIRET or declared figures in the "
            "public list of training organizations and fill them in."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Registry: {settings.OPENDATA_API_URL} (dataset {settings.OPENDATA_DATASET})
Only exact name matches are accepted (plus personal registrations when
OPENDATA_ALLOW_PERSON_MATCH is true).
        """,
    )


async def run() -> SyncStats:
    await prepare_store()
    try:
        return await OpenDataCrossReferencer(async_session_factory, settings).sync()
    finally:
        await release_store()


def main(argv: Optional[List[str]] = None) -> int:
    build_parser().parse_args(argv)
    configure_logging()

    try:
        stats = asyncio.run(run())
    except KeyboardInterrupt:
        logger.warning("opendata_sync_interrupted")
        return 130
    except Exception as e:
        logger.exception("opendata_sync_failed", error=str(e))
        return 1

    logger.info("opendata_sync_summary", **stats.as_dict())
    return 0


if __name__ == "__main__":
    sys.exit(main())
