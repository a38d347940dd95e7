"""cpf-clear-tables: delete every training and every center."""

import argparse
import asyncio
import sys
from typing import Dict, List, Optional

import structlog

from cpf_scraper.cli.common import prepare_store, release_store
from cpf_scraper.core.logging import configure_logging
from cpf_scraper.db.session import async_session_factory
from cpf_scraper.db.utils import clear_tables

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    return argparse.ArgumentParser(
        prog="cpf-clear-tables",
        description="Delete all trainings, then all centers, in a single transaction.",
    )


async def run() -> Dict[str, int]:
    await prepare_store()
    try:
        return await clear_tables(async_session_factory)
    finally:
        await release_store()


def main(argv: Optional[List[str]] = None) -> int:
    build_parser().parse_args(argv)
    configure_logging()

    try:
        counts = asyncio.run(run())
    except Exception as e:
        logger.exception("clear_tables_failed", error=str(e))
        return 1

    print(f"Trainings deleted: {counts['trainings']}")
    print(f"Centers deleted:   {counts['centers']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
