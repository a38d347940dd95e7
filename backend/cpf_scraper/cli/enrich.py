"""cpf-enrich: visit detail pages of trainings waiting for enrichment.

Usage:
    cpf-enrich                  # DETAIL_BATCH_SIZE trainings
    cpf-enrich --batch-size 50
    cpf-enrich --drain          # until the backlog is empty
"""

import argparse
import asyncio
import sys
from typing import List, Optional

import structlog

from cpf_scraper.cli.common import prepare_store, release_store
from cpf_scraper.config import settings
from cpf_scraper.core.exceptions import BrowserLaunchError
from cpf_scraper.core.logging import configure_logging
from cpf_scraper.db.session import async_session_factory
from cpf_scraper.scrapers.browser_manager import BrowserManager
from cpf_scraper.services.enrichment_service import DetailEnrichmentWorker, EnrichmentStats

logger = structlog.get_logger(__name__)


def non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cpf-enrich",
        description="Enrich pending trainings from their detail pages.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Trainings are taken least recently attempted first. A failed page stays
pending and is retried on a later run.

Examples:
  cpf-enrich                    # {settings.DETAIL_BATCH_SIZE or 'all'} trainings (DETAIL_BATCH_SIZE)
  cpf-enrich --batch-size 50
  cpf-enrich --drain
        """,
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--batch-size",
        type=non_negative_int,
        default=None,
        metavar="N",
        help="Number of trainings to attempt (0 drains the backlog).",
    )
    group.add_argument(
        "--drain",
        action="store_true",
        help="Process every pending training.",
    )
    return parser


async def run(batch_size: Optional[int]) -> EnrichmentStats:
    await prepare_store()
    try:
        async with BrowserManager(settings) as browser:
            worker = DetailEnrichmentWorker(async_session_factory, browser, settings)
            return await worker.run(batch_size=batch_size)
    finally:
        await release_store()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    batch_size = 0 if args.drain else args.batch_size
    try:
        stats = asyncio.run(run(batch_size))
    except KeyboardInterrupt:
        logger.warning("enrichment_interrupted")
        return 130
    except BrowserLaunchError as e:
        logger.error("enrichment_failed", error=e.message)
        return 1
    except Exception as e:
        logger.exception("enrichment_failed", error=str(e))
        return 1

    logger.info("enrichment_summary", **stats.as_dict())
    return 0


if __name__ == "__main__":
    sys.exit(main())
