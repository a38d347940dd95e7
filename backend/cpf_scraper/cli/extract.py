"""cpf-extract: run list extraction for the configured search queries.

Usage:
    cpf-extract
    cpf-extract --query anglais --query vae
    cpf-extract --query=bilan-competences-distance,allemand
"""

import argparse
import asyncio
import sys
from typing import List, Optional, Sequence

import structlog

from cpf_scraper.cli.common import prepare_store, release_store
from cpf_scraper.config import settings
from cpf_scraper.core.exceptions import BrowserLaunchError, QueryResolutionError
from cpf_scraper.core.logging import configure_logging
from cpf_scraper.db.session import async_session_factory
from cpf_scraper.scrapers.base import SearchQuery
from cpf_scraper.scrapers.browser_manager import BrowserManager
from cpf_scraper.scrapers.list_extractor import ListPageExtractor
from cpf_scraper.scrapers.queries import DEFAULT_QUERIES, resolve_queries, split_query_names

logger = structlog.get_logger(__name__)


def build_parser(available: Sequence[SearchQuery] = DEFAULT_QUERIES) -> argparse.ArgumentParser:
    names = "\n".join(f"  {query.name}" for query in available)
    parser = argparse.ArgumentParser(
        prog="cpf-extract",
        description="Scrape the training marketplace search results into the database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available queries:
{names}

Examples:
  # all queries
  cpf-extract

  # by prefix (matches "anglais-distance")
  cpf-extract --query anglais

  # several queries
  cpf-extract -q vae allemand
  cpf-extract --query=vae,comptable
        """,
    )
    parser.add_argument(
        "-q",
        "--query",
        dest="queries",
        action="extend",
        nargs="+",
        default=[],
        metavar="NAME",
        help=(
            "Query to run, by exact name or by the prefix before a hyphen. "
            "Repeatable and comma-separated. Default: every query."
        ),
    )
    return parser


def select_queries(requested: List[str], available: Sequence[SearchQuery] = DEFAULT_QUERIES) -> List[SearchQuery]:
    """Resolve CLI names, warning about the unknown ones.

    Raises:
        QueryResolutionError: names were given but none matched
    """
    names = split_query_names(requested)
    selected, unknown = resolve_queries(names, available)
    for name in unknown:
        logger.warning("unknown_query_ignored", query=name, available=[q.name for q in available])
    if not selected:
        raise QueryResolutionError(f"No query matches: {', '.join(names)}")
    return selected


async def run(queries: List[SearchQuery]) -> dict:
    await prepare_store()
    try:
        async with BrowserManager(settings) as browser:
            extractor = ListPageExtractor(async_session_factory, browser, queries, settings)
            results = await extractor.run()
    finally:
        await release_store()
    return {name: stats.as_dict() for name, stats in results.items()}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    try:
        queries = select_queries(args.queries)
    except QueryResolutionError as e:
        logger.error("no_query_resolved", error=e.message)
        return 1

    logger.info("extraction_requested", queries=[q.name for q in queries])
    try:
        results = asyncio.run(run(queries))
    except KeyboardInterrupt:
        logger.warning("extraction_interrupted")
        return 130
    except BrowserLaunchError as e:
        logger.error("extraction_failed", error=e.message)
        return 1
    except Exception as e:
        logger.exception("extraction_failed", error=str(e))
        return 1

    for name, stats in results.items():
        logger.info("query_summary", query=name, **stats)
    return 0


if __name__ == "__main__":
    sys.exit(main())
