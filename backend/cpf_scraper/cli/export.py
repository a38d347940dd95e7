"""cpf-export: write centers and trainings to Excel.

Usage:
    cpf-export
    cpf-export --centers-only
    cpf-export --created-after=2024-01-01T00:00:00Z --clean
    cpf-export --title "anglais"
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import structlog

from cpf_scraper.cli.common import prepare_store, release_store
from cpf_scraper.config import settings
from cpf_scraper.core.exceptions import ExportError
from cpf_scraper.core.logging import configure_logging
from cpf_scraper.db.session import async_session_factory
from cpf_scraper.services.export_service import ExcelExporter, ExportFilters

logger = structlog.get_logger(__name__)


def parse_created_after(value: str) -> datetime:
    """ISO 8601 date or datetime; values without offset are read as UTC.

    Raises:
        ValueError: value is not an ISO date
    """
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cpf-export",
        description="Export centers and trainings to an .xlsx file.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Files are written to {settings.EXPORT_DIR}/ and split into several parts
when one would exceed EXPORT_MAX_BYTES ({settings.EXPORT_MAX_BYTES} bytes).

Examples:
  cpf-export --centres-only
  cpf-export --created-after 2024-01-01
  cpf-export --clean-list --title="comptab"
        """,
    )
    parser.add_argument(
        "--centers-only",
        "--centres-only",
        dest="centers_only",
        action="store_true",
        help="Skip the trainings sheet.",
    )
    parser.add_argument(
        "--created-after",
        dest="created_after",
        nargs="?",
        const="",
        metavar="ISO_DATE",
        help="Only rows created at or after this instant (UTC when no offset is given).",
    )
    parser.add_argument(
        "--clean",
        "--clean-list",
        dest="clean",
        action="store_true",
        help="Only centers with SIREN, SIRET, city, email and a phone or website.",
    )
    parser.add_argument(
        "--title",
        dest="title",
        nargs="?",
        const="",
        metavar="TEXT",
        help="Only trainings whose title contains TEXT (case and accent insensitive), and their centers.",
    )
    return parser


def filters_from_args(args: argparse.Namespace) -> ExportFilters:
    """Validate CLI values.

    Raises:
        ValueError: invalid date or empty title
    """
    created_after = None
    if args.created_after is not None:
        try:
            created_after = parse_created_after(args.created_after)
        except ValueError:
            raise ValueError(f"Invalid --created-after date: {args.created_after!r}") from None

    title = None
    if args.title is not None:
        title = args.title.strip()
        if not title:
            raise ValueError("--title requires a non-empty value")

    return ExportFilters(
        centers_only=args.centers_only,
        created_after=created_after,
        clean=args.clean,
        title=title,
    )


async def run(filters: ExportFilters) -> List[Path]:
    await prepare_store()
    try:
        return await ExcelExporter(async_session_factory, settings).export(filters)
    finally:
        await release_store()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    try:
        filters = filters_from_args(args)
    except ValueError as e:
        logger.error("invalid_export_arguments", error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        paths = asyncio.run(run(filters))
    except ExportError as e:
        logger.error("export_failed", error=e.message)
        return 1
    except Exception as e:
        logger.exception("export_failed", error=str(e))
        return 1

    for path in paths:
        print(path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
