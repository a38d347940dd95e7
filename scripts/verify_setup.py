"""Verify CPF scraper setup and configuration.

This script checks that all components are properly configured:
- Database connection
- Required tables
- Stored rows and detail backlog
- Browser binaries

Usage:
    python scripts/verify_setup.py
"""

import asyncio
import sys
import os

# Add backend to path so we can import cpf_scraper modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from playwright.async_api import async_playwright
from sqlalchemy import func, inspect, select

from cpf_scraper.config import settings
from cpf_scraper.db.session import async_session_factory, engine
from cpf_scraper.db.utils import check_database_health, create_tables
from cpf_scraper.models import Training, TrainingCenter


async def verify_database_connection():
    """Verify database connection is working."""
    health = await check_database_health(async_session_factory)
    if health["healthy"]:
        print(f"    ✅ Connected ({settings.DATABASE_URL.split('://')[0]})")
        return True
    print(f"    ❌ Error: {health.get('error')}")
    return False


async def verify_tables():
    """Create missing tables, then verify they all exist."""
    required_tables = ["training_centers", "trainings"]

    await create_tables(engine)
    async with engine.connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    all_ok = True
    for table in required_tables:
        if table in existing:
            print(f"    ✅ {table} table exists")
        else:
            print(f"    ❌ {table} table NOT found")
            all_ok = False
    return all_ok


async def show_row_counts():
    """Print stored rows and the pending detail backlog."""
    async with async_session_factory() as session:
        centers = await session.scalar(select(func.count()).select_from(TrainingCenter))
        trainings = await session.scalar(select(func.count()).select_from(Training))
        pending = await session.scalar(
            select(func.count()).select_from(Training).where(Training.needs_detail.is_(True))
        )

    print(f"    Centers:          {centers}")
    print(f"    Trainings:        {trainings}")
    print(f"    Detail backlog:   {pending}")
    if trainings == 0:
        print("    ⚠️  No trainings yet (run: cpf-extract)")


async def verify_browser():
    """Verify the Chromium build used by Playwright can start."""
    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=True)
            print(f"    ✅ Chromium {browser.version}")
            await browser.close()
            return True
    except Exception as e:
        print(f"    ❌ Error: {e}")
        print("    Install it with: playwright install chromium")
        return False


async def main():
    print("=" * 60)
    print("CPF Scraper Setup Verification")
    print("=" * 60)

    results = {}

    print("\n[1/4] Database connection...")
    results["database"] = await verify_database_connection()

    if results["database"]:
        print("\n[2/4] Tables...")
        results["tables"] = await verify_tables()

        print("\n[3/4] Stored data...")
        await show_row_counts()
    else:
        print("\n[2/4] Tables... skipped")
        print("\n[3/4] Stored data... skipped")

    print("\n[4/4] Browser...")
    results["browser"] = await verify_browser()

    await engine.dispose()

    print("\n" + "=" * 60)
    if all(results.values()):
        print("✅ Setup looks good")
        return 0
    failed = ", ".join(name for name, ok in results.items() if not ok)
    print(f"❌ Setup incomplete: {failed}")
    return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
