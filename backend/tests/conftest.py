"""Pytest configuration and shared fixtures."""

from typing import Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cpf_scraper.config import Settings
from cpf_scraper.models import Base, Training, TrainingCenter


@pytest.fixture
def test_settings() -> Settings:
    """Settings with every pacing delay disabled."""
    return Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        MIN_WAIT_MS=0,
        MAX_WAIT_MS=0,
        QUERY_MIN_WAIT_MS=0,
        QUERY_MAX_WAIT_MS=0,
        DETAIL_FAILURE_MIN_WAIT_MS=0,
        DETAIL_FAILURE_MAX_WAIT_MS=0,
        NAVIGATION_TIMEOUT_MS=1000,
        MAX_PAGES_PER_QUERY=10,
        ITEMS_PER_PAGE=2,
        DETAIL_BATCH_SIZE=10,
        DETAIL_CONCURRENCY=1,
        OPENDATA_RETRIES=2,
        EXPORT_PAGE_SIZE=2,
    )


@pytest_asyncio.fixture
async def test_engine():
    """In-memory SQLite engine shared by every session of a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def make_training(session_factory) -> Callable:
    """Factory inserting a center (by name) and one training."""

    async def _make(
        detail_url: str,
        center_name: str = "Acme Langues",
        title: str = "Anglais professionnel",
        **training_fields,
    ) -> Training:
        async with session_factory() as session:
            center = TrainingCenter(name=center_name, normalized_name=center_name.lower())
            session.add(center)
            await session.flush()
            training = Training(
                center_id=center.id,
                detail_url=detail_url,
                title=title,
                **training_fields,
            )
            session.add(training)
            await session.commit()
            return training

    return _make
