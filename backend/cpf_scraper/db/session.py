"""Async database session and engine configuration."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from cpf_scraper.config import Settings, settings


def build_engine(config: Settings) -> AsyncEngine:
    """Create an async engine for the configured DATABASE_URL."""
    engine_kwargs: dict = {"echo": config.DEBUG}
    # SQLite doesn't support pool_size / max_overflow / pool_pre_ping
    if not config.is_sqlite:
        engine_kwargs.update(pool_size=5, max_overflow=5, pool_pre_ping=True)
    return create_async_engine(config.DATABASE_URL, **engine_kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings)

async_session_factory = build_session_factory(engine)
