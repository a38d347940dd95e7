"""Application configuration via Pydantic Settings."""

from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global scraper settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./cpf_scraper.db"
    DEBUG: bool = False

    @model_validator(mode="after")
    def fix_database_url(self) -> "Settings":
        """Hosting providers hand out postgresql:// but asyncpg needs postgresql+asyncpg://"""
        url = self.DATABASE_URL
        if url.startswith("postgresql://"):
            self.DATABASE_URL = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgres://"):
            self.DATABASE_URL = url.replace("postgres://", "postgresql+asyncpg://", 1)
        return self

    @model_validator(mode="after")
    def check_wait_bounds(self) -> "Settings":
        if self.MAX_WAIT_MS < self.MIN_WAIT_MS:
            raise ValueError("MAX_WAIT_MS must be >= MIN_WAIT_MS")
        if self.QUERY_MAX_WAIT_MS < self.QUERY_MIN_WAIT_MS:
            raise ValueError("QUERY_MAX_WAIT_MS must be >= QUERY_MIN_WAIT_MS")
        if self.DETAIL_FAILURE_MAX_WAIT_MS < self.DETAIL_FAILURE_MIN_WAIT_MS:
            raise ValueError("DETAIL_FAILURE_MAX_WAIT_MS must be >= DETAIL_FAILURE_MIN_WAIT_MS")
        return self

    # Browser
    HEADLESS: bool = True
    SLOW_MO_MS: int = 0
    NAVIGATION_TIMEOUT_MS: int = 45000

    # List extraction
    MAX_PAGES_PER_QUERY: int = 50
    ITEMS_PER_PAGE: int = 10
    LIST_STRATEGY: Literal["incremental", "offset"] = "incremental"
    ONE_TRAINING_PER_CENTER: bool = False

    # Pacing (milliseconds)
    MIN_WAIT_MS: int = 750
    MAX_WAIT_MS: int = 2000
    QUERY_MIN_WAIT_MS: int = 1500
    QUERY_MAX_WAIT_MS: int = 4000

    # Detail enrichment
    DETAIL_BATCH_SIZE: int = 10  # 0 drains the whole backlog
    DETAIL_CONCURRENCY: int = 1
    DETAIL_FAILURE_MIN_WAIT_MS: int = 2000
    DETAIL_FAILURE_MAX_WAIT_MS: int = 5000

    # Open-data registry
    OPENDATA_API_URL: str = "https://dgefp.opendatasoft.com/api/records/1.0/search/"
    OPENDATA_DATASET: str = "liste-publique-des-of-v2"
    OPENDATA_ROWS: int = 10
    OPENDATA_RETRIES: int = 2
    OPENDATA_TIMEOUT_SECONDS: float = 20.0
    OPENDATA_ALLOW_PERSON_MATCH: bool = True

    # Export
    EXPORT_DIR: str = "exports"
    EXPORT_PAGE_SIZE: int = 1000
    EXPORT_MAX_BYTES: int = 20_000_000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    @property
    def navigation_timeout_seconds(self) -> float:
        return self.NAVIGATION_TIMEOUT_MS / 1000.0


settings = Settings()
