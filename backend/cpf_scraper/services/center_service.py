"""Center service: resolve and upsert training centers.

A center is keyed by its marketplace id when the listing exposes one,
otherwise by its normalized name.
"""

from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cpf_scraper.models import TrainingCenter, utcnow
from cpf_scraper.scrapers.base import NormalizedListItem
from cpf_scraper.scrapers.utils.normalizer import (
    normalize_center_name,
    sanitize_city,
    sanitize_country,
    sanitize_postal_code,
    sanitize_region,
)

logger = structlog.get_logger(__name__)

DEFAULT_COUNTRY = "FR"


class CenterService:
    """Upserts TrainingCenter rows from normalized list items.

    Updates are non-destructive: a column is only written when the new
    value is non-empty. The caller owns the transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.logger = logger.bind(service="center_service")

    async def get_by_external_id(self, external_id: str) -> Optional[TrainingCenter]:
        result = await self.db.execute(
            select(TrainingCenter).where(TrainingCenter.external_id == external_id)
        )
        return result.scalar_one_or_none()

    async def get_by_normalized_name(self, normalized_name: str) -> Optional[TrainingCenter]:
        """Oldest center carrying this normalized name."""
        result = await self.db.execute(
            select(TrainingCenter)
            .where(TrainingCenter.normalized_name == normalized_name)
            .order_by(TrainingCenter.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def ensure_center(self, item: NormalizedListItem) -> Optional[TrainingCenter]:
        """Find or create the center owning a list item.

        Args:
            item: Normalized list item

        Returns:
            The flushed TrainingCenter, or None when the item carries no
            usable center name
        """
        name = (item.center_name or "").strip()
        if not name:
            self.logger.warning("center_name_missing", detail_url=item.detail_url)
            return None

        normalized_name = normalize_center_name(name)
        if not normalized_name:
            self.logger.warning("center_name_not_normalizable", name=name)
            return None

        city = sanitize_city(item.center_city)
        postal_code = sanitize_postal_code(item.center_postal_code)
        region = sanitize_region(item.center_region)
        country = sanitize_country(item.center_country) or DEFAULT_COUNTRY

        center = None
        if item.center_external_id:
            center = await self.get_by_external_id(item.center_external_id)
        if center is None and not item.center_external_id:
            center = await self.get_by_normalized_name(normalized_name)

        now = utcnow()
        if center is None:
            center = TrainingCenter(
                external_id=item.center_external_id,
                name=name,
                normalized_name=normalized_name,
                city=city,
                postal_code=postal_code,
                region=region,
                country=country,
                last_list_scraped_at=now,
            )
            self.db.add(center)
            await self.db.flush()
            self.logger.info("center_created", center_id=center.id, normalized_name=normalized_name)
            return center

        center.name = name
        center.normalized_name = normalized_name
        center.last_list_scraped_at = now
        for column, value in (
            ("city", city),
            ("postal_code", postal_code),
            ("region", region),
            ("country", country),
        ):
            if value:
                setattr(center, column, value)

        await self.db.flush()
        self.logger.debug("center_updated", center_id=center.id)
        return center
