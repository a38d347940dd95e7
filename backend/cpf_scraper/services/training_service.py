"""Training service: persist list items as Training rows.

Handles the create-or-refresh upsert keyed on detail_url, together with
the center resolution it depends on.
"""

import enum
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cpf_scraper.config import Settings, settings
from cpf_scraper.models import Training, utcnow
from cpf_scraper.scrapers.base import NormalizedListItem
from cpf_scraper.scrapers.utils.normalizer import to_price_decimal
from cpf_scraper.services.center_service import CenterService

logger = structlog.get_logger(__name__)


class PersistOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


class TrainingService:
    """Idempotent upsert of one normalized list item.

    Usage:
        async with session_factory() as session:
            outcome = await TrainingService(session).upsert_list_item(item, "anglais-distance")
    """

    def __init__(self, db: AsyncSession, config: Settings = settings):
        """Initialize training service.

        Args:
            db: Async database session
            config: Settings (ONE_TRAINING_PER_CENTER is read from here)
        """
        self.db = db
        self.config = config
        self.centers = CenterService(db)
        self.logger = logger.bind(service="training_service")

    async def get_by_detail_url(self, detail_url: str) -> Optional[Training]:
        result = await self.db.execute(select(Training).where(Training.detail_url == detail_url))
        return result.scalar_one_or_none()

    async def center_has_training(self, center_id: int) -> bool:
        result = await self.db.execute(
            select(Training.id).where(Training.center_id == center_id).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def upsert_list_item(self, item: NormalizedListItem, query_name: str) -> PersistOutcome:
        """Create or refresh the Training for a list item, then commit.

        An existing row (same detail_url) has every list field overwritten,
        is queued again for detail enrichment and gets a fresh
        list-scrape timestamp.

        Args:
            item: Normalized list item
            query_name: Name of the search query that produced the item

        Returns:
            PersistOutcome (SKIPPED when the item cannot be keyed or has no center)
        """
        if not item.title or not item.detail_url:
            self.logger.warning(
                "list_item_incomplete",
                has_title=bool(item.title),
                has_detail_url=bool(item.detail_url),
                query=query_name,
            )
            return PersistOutcome.SKIPPED

        center = await self.centers.ensure_center(item)
        if center is None:
            self.logger.warning("center_unresolved", title=item.title[:80], query=query_name)
            await self.db.rollback()
            return PersistOutcome.SKIPPED

        fields = dict(
            center_id=center.id,
            external_id=item.training_external_id,
            title=item.title,
            summary=item.summary,
            modality=item.modality,
            certification=item.certification,
            location_text=item.location_text,
            region=item.region,
            price_text=item.price_text,
            price_value=to_price_decimal(item.price_value),
            duration_text=item.duration_text,
            duration_hours=item.duration_hours,
            search_query=query_name,
            list_page_data=item.list_page_data,
            needs_detail=True,
            last_list_scraped_at=utcnow(),
        )

        training = await self.get_by_detail_url(item.detail_url)
        if training is not None:
            for column, value in fields.items():
                setattr(training, column, value)
            await self.db.commit()
            self.logger.debug("training_updated", training_id=training.id)
            return PersistOutcome.UPDATED

        if self.config.ONE_TRAINING_PER_CENTER and await self.center_has_training(center.id):
            # the center row itself was refreshed above and is kept
            await self.db.commit()
            self.logger.debug("training_skipped_center_populated", center_id=center.id)
            return PersistOutcome.SKIPPED

        training = Training(detail_url=item.detail_url, **fields)
        self.db.add(training)
        await self.db.commit()
        self.logger.info(
            "training_created",
            training_id=training.id,
            center_id=center.id,
            title=item.title[:50],
        )
        return PersistOutcome.CREATED
