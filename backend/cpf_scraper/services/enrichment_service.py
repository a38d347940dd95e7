"""Detail enrichment worker.

Drains the backlog of trainings flagged needs_detail. Items are taken
oldest-attempt first; a failed item is not retried on the spot but gets
its attempt timestamp bumped, which sends it to the back of the queue.
"""

import asyncio
import enum
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional, Set

import structlog
from playwright.async_api import Error as PlaywrightError, Page
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cpf_scraper.config import Settings, settings
from cpf_scraper.core.exceptions import NavigationError
from cpf_scraper.models import Training, TrainingCenter, utcnow
from cpf_scraper.scrapers.base import ParsedDetail
from cpf_scraper.scrapers.browser_manager import BrowserManager, navigate
from cpf_scraper.scrapers.detail_parser import parse_detail_html
from cpf_scraper.scrapers.queries import DETAIL_BASE_URL
from cpf_scraper.scrapers.utils.humanizer import pacing_delay
from cpf_scraper.scrapers.utils.normalizer import to_price_decimal

logger = structlog.get_logger(__name__)


class EnrichmentOutcome(str, enum.Enum):
    ENRICHED = "enriched"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class EnrichmentStats:
    processed: int = 0
    enriched: int = 0
    skipped: int = 0
    failed: int = 0

    def record(self, outcome: EnrichmentOutcome) -> None:
        self.processed += 1
        if outcome is EnrichmentOutcome.ENRICHED:
            self.enriched += 1
        elif outcome is EnrichmentOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def as_dict(self) -> dict:
        return asdict(self)


def absolute_detail_url(detail_url: str) -> str:
    if detail_url.startswith("http"):
        return detail_url
    return f"{DETAIL_BASE_URL}{detail_url.lstrip('/')}"


class DetailEnrichmentWorker:
    """Visits detail pages of pending trainings and stores what they show.

    Each successful visit updates the training and its center in a single
    transaction. One run attempts each pending training at most once, so
    a broken page cannot monopolize a run.

    Usage:
        async with BrowserManager() as browser:
            worker = DetailEnrichmentWorker(async_session_factory, browser)
            stats = await worker.run(batch_size=25)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        browser: BrowserManager,
        config: Settings = settings,
    ):
        self.session_factory = session_factory
        self.browser = browser
        self.config = config
        self.logger = logger.bind(service="detail_enrichment")

        self._lock = asyncio.Lock()
        self._in_flight: Set[int] = set()
        self._claimed = 0

    # ------------------------------------------------------------------
    # Backlog queue
    # ------------------------------------------------------------------

    async def next_pending(self, started_at: datetime, exclude: Optional[Set[int]] = None) -> Optional[int]:
        """Id of the least recently attempted pending training.

        Trainings attempted since started_at are left for the next run.
        """
        stmt = (
            select(Training.id)
            .where(Training.needs_detail.is_(True))
            .where(or_(
                Training.last_detail_scraped_at.is_(None),
                Training.last_detail_scraped_at < started_at,
            ))
            .order_by(Training.last_detail_scraped_at.asc().nulls_first(), Training.id.asc())
            .limit(1)
        )
        if exclude:
            stmt = stmt.where(Training.id.notin_(exclude))

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def requeue(self, training_id: int) -> None:
        """Push a failed training to the back of the queue, still pending."""
        async with self.session_factory() as session:
            await session.execute(
                update(Training)
                .where(Training.id == training_id)
                .values(last_detail_scraped_at=utcnow())
            )
            await session.commit()

    async def mark_done(self, training_id: int) -> None:
        """Take a training out of the backlog without storing any detail."""
        async with self.session_factory() as session:
            await session.execute(
                update(Training)
                .where(Training.id == training_id)
                .values(needs_detail=False, last_detail_scraped_at=utcnow())
            )
            await session.commit()

    # ------------------------------------------------------------------
    # One item
    # ------------------------------------------------------------------

    async def process(self, page: Page, training_id: int) -> EnrichmentOutcome:
        """Visit and store the detail page of one training."""
        log = self.logger.bind(training_id=training_id)

        async with self.session_factory() as session:
            training = await session.get(Training, training_id)
            detail_url = training.detail_url if training else None
            center_id = training.center_id if training else None

        if center_id is None:
            log.warning("training_not_found")
            return EnrichmentOutcome.SKIPPED

        if not detail_url:
            log.warning("training_without_detail_url")
            await self.mark_done(training_id)
            return EnrichmentOutcome.SKIPPED

        url = absolute_detail_url(detail_url)
        try:
            await navigate(page, url)
            await pacing_delay(self.config.MIN_WAIT_MS, self.config.MAX_WAIT_MS)
            parsed = parse_detail_html(await page.content())
        except (NavigationError, PlaywrightError) as e:
            log.error("detail_page_load_failed", url=url, error=str(e))
            return EnrichmentOutcome.FAILED

        if not parsed.has_data():
            log.warning("detail_page_empty", url=url)
            await self.mark_done(training_id)
            return EnrichmentOutcome.SKIPPED

        try:
            await self.apply_detail(training_id, parsed)
        except Exception as e:
            log.error("detail_apply_failed", error=str(e), error_type=type(e).__name__)
            try:
                await self.mark_done(training_id)
            except Exception as fallback_error:
                log.error("detail_fallback_failed", error=str(fallback_error))
                return EnrichmentOutcome.FAILED
            log.warning("detail_marked_done_without_data")
            return EnrichmentOutcome.SKIPPED

        log.info(
            "training_enriched",
            price=parsed.price_text,
            duration=parsed.duration_text,
            has_contacts=not parsed.contacts.is_empty(),
        )
        return EnrichmentOutcome.ENRICHED

    async def apply_detail(self, training_id: int, parsed: ParsedDetail) -> None:
        """Store a parsed detail page on the training and its center atomically."""
        async with self.session_factory() as session:
            async with session.begin():
                training = await session.get(Training, training_id)
                if training is None:
                    raise LookupError(f"training {training_id} disappeared")
                center = await session.get(TrainingCenter, training.center_id)
                if center is None:
                    raise LookupError(f"center {training.center_id} not found")

                now = utcnow()
                self._apply_training(training, parsed, now)
                self._apply_center(center, parsed, now)

    def _apply_training(self, training: Training, parsed: ParsedDetail, now: datetime) -> None:
        if parsed.price_text:
            training.price_text = parsed.price_text
        if parsed.price_value is not None:
            training.price_value = to_price_decimal(parsed.price_value)
        if parsed.duration_text:
            training.duration_text = parsed.duration_text
        if parsed.duration_hours is not None:
            training.duration_hours = parsed.duration_hours
        if parsed.summary:
            training.summary = parsed.summary
        training.detail_page_data = parsed.raw
        training.needs_detail = False
        training.last_detail_scraped_at = now

    def _apply_center(self, center: TrainingCenter, parsed: ParsedDetail, now: datetime) -> None:
        # registry fields are owned by the open-data sync
        for column, value in (
            ("address", parsed.address),
            ("city", parsed.city),
            ("postal_code", parsed.postal_code),
            ("region", parsed.region),
            ("country", parsed.country),
            ("email", parsed.contacts.email),
            ("phone", parsed.contacts.phone),
            ("website", parsed.contacts.website),
        ):
            if value:
                setattr(center, column, value)
        center.last_detail_scraped_at = now

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, batch_size: Optional[int] = None) -> EnrichmentStats:
        """Process up to batch_size trainings (0 drains the backlog).

        DETAIL_CONCURRENCY worker loops run side by side, each on its own
        page; the default of 1 keeps visits strictly sequential.
        """
        limit = self.config.DETAIL_BATCH_SIZE if batch_size is None else batch_size
        concurrency = max(1, self.config.DETAIL_CONCURRENCY)
        started_at = utcnow()
        stats = EnrichmentStats()
        self._claimed = 0
        self._in_flight.clear()

        self.logger.info("enrichment_started", batch_size=limit or "drain", workers=concurrency)
        await asyncio.gather(*(
            self._worker_loop(index, limit, started_at, stats) for index in range(concurrency)
        ))
        self.logger.info("enrichment_finished", **stats.as_dict())
        return stats

    async def _claim(self, limit: int, started_at: datetime) -> Optional[int]:
        async with self._lock:
            if limit and self._claimed >= limit:
                return None
            training_id = await self.next_pending(started_at, exclude=self._in_flight)
            if training_id is None:
                return None
            self._in_flight.add(training_id)
            self._claimed += 1
            return training_id

    async def _worker_loop(self, index: int, limit: int, started_at: datetime, stats: EnrichmentStats) -> None:
        async with self.browser.session() as browser_session:
            while True:
                training_id = await self._claim(limit, started_at)
                if training_id is None:
                    self.logger.debug("worker_idle", worker=index)
                    return

                try:
                    outcome = await self.process(browser_session.page, training_id)
                except Exception as e:
                    self.logger.error("detail_worker_error", training_id=training_id, error=str(e))
                    outcome = EnrichmentOutcome.FAILED

                if outcome is EnrichmentOutcome.FAILED:
                    try:
                        await self.requeue(training_id)
                    except Exception as e:
                        # still eligible in the database: keep it excluded for this run
                        self.logger.error("detail_requeue_failed", training_id=training_id, error=str(e))
                    else:
                        async with self._lock:
                            self._in_flight.discard(training_id)
                    stats.record(outcome)
                    await pacing_delay(
                        self.config.DETAIL_FAILURE_MIN_WAIT_MS,
                        self.config.DETAIL_FAILURE_MAX_WAIT_MS,
                    )
                    continue

                async with self._lock:
                    self._in_flight.discard(training_id)
                stats.record(outcome)
                await pacing_delay(self.config.MIN_WAIT_MS, self.config.MAX_WAIT_MS)
