"""Tests for the detail enrichment worker."""

from datetime import timedelta
from typing import Dict, Optional, Set
from unittest.mock import AsyncMock

import pytest
from playwright.async_api import Error as PlaywrightError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from cpf_scraper.models import Base, Training, TrainingCenter, utcnow
from cpf_scraper.scrapers.detail_parser import parse_detail_html
from cpf_scraper.scrapers.queries import DETAIL_BASE_URL
from cpf_scraper.services.enrichment_service import (
    DetailEnrichmentWorker,
    EnrichmentOutcome,
    absolute_detail_url,
)
from fakes import FakeBrowser

DETAIL_HTML = """
<html><body>
  <p data-test="price">850 €</p>
  <p data-test="duration">24 h</p>
  <div class="organisme__address">3 place Bellecour<br/>69002 Lyon</div>
  <ul><li><span class="fr-icon-mail-line"></span>contact@acme-langues.fr</li></ul>
</body></html>
"""

EMPTY_HTML = "<html><body><h1>Erreur</h1></body></html>"


class DetailPage:
    """Page double serving one HTML body per URL."""

    def __init__(self, bodies: Dict[str, str], failing: Optional[Set[str]] = None):
        self.bodies = bodies
        self.failing = failing or set()
        self.visited = []
        self.current: Optional[str] = None

    async def goto(self, url, wait_until=None, **kwargs):
        self.visited.append(url)
        if url in self.failing:
            raise PlaywrightError("net::ERR_TIMED_OUT")
        self.current = url

    async def content(self) -> str:
        return self.bodies.get(self.current, EMPTY_HTML)


@pytest.fixture
def pacing(monkeypatch):
    mock = AsyncMock()
    monkeypatch.setattr("cpf_scraper.services.enrichment_service.pacing_delay", mock)
    return mock


def url(path: str) -> str:
    return DETAIL_BASE_URL + path


async def reload(session_factory, model, pk):
    async with session_factory() as session:
        return await session.get(model, pk)


def row_values(row) -> dict:
    """Column values of a row, timestamps left out."""
    return {c.key: getattr(row, c.key) for c in row.__table__.columns if not c.key.endswith("_at")}


# ============================================================================
# Backlog queue
# ============================================================================


class TestBacklogQueue:
    """Test pending-item selection."""

    async def test_never_attempted_first_then_oldest(self, session_factory, test_settings, make_training):
        """Test ordering by last attempt, never-attempted items first."""
        now = utcnow()
        recent = await make_training(url("recent"), center_name="A", last_detail_scraped_at=now - timedelta(minutes=1))
        old = await make_training(url("old"), center_name="B", last_detail_scraped_at=now - timedelta(days=1))
        fresh = await make_training(url("fresh"), center_name="C")
        await make_training(url("done"), center_name="D", needs_detail=False)

        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: DetailPage({})), test_settings)
        started_at = utcnow()

        assert await worker.next_pending(started_at) == fresh.id
        assert await worker.next_pending(started_at, exclude={fresh.id}) == old.id
        assert await worker.next_pending(started_at, exclude={fresh.id, old.id}) == recent.id
        assert await worker.next_pending(started_at, exclude={fresh.id, old.id, recent.id}) is None

    async def test_requeue_moves_to_back(self, session_factory, test_settings, make_training):
        """Test that a requeued item stays pending but is no longer first."""
        first = await make_training(url("first"), center_name="A")
        second = await make_training(url("second"), center_name="B")
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: DetailPage({})), test_settings)

        await worker.requeue(first.id)

        assert await worker.next_pending(utcnow() + timedelta(seconds=1)) == second.id
        training = await reload(session_factory, Training, first.id)
        assert training.needs_detail is True
        assert training.last_detail_scraped_at is not None

    def test_absolute_detail_url(self):
        """Test that relative detail paths are resolved on the detail base."""
        assert absolute_detail_url("/abc/def") == DETAIL_BASE_URL + "abc/def"
        assert absolute_detail_url("https://x.example/abc") == "https://x.example/abc"


# ============================================================================
# Processing one item
# ============================================================================


class TestProcess:
    """Test the outcome of a single detail visit."""

    async def test_enriches_training_and_center(self, session_factory, test_settings, make_training, pacing):
        """Test that a detail page updates both rows."""
        training = await make_training(url("t1"), price_text="Nous consulter")
        page = DetailPage({url("t1"): DETAIL_HTML})
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: page), test_settings)

        outcome = await worker.process(page, training.id)

        assert outcome is EnrichmentOutcome.ENRICHED
        stored = await reload(session_factory, Training, training.id)
        assert stored.needs_detail is False
        assert stored.price_text == "850 €"
        assert float(stored.price_value) == 850.0
        assert stored.duration_hours == 24
        assert stored.detail_page_data == {"scripts": []}
        center = await reload(session_factory, TrainingCenter, training.center_id)
        assert center.city == "Lyon"
        assert center.postal_code == "69002"
        assert center.email == "contact@acme-langues.fr"
        assert center.last_detail_scraped_at is not None

    async def test_center_fields_not_blanked(self, session_factory, test_settings, make_training, pacing):
        """Test that values missing from the page keep the stored ones."""
        training = await make_training(url("t1"))
        async with session_factory() as session:
            center = await session.get(TrainingCenter, training.center_id)
            center.phone = "0400000000"
            center.siren = "123456789"
            await session.commit()
        page = DetailPage({url("t1"): DETAIL_HTML})
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: page), test_settings)

        await worker.process(page, training.id)

        center = await reload(session_factory, TrainingCenter, training.center_id)
        assert center.phone == "0400000000"
        assert center.siren == "123456789"

    async def test_same_detail_twice_is_idempotent(self, session_factory, test_settings, make_training):
        """Test that storing the same detail page again changes nothing but timestamps."""
        training = await make_training(url("t1"))
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: DetailPage({})), test_settings)
        parsed = parse_detail_html(DETAIL_HTML)

        await worker.apply_detail(training.id, parsed)
        first_training = row_values(await reload(session_factory, Training, training.id))
        first_center = row_values(await reload(session_factory, TrainingCenter, training.center_id))

        await worker.apply_detail(training.id, parsed)

        assert row_values(await reload(session_factory, Training, training.id)) == first_training
        assert row_values(await reload(session_factory, TrainingCenter, training.center_id)) == first_center
        async with session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(Training)) == 1
            assert await session.scalar(select(func.count()).select_from(TrainingCenter)) == 1


    async def test_missing_detail_url_is_marked_done(self, session_factory, test_settings, make_training, pacing):
        """Test that an item without a link leaves the backlog without a visit."""
        training = await make_training("")
        page = DetailPage({})
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: page), test_settings)

        outcome = await worker.process(page, training.id)

        assert outcome is EnrichmentOutcome.SKIPPED
        assert page.visited == []
        assert (await reload(session_factory, Training, training.id)).needs_detail is False

    async def test_load_failure(self, session_factory, test_settings, make_training, pacing):
        """Test that a navigation error is a failure and stores nothing."""
        training = await make_training(url("t1"))
        page = DetailPage({}, failing={url("t1")})
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: page), test_settings)

        outcome = await worker.process(page, training.id)

        assert outcome is EnrichmentOutcome.FAILED
        assert (await reload(session_factory, Training, training.id)).needs_detail is True

    async def test_empty_page_leaves_backlog(self, session_factory, test_settings, make_training, pacing):
        """Test that a page with no recognizable field is skipped for good."""
        training = await make_training(url("t1"))
        page = DetailPage({url("t1"): EMPTY_HTML})
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: page), test_settings)

        assert await worker.process(page, training.id) is EnrichmentOutcome.SKIPPED
        stored = await reload(session_factory, Training, training.id)
        assert stored.needs_detail is False
        assert stored.detail_page_data is None

    async def test_partial_write_rolled_back(self, session_factory, test_settings, make_training, pacing, monkeypatch):
        """Test that a failing center update leaves the training untouched and out of the backlog."""
        training = await make_training(url("t1"))
        page = DetailPage({url("t1"): DETAIL_HTML})
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: page), test_settings)

        def broken_center_update(center, parsed, now):
            raise RuntimeError("value too long for type character varying(50)")

        monkeypatch.setattr(worker, "_apply_center", broken_center_update)

        outcome = await worker.process(page, training.id)

        assert outcome is EnrichmentOutcome.SKIPPED
        stored = await reload(session_factory, Training, training.id)
        assert stored.price_text is None
        assert stored.detail_page_data is None
        assert stored.needs_detail is False
        center = await reload(session_factory, TrainingCenter, training.center_id)
        assert center.email is None


# ============================================================================
# Runs
# ============================================================================


class TestRun:
    """Test batch and drain runs."""

    async def test_batch_size_bounds_run(self, session_factory, test_settings, make_training, pacing):
        """Test that at most batch_size items are processed."""
        for name in ("a", "b", "c"):
            await make_training(url(name), center_name=name)
        page = DetailPage({url(name): DETAIL_HTML for name in ("a", "b", "c")})
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: page), test_settings)

        stats = await worker.run(batch_size=2)

        assert stats.processed == 2
        assert stats.enriched == 2
        assert page.visited == [url("a"), url("b")]

    async def test_drain_attempts_failing_item_once(self, session_factory, test_settings, make_training, pacing):
        """Test that a drain run terminates with a permanently failing page."""
        broken = await make_training(url("broken"), center_name="a")
        await make_training(url("ok"), center_name="b")
        page = DetailPage({url("ok"): DETAIL_HTML}, failing={url("broken")})
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: page), test_settings)

        stats = await worker.run(batch_size=0)

        assert stats.as_dict() == {"processed": 2, "enriched": 1, "skipped": 0, "failed": 1}
        assert page.visited.count(url("broken")) == 1
        assert (await reload(session_factory, Training, broken.id)).needs_detail is True

    async def test_failure_penalty_delay(self, session_factory, test_settings, make_training, pacing):
        """Test the longer pause after a failed visit."""
        test_settings.DETAIL_FAILURE_MIN_WAIT_MS = 7
        test_settings.DETAIL_FAILURE_MAX_WAIT_MS = 9
        await make_training(url("broken"))
        page = DetailPage({}, failing={url("broken")})
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: page), test_settings)

        await worker.run(batch_size=0)

        assert [c.args for c in pacing.await_args_list] == [(7, 9)]

    async def test_empty_page_not_revisited(self, session_factory, test_settings, make_training, pacing):
        """Test that a second run does not visit a page that showed nothing."""
        training = await make_training(url("empty"))
        page = DetailPage({url("empty"): EMPTY_HTML})
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: page), test_settings)

        first = await worker.run(batch_size=0)
        second = await worker.run(batch_size=0)

        assert first.as_dict() == {"processed": 1, "enriched": 0, "skipped": 1, "failed": 0}
        assert second.processed == 0
        assert page.visited == [url("empty")]
        assert (await reload(session_factory, Training, training.id)).needs_detail is False

    async def test_skipped_items_are_paced(self, session_factory, test_settings, make_training, pacing):
        """Test the regular pause after a skipped item."""
        test_settings.MIN_WAIT_MS = 3
        test_settings.MAX_WAIT_MS = 4
        await make_training("")
        worker = DetailEnrichmentWorker(session_factory, FakeBrowser(lambda: DetailPage({})), test_settings)

        stats = await worker.run(batch_size=0)

        assert stats.skipped == 1
        assert [c.args for c in pacing.await_args_list] == [(3, 4)]


    async def test_concurrent_workers_share_backlog(self, tmp_path, test_settings, pacing):
        """Test that parallel workers never visit the same item twice."""
        # one connection per session: workers must not share a transaction
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'backlog.db'}", poolclass=NullPool)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        test_settings.DETAIL_CONCURRENCY = 2
        names = ["a", "b", "c", "d"]
        async with session_factory() as session:
            for name in names:
                center = TrainingCenter(name=name, normalized_name=name)
                session.add(center)
                await session.flush()
                session.add(Training(center_id=center.id, detail_url=url(name), title=f"Formation {name}"))
            await session.commit()
        pages = []

        def page_factory():
            page = DetailPage({url(name): DETAIL_HTML for name in names})
            pages.append(page)
            return page

        browser = FakeBrowser(page_factory)
        worker = DetailEnrichmentWorker(session_factory, browser, test_settings)

        stats = await worker.run(batch_size=0)

        await engine.dispose()

        visited = [visit for page in pages for visit in page.visited]
        assert stats.enriched == 4
        assert sorted(visited) == sorted(url(name) for name in names)
        assert browser.sessions_opened == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v", "-s"])
