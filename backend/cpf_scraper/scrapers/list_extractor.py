"""List page extractor: walks every configured query and persists its items.

For each query a browser session is opened and the query's listing
strategy is driven round by round. Raw items are deduplicated by item key
within the query run, normalized and upserted one at a time; a round is
fully persisted before the next one is fetched.
"""

from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cpf_scraper.config import Settings, settings
from cpf_scraper.core.exceptions import BrowserLaunchError
from cpf_scraper.scrapers.base import ListingStrategy, RoundResult, SearchQuery
from cpf_scraper.scrapers.browser_manager import BrowserManager
from cpf_scraper.scrapers.list_items import identify_item_key, normalize_list_item
from cpf_scraper.scrapers.list_strategies import make_strategy
from cpf_scraper.scrapers.utils.humanizer import pacing_delay
from cpf_scraper.services.training_service import PersistOutcome, TrainingService

logger = structlog.get_logger(__name__)

StrategyFactory = Callable[[SearchQuery, Settings], ListingStrategy]


@dataclass
class QueryStats:
    """Counters for one query run."""

    rounds: int = 0
    seen: int = 0
    duplicates: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    aborted: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


class ListPageExtractor:
    """Runs list extraction for an explicit set of search queries.

    Args:
        session_factory: Factory for per-item database sessions
        browser: Started BrowserManager (sessions are opened per query)
        queries: Queries to run, in order
        config: Settings (pacing bounds, page cap)
        strategy_factory: Builds the listing strategy of a query
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        browser: BrowserManager,
        queries: Sequence[SearchQuery],
        config: Settings = settings,
        strategy_factory: StrategyFactory = make_strategy,
    ):
        self.session_factory = session_factory
        self.browser = browser
        self.queries = list(queries)
        self.config = config
        self.strategy_factory = strategy_factory
        self.logger = logger.bind(service="list_extractor")

    async def run(self) -> Dict[str, QueryStats]:
        """Extract every query; a failing query never stops the next one.

        Raises:
            BrowserLaunchError: the browser could not be started
        """
        results: Dict[str, QueryStats] = {}
        for index, query in enumerate(self.queries):
            results[query.name] = await self.process_query(query)
            if index < len(self.queries) - 1:
                await pacing_delay(self.config.QUERY_MIN_WAIT_MS, self.config.QUERY_MAX_WAIT_MS)

        self.logger.info(
            "extraction_finished",
            queries=len(results),
            created=sum(s.created for s in results.values()),
            updated=sum(s.updated for s in results.values()),
            failed=sum(s.failed for s in results.values()),
        )
        return results

    async def process_query(self, query: SearchQuery) -> QueryStats:
        stats = QueryStats()
        log = self.logger.bind(query=query.name)
        log.info("query_started")

        try:
            async with self.browser.session() as browser_session:
                strategy = self.strategy_factory(query, self.config)
                await self._walk_rounds(browser_session.page, query, strategy, stats)
        except BrowserLaunchError:
            raise
        except Exception as e:
            stats.aborted = True
            log.error("query_aborted", error=str(e), error_type=type(e).__name__)

        log.info("query_finished", **stats.as_dict())
        return stats

    async def _walk_rounds(self, page, query: SearchQuery, strategy: ListingStrategy, stats: QueryStats) -> None:
        processed_keys: set = set()

        for round_index in range(self.config.MAX_PAGES_PER_QUERY):
            result: RoundResult = await strategy.fetch_round(page, round_index)
            stats.rounds += 1

            new_items = await self._persist_round(result.items, query, processed_keys, stats)

            # pacing applies after every round, the last one included
            await pacing_delay(self.config.MIN_WAIT_MS, self.config.MAX_WAIT_MS)

            if strategy.should_stop(result, new_items):
                self.logger.info(
                    "query_exhausted",
                    query=query.name,
                    round=round_index,
                    new_items=new_items,
                )
                return

        self.logger.info("page_cap_reached", query=query.name, cap=self.config.MAX_PAGES_PER_QUERY)

    async def _persist_round(
        self,
        raw_items: List[dict],
        query: SearchQuery,
        processed_keys: set,
        stats: QueryStats,
    ) -> int:
        """Persist the not-yet-seen items of a round, in harvest order.

        Returns:
            Number of items whose key had not been seen in this query run
        """
        new_items = 0
        for raw in raw_items:
            stats.seen += 1
            key = identify_item_key(raw)
            if key in processed_keys:
                stats.duplicates += 1
                continue
            processed_keys.add(key)
            new_items += 1

            item = normalize_list_item(raw)
            try:
                async with self.session_factory() as session:
                    outcome = await TrainingService(session, self.config).upsert_list_item(item, query.name)
            except Exception as e:
                stats.failed += 1
                self.logger.error(
                    "list_item_persist_failed",
                    query=query.name,
                    detail_url=item.detail_url,
                    error=str(e),
                )
                continue

            if outcome is PersistOutcome.CREATED:
                stats.created += 1
            elif outcome is PersistOutcome.UPDATED:
                stats.updated += 1
            else:
                stats.skipped += 1
        return new_items
