"""Pagination strategies for the search results list.

The marketplace has served two result-list designs: classic pages
selected by an offset in the search payload, and a single page grown by a
"show more" button. Each is a ListingStrategy; the extractor only sees
rounds of raw items.
"""

from typing import Any, List, Optional

import structlog
from playwright.async_api import Error as PlaywrightError, Page, Response

from cpf_scraper.config import Settings, settings
from cpf_scraper.core.exceptions import NavigationError
from cpf_scraper.scrapers.base import ListingStrategy, RoundResult, SearchQuery
from cpf_scraper.scrapers.browser_manager import navigate
from cpf_scraper.scrapers.list_items import (
    CARD_SELECTOR,
    LOAD_MORE_SELECTOR,
    collect_payload_items,
    parse_result_cards,
)
from cpf_scraper.scrapers.queries import build_search_url, paginated_payload

logger = structlog.get_logger(__name__)

COUNT_CARDS_JS = """
(before) => {
  const container = document.querySelector('#result-list-container');
  if (!container) return false;
  return container.querySelectorAll('mcf-dsfr-formation-carte').length > before;
}
"""


class OffsetPaginationStrategy(ListingStrategy):
    """One navigation per page, the offset carried in the search payload.

    Items come from JSON responses intercepted during the navigation; the
    rendered cards are read when no response carried a result list.
    """

    name = "offset"

    def __init__(self, query: SearchQuery, config: Settings = settings):
        super().__init__(query)
        self.page_size = max(1, config.ITEMS_PER_PAGE)
        self.logger = logger.bind(strategy=self.name, query=query.name)

    def offset_for(self, round_index: int) -> int:
        # debutPagination is 1-based
        return 1 + round_index * self.page_size

    async def fetch_round(self, page: Page, round_index: int) -> RoundResult:
        payload = paginated_payload(self.query.payload, self.offset_for(round_index), self.page_size)
        url = build_search_url(payload)

        responses: List[Response] = []

        def on_response(response: Response) -> None:
            content_type = response.headers.get("content-type", "")
            if "json" in content_type:
                responses.append(response)

        page.on("response", on_response)
        try:
            await navigate(page, url)
        except NavigationError as e:
            self.logger.warning("list_page_navigation_failed", round=round_index, error=e.message)
            return RoundResult(items=[], exhausted=False)
        finally:
            page.remove_listener("response", on_response)

        items = collect_payload_items(await self._read_payloads(responses))
        source = "json"
        if not items:
            items = parse_result_cards(await page.content(), page.url)
            source = "dom"

        self.logger.info(
            "list_page_harvested",
            round=round_index,
            offset=self.offset_for(round_index),
            items=len(items),
            source=source,
        )
        return RoundResult(items=items, exhausted=len(items) < self.page_size)

    async def _read_payloads(self, responses: List[Response]) -> List[Any]:
        payloads = []
        for response in responses:
            try:
                payloads.append(await response.json())
            except (PlaywrightError, ValueError) as e:
                self.logger.debug("json_response_unreadable", url=response.url, error=str(e))
        return payloads

    def should_stop(self, result: RoundResult, new_items: int) -> bool:
        return result.exhausted or new_items == 0


class IncrementalRevealStrategy(ListingStrategy):
    """Navigate once, then click "show more" and read the appended cards.

    Only the slice past the previously read card count is returned each
    round; cards are identified by position, not by identity.
    """

    name = "incremental"

    def __init__(self, query: SearchQuery, config: Settings = settings):
        super().__init__(query)
        self.timeout_ms = config.NAVIGATION_TIMEOUT_MS
        self.read_count = 0
        self.logger = logger.bind(strategy=self.name, query=query.name)

    async def fetch_round(self, page: Page, round_index: int) -> RoundResult:
        if round_index == 0:
            revealed = await self._open_results(page)
        else:
            revealed = await self._reveal_more(page)
        if not revealed:
            return RoundResult(items=[], exhausted=True)

        cards = parse_result_cards(await page.content(), page.url)
        new_cards = cards[self.read_count:]
        self.read_count = max(self.read_count, len(cards))

        has_more = await page.query_selector(LOAD_MORE_SELECTOR) is not None
        self.logger.info(
            "list_batch_harvested",
            round=round_index,
            items=len(new_cards),
            total_cards=len(cards),
            has_more=has_more,
        )
        return RoundResult(items=new_cards, exhausted=not has_more)

    async def _open_results(self, page: Page) -> bool:
        url = build_search_url(self.query.payload)
        try:
            await navigate(page, url)
        except NavigationError as e:
            # networkidle may never fire; cards can still be rendered
            self.logger.warning("list_page_navigation_failed", round=0, error=e.message)

        try:
            await page.wait_for_selector(CARD_SELECTOR, timeout=self.timeout_ms)
        except PlaywrightError as e:
            self.logger.warning("result_cards_not_found", error=str(e))
            return False
        return True

    async def _reveal_more(self, page: Page) -> bool:
        button = await page.query_selector(LOAD_MORE_SELECTOR)
        if button is None:
            self.logger.info("load_more_absent", cards=self.read_count)
            return False

        try:
            await page.click(LOAD_MORE_SELECTOR)
            await page.wait_for_function(COUNT_CARDS_JS, arg=self.read_count, timeout=self.timeout_ms)
        except PlaywrightError as e:
            self.logger.info("card_count_stalled", cards=self.read_count, error=str(e))
            return False
        return True


STRATEGIES = {
    OffsetPaginationStrategy.name: OffsetPaginationStrategy,
    IncrementalRevealStrategy.name: IncrementalRevealStrategy,
}


def make_strategy(query: SearchQuery, config: Settings = settings, name: Optional[str] = None) -> ListingStrategy:
    """Strategy named by the query, else by LIST_STRATEGY."""
    strategy_name = name or query.strategy or config.LIST_STRATEGY
    try:
        strategy_cls = STRATEGIES[strategy_name]
    except KeyError:
        raise ValueError(f"Unknown list strategy: {strategy_name}") from None
    return strategy_cls(query, config)
