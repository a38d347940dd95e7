"""Shared data structures and the list-strategy interface.

List strategies and the detail parser all return the normalized shapes
defined here, whatever source (JSON API or rendered DOM) they read.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from playwright.async_api import Page

JsonRecord = Dict[str, Any]


@dataclass(frozen=True)
class SearchQuery:
    """One configured marketplace search.

    payload is the structured search sent to the results page; strategy
    picks how results are paged ("incremental" or "offset", None for the
    configured default).
    """

    name: str
    payload: JsonRecord
    strategy: Optional[str] = None


@dataclass
class NormalizedListItem:
    """Canonical fields of one search result, ready for the persister."""

    list_page_data: JsonRecord
    title: Optional[str] = None
    detail_url: Optional[str] = None
    training_external_id: Optional[str] = None
    summary: Optional[str] = None
    modality: Optional[str] = None
    certification: Optional[str] = None
    location_text: Optional[str] = None
    region: Optional[str] = None
    price_text: Optional[str] = None
    price_value: Optional[float] = None
    duration_text: Optional[str] = None
    duration_hours: Optional[int] = None
    center_name: Optional[str] = None
    center_external_id: Optional[str] = None
    center_city: Optional[str] = None
    center_postal_code: Optional[str] = None
    center_region: Optional[str] = None
    center_country: Optional[str] = None


@dataclass
class ContactsInfo:
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.email or self.phone or self.website)


@dataclass
class ParsedDetail:
    """Structured fields read from one training detail page."""

    price_text: Optional[str] = None
    price_value: Optional[float] = None
    duration_text: Optional[str] = None
    duration_hours: Optional[int] = None
    summary: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    contacts: ContactsInfo = field(default_factory=ContactsInfo)
    raw: JsonRecord = field(default_factory=dict)

    def has_data(self) -> bool:
        """True when at least one business field was extracted."""
        return bool(
            self.price_text
            or self.duration_text
            or self.summary
            or self.address
            or not self.contacts.is_empty()
        )


@dataclass
class RoundResult:
    """Raw items harvested by one pagination round.

    exhausted tells the extractor the strategy has nothing further to
    fetch (last page reached, control absent, count stopped growing).
    """

    items: List[JsonRecord] = field(default_factory=list)
    exhausted: bool = False


class ListingStrategy(ABC):
    """One way of walking the result list of a search query.

    A strategy instance serves a single query run; it may keep cursor
    state (offset, number of cards already read) between rounds.
    """

    name: str = ""

    def __init__(self, query: SearchQuery):
        self.query = query

    @abstractmethod
    async def fetch_round(self, page: Page, round_index: int) -> RoundResult:
        """Harvest the raw items of one round.

        Navigation failures are logged and reported as an empty round,
        never raised.
        """

    def should_stop(self, result: RoundResult, new_items: int) -> bool:
        """Stop condition checked after each round has been persisted."""
        return result.exhausted
