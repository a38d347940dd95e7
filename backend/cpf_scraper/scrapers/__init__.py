"""Scraping layer: browser sessions, list strategies and page parsers.

This package provides:
- Shared data structures for normalized list items and detail pages
- Listing strategies (offset pagination, incremental reveal)
- The list page extractor and the detail page parser
- Utility modules for pacing, user agents, retries and field normalization
"""

from .base import (
    ContactsInfo,
    ListingStrategy,
    NormalizedListItem,
    ParsedDetail,
    RoundResult,
    SearchQuery,
)

__all__ = [
    # Data structures
    "ContactsInfo",
    "NormalizedListItem",
    "ParsedDetail",
    "RoundResult",
    "SearchQuery",
    # Strategy interface
    "ListingStrategy",
]
