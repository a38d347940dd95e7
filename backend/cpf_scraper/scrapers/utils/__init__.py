"""Scraper utilities for pacing, user agents, retries and field normalization."""

from .humanizer import pacing_delay, random_between, wait_ms
from .user_agents import USER_AGENTS, default_headers, get_random_user_agent
from .normalizer import (
    FieldRules,
    ParsedAddress,
    fold_text,
    guard_website_url,
    normalize_center_name,
    parse_address,
    pick_number,
    pick_string,
    to_number,
    to_price_decimal,
)
from .retry import registry_retrying


__all__ = [
    # Pacing
    "pacing_delay",
    "random_between",
    "wait_ms",
    # User agents
    "USER_AGENTS",
    "default_headers",
    "get_random_user_agent",
    # Normalization
    "FieldRules",
    "ParsedAddress",
    "fold_text",
    "guard_website_url",
    "normalize_center_name",
    "parse_address",
    "pick_number",
    "pick_string",
    "to_number",
    "to_price_decimal",
    # Retry
    "registry_retrying",
]
