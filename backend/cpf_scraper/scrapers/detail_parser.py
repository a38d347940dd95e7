"""Training detail page parsing.

Every field is read through several candidate selectors since the detail
page markup has changed across site revisions. Contacts are looked up in
icon-labelled list items first, then in any mailto:/tel:/external link.
"""

import json
import re
from typing import Iterable, List, Optional
from urllib.parse import urlsplit

import structlog
from bs4 import BeautifulSoup, Tag

from cpf_scraper.models import WEBSITE_MAX_LENGTH
from cpf_scraper.scrapers.base import ContactsInfo, ParsedDetail
from cpf_scraper.scrapers.list_items import clean_text
from cpf_scraper.scrapers.utils.normalizer import (
    guard_website_url,
    parse_address,
    round_hours,
    sanitize_city,
    sanitize_region,
    to_number,
)

logger = structlog.get_logger(__name__)

PRICE_SELECTORS = ['[data-test="price"]', ".formation__price", ".resume__price", ".info-prix"]
DURATION_SELECTORS = ['[data-test="duration"]', ".formation__duration", ".resume__duration", ".info-duree"]
ADDRESS_SELECTORS = [
    '[data-test="organisme-adresse"]',
    ".organisme__address",
    ".formation__adresse",
    ".organisme-block .adresse",
]
SUMMARY_SELECTORS = ['[data-test="resume"]', ".resume__description", ".formation__description", ".bloc-description"]

PHONE_PATTERN = re.compile(r"\+?\d[\d\s.\-]{5,}")
EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w.-]+\.[A-Za-z]{2,}")

# Links to the marketplace itself are never a center's website
MARKETPLACE_HOST_SUFFIX = "gouv.fr"


def _block_text(element: Tag) -> Optional[str]:
    """Element text with <br> and block boundaries kept as newlines."""
    text = element.get_text("\n")
    lines = [clean_text(line) for line in text.splitlines()]
    joined = "\n".join(line for line in lines if line)
    return joined or None


def pick_text(soup: BeautifulSoup, selectors: Iterable[str], multiline: bool = False) -> Optional[str]:
    """Text of the first selector matching a non-empty element."""
    for selector in selectors:
        element = soup.select_one(selector)
        if element is None:
            continue
        text = _block_text(element) if multiline else clean_text(element.get_text(" "))
        if text:
            return text
    return None


def _icon_list_item(soup: BeautifulSoup, icon_fragment: str) -> Optional[Tag]:
    for li in soup.find_all("li"):
        if li.select_one(f'span[class*="{icon_fragment}"]'):
            return li
    return None


def _anchor_target(anchor: Optional[Tag], scheme: str) -> Optional[str]:
    if anchor is None:
        return None
    href = anchor.get("href", "")
    value = href[len(scheme):].split("?")[0].strip()
    return value or None


def _extract_phone(soup: BeautifulSoup) -> Optional[str]:
    li = _icon_list_item(soup, "fr-icon-phone")
    if li is not None:
        phone = _anchor_target(li.select_one('a[href^="tel:"]'), "tel:")
        if phone:
            return phone
        match = PHONE_PATTERN.search(li.get_text(" "))
        if match:
            return re.sub(r"[^\d+]", "", match.group(0))
    return _anchor_target(soup.select_one('a[href^="tel:"]'), "tel:")


def _extract_email(soup: BeautifulSoup) -> Optional[str]:
    li = _icon_list_item(soup, "fr-icon-mail")
    if li is not None:
        email = _anchor_target(li.select_one('a[href^="mailto:"]'), "mailto:")
        if email:
            return email
        match = EMAIL_PATTERN.search(li.get_text(" "))
        if match:
            return match.group(0)
    return _anchor_target(soup.select_one('a[href^="mailto:"]'), "mailto:")


def _is_external(href: str) -> bool:
    host = urlsplit(href).netloc.lower()
    return bool(host) and not host.endswith(MARKETPLACE_HOST_SUFFIX)


def _extract_website(soup: BeautifulSoup) -> Optional[str]:
    for heading in soup.find_all("h3"):
        if "site internet" not in heading.get_text(" ").lower():
            continue
        sibling = heading.find_next_sibling()
        if sibling is None:
            break
        anchor = sibling if sibling.name == "a" else sibling.select_one('a[href^="http"]')
        if anchor is not None and anchor.get("href", "").strip():
            return anchor["href"].strip()
        break

    for anchor in soup.select('a[href^="http"]'):
        if anchor.find_parent(["header", "footer", "nav"]) is not None:
            continue
        href = anchor["href"].strip()
        if _is_external(href):
            return href
    return None


def extract_contacts(soup: BeautifulSoup) -> ContactsInfo:
    return ContactsInfo(
        email=_extract_email(soup),
        phone=_extract_phone(soup),
        website=guard_website_url(_extract_website(soup), WEBSITE_MAX_LENGTH),
    )


def extract_embedded_json(soup: BeautifulSoup) -> List[object]:
    """Contents of application/json and application/ld+json script tags.

    Script bodies that are not valid JSON are kept as text.
    """
    datasets: List[object] = []
    for script in soup.select('script[type="application/json"], script[type="application/ld+json"]'):
        body = (script.string or script.get_text() or "").strip()
        if not body:
            continue
        try:
            datasets.append(json.loads(body))
        except ValueError:
            datasets.append(body)
    return datasets


def parse_detail_html(html: str) -> ParsedDetail:
    """Parse a rendered training detail page."""
    soup = BeautifulSoup(html, "html.parser")

    price_text = pick_text(soup, PRICE_SELECTORS)
    duration_text = pick_text(soup, DURATION_SELECTORS)
    address = pick_text(soup, ADDRESS_SELECTORS, multiline=True)
    summary = pick_text(soup, SUMMARY_SELECTORS)

    location = parse_address(address)

    return ParsedDetail(
        price_text=price_text,
        price_value=to_number(price_text),
        duration_text=duration_text,
        duration_hours=round_hours(to_number(duration_text)),
        summary=summary,
        address=address,
        city=sanitize_city(location.city),
        postal_code=location.postal_code,
        region=sanitize_region(location.region),
        country=location.country,
        contacts=extract_contacts(soup),
        raw={"scripts": extract_embedded_json(soup)},
    )
