"""Raw search-result records: keys, detail URLs, normalization and sources.

Result items reach the extractor either as objects from intercepted JSON
responses or as dicts built from rendered result cards. Both shapes go
through the same rule tables below.
"""

import json
import re
from typing import Any, Iterable, List, Optional
from urllib.parse import quote, urljoin, urlsplit

from bs4 import BeautifulSoup, NavigableString, Tag

from cpf_scraper.scrapers.base import JsonRecord, NormalizedListItem
from cpf_scraper.scrapers.queries import DETAIL_BASE_URL, SITE_ROOT
from cpf_scraper.scrapers.utils.normalizer import (
    FieldRules,
    at,
    constant,
    first_mapping,
    pick_number,
    pick_string,
    round_hours,
)

CARD_SELECTOR = "#result-list-container mcf-dsfr-formation-carte"
LOAD_MORE_SELECTOR = 'button[aria-describedby="affichage-courant-formations"].fr-btn--tertiary'

PRICE_ICON = "fr-icon-money-euro-circle-line"
DURATION_ICON = "fr-icon-time-line"
LOCATION_ICON = "fr-icon-map-pin-2-line"

ITEM_KEY_FIELDS = (
    "id",
    "idFormation",
    "idOffre",
    "numeroOffre",
    "numeroFormation",
    "code",
    "codeFormation",
    "detailUrl",
    "url",
    "urlFiche",
    "trainingCardId",
)

# Keys under which search APIs have returned their result list
RESULT_CONTAINER_KEYS = ("resultats", "formations", "items", "results", "content", "data")

_CENTER_PREFIX = re.compile(r"^Proposée par\s*", re.IGNORECASE)
_WHITESPACE = re.compile(r"[\s  ]+")
_DETAIL_PREFIX = re.compile(r"^formation/(?:recherche|fiche)/")


def pick_identifier(*candidates: Any) -> Optional[str]:
    """Like pick_string, but integer ids are accepted and stringified."""
    for value in candidates:
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def identify_item_key(item: JsonRecord) -> str:
    """Stable dedup key: first identifier field present, else the serialized item."""
    for field_name in ITEM_KEY_FIELDS:
        value = item.get(field_name)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    return json.dumps(item, sort_keys=True, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# Detail URLs
# ---------------------------------------------------------------------------

def extract_detail_path(link: Optional[str]) -> Optional[str]:
    """Path of a training below formation/recherche/ or formation/fiche/.

    Works for hash-routed ("#/formation/recherche/...") and path-routed
    links, absolute or relative. Returns None for any other link.
    """
    if not link:
        return None
    parts = urlsplit(urljoin(SITE_ROOT, link))
    candidate = parts.fragment if parts.fragment else parts.path

    candidate = candidate.lstrip("#").lstrip("/")
    if not candidate.startswith("formation/"):
        return None
    candidate = _DETAIL_PREFIX.sub("", candidate)
    candidate = candidate.split("?")[0]
    return candidate or None


def build_detail_url(path_value: Optional[str]) -> Optional[str]:
    """Canonical detail page URL with every path segment URL-encoded."""
    if not path_value:
        return None
    segments = [quote(segment, safe="") for segment in str(path_value).split("/") if segment]
    if not segments:
        return None
    return DETAIL_BASE_URL + "/".join(segments)


# ---------------------------------------------------------------------------
# Normalization rules
# ---------------------------------------------------------------------------

ORGANISME_KEYS = ("organismeFormation", "organisme", "organismeFormateur")
LOCALISATION_KEYS = ("lieuFormation", "localisation")

RAW_DETAIL_HREF = FieldRules([
    at("detailUrl"), at("detailHref"), at("urlDetail"), at("url"), at("urlFiche"), at("lienDetail"),
])
TRAINING_ID = FieldRules(
    [
        at("id"), at("idFormation"), at("numeroOffre"), at("numeroFormation"),
        at("code"), at("codeFormation"), at("numeroAction"), at("trainingCardId"),
    ],
    picker=pick_identifier,
)
TRAINING_EXTERNAL_ID = FieldRules(
    [
        at("idOffre"), at("idFormation"), at("numeroOffre"),
        at("codeFormation"), at("numeroAction"), at("trainingCardId"),
    ],
    picker=pick_identifier,
)
TITLE = FieldRules([at("libelleFormation"), at("libelle"), at("titre"), at("title")])
SUMMARY = FieldRules([at("resume"), at("descriptionCourte"), at("description"), at("summary")])
MODALITY = FieldRules([at("modalite"), at("modality"), at("modalites"), at("modaliteLibelle")])
CERTIFICATION = FieldRules([at("certification"), at("certificationLibelle")])
PRICE_TEXT = FieldRules([at("prixTexte"), at("prixAffiche"), at("coutAffiche"), at("priceText")])
PRICE_VALUE = FieldRules(
    [at("prix"), at("prixMinimum"), at("prixMin"), at("cout"), at("prixTexte"), at("priceText")],
    picker=pick_number,
)
DURATION_TEXT = FieldRules([at("dureeTexte"), at("duree"), at("dureeAffiche"), at("durationText")])
DURATION_HOURS = FieldRules(
    [at("dureeHeures"), at("duree"), at("dureeTotale"), at("durationText")],
    picker=pick_number,
)

# Rules below read from the record wrapped as {"item", "org", "loc"}
LOCATION_TEXT = FieldRules([
    at("loc", "libelle"), at("loc", "ville"), at("item", "localisation"),
    at("item", "ville"), at("item", "adresse"), at("item", "locationText"),
])
REGION = FieldRules([at("loc", "region"), at("item", "region")])
CENTER_NAME = FieldRules([
    at("org", "libelle"), at("org", "nom"), at("org", "raisonSociale"),
    at("item", "nomOrganisme"), at("item", "organisme"), at("item", "centerName"),
])
CENTER_EXTERNAL_ID = FieldRules(
    [at("org", "id"), at("org", "siret"), at("org", "numeroDeclarationActivite")],
    picker=pick_identifier,
)
CENTER_CITY = FieldRules([at("loc", "ville"), at("org", "ville")])
CENTER_POSTAL_CODE = FieldRules([at("loc", "codePostal"), at("org", "codePostal")], picker=pick_identifier)
CENTER_REGION = FieldRules([at("loc", "region"), at("org", "region")])
CENTER_COUNTRY = FieldRules([at("loc", "pays"), at("org", "pays"), constant("FR")])


def normalize_list_item(item: JsonRecord) -> NormalizedListItem:
    """Map one raw result record to canonical fields.

    The detail URL is rebuilt on the canonical detail base when the raw
    link (or the card / training id) yields a detail path; otherwise the
    raw link is kept as is.
    """
    scoped = {
        "item": item,
        "org": first_mapping(item, ORGANISME_KEYS),
        "loc": first_mapping(item, LOCALISATION_KEYS),
    }

    raw_href = RAW_DETAIL_HREF.resolve(item)
    detail_path = pick_string(
        extract_detail_path(raw_href),
        item.get("trainingCardId"),
        TRAINING_ID.resolve(item),
    )
    detail_url = build_detail_url(detail_path) or raw_href

    return NormalizedListItem(
        list_page_data=item,
        title=TITLE.resolve(item),
        detail_url=detail_url,
        training_external_id=TRAINING_EXTERNAL_ID.resolve(item),
        summary=SUMMARY.resolve(item),
        modality=MODALITY.resolve(item),
        certification=CERTIFICATION.resolve(item),
        location_text=LOCATION_TEXT.resolve(scoped),
        region=REGION.resolve(scoped),
        price_text=PRICE_TEXT.resolve(item),
        price_value=PRICE_VALUE.resolve(item),
        duration_text=DURATION_TEXT.resolve(item),
        duration_hours=round_hours(DURATION_HOURS.resolve(item)),
        center_name=CENTER_NAME.resolve(scoped),
        center_external_id=CENTER_EXTERNAL_ID.resolve(scoped),
        center_city=CENTER_CITY.resolve(scoped),
        center_postal_code=CENTER_POSTAL_CODE.resolve(scoped),
        center_region=CENTER_REGION.resolve(scoped),
        center_country=CENTER_COUNTRY.resolve(scoped),
    )


# ---------------------------------------------------------------------------
# Sources: rendered cards and intercepted JSON
# ---------------------------------------------------------------------------

def clean_text(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = _WHITESPACE.sub(" ", value).strip()
    return cleaned or None


def _icon_text(card: Tag, icon_class: str) -> Optional[str]:
    """Text of the list item holding icon_class, without the icon or sr-only text."""
    icon = card.select_one(f".{icon_class}")
    if icon is None:
        return None
    list_item = icon.find_parent("li")
    if list_item is None:
        return None

    parts = []
    for node in list_item.children:
        if isinstance(node, NavigableString):
            parts.append(str(node))
        elif isinstance(node, Tag):
            classes = node.get("class") or []
            if icon_class in classes or "fr-sr-only" in classes:
                continue
            parts.append(node.get_text(" "))
    return clean_text(" ".join(part for part in parts if part.strip()))


def parse_card(card: Tag, base_url: str) -> JsonRecord:
    """Raw record for one rendered result card."""
    title_link = card.select_one("h3 a")
    center_line = card.select_one(".form-carte__sous-titre")
    summary = card.select_one(".form-carte__certification p")

    raw_href = title_link.get("href") if title_link else None
    center_raw = clean_text(center_line.get_text(" ")) if center_line else None
    center_name = center_raw
    if center_raw:
        center_name = _CENTER_PREFIX.sub("", center_raw).strip() or center_raw

    return {
        "title": clean_text(title_link.get_text(" ")) if title_link else None,
        "detailUrl": urljoin(base_url, raw_href) if raw_href else None,
        "detailHref": raw_href,
        "trainingCardId": card.get("id") or None,
        "summary": clean_text(summary.get_text(" ")) if summary else None,
        "centerName": center_name,
        "priceText": _icon_text(card, PRICE_ICON),
        "durationText": _icon_text(card, DURATION_ICON),
        "locationText": _icon_text(card, LOCATION_ICON),
        "outerHTML": str(card),
    }


def parse_result_cards(html: str, base_url: str = SITE_ROOT) -> List[JsonRecord]:
    """All result cards of a rendered results page, in document order."""
    soup = BeautifulSoup(html, "html.parser")
    return [parse_card(card, base_url) for card in soup.select(CARD_SELECTOR)]


_RESULT_MARKER_KEYS = frozenset(ITEM_KEY_FIELDS) | {"libelleFormation", "libelle", "titre", "title"}


def _is_result_list(value: Any) -> bool:
    if not isinstance(value, list) or not value:
        return False
    if not all(isinstance(v, dict) for v in value):
        return False
    return any(_RESULT_MARKER_KEYS.intersection(v) for v in value)


def extract_items_from_payload(payload: Any) -> List[JsonRecord]:
    """First list of result objects found under a known container key.

    Containers are searched breadth-first so a top-level "resultats" wins
    over lists nested deeper in the response.
    """
    queue: List[Any] = [payload]
    while queue:
        current = queue.pop(0)
        if _is_result_list(current):
            return list(current)
        if not isinstance(current, dict):
            continue
        for container_key in RESULT_CONTAINER_KEYS:
            value = current.get(container_key)
            if _is_result_list(value):
                return list(value)
        queue.extend(v for v in current.values() if isinstance(v, dict))
    return []


def collect_payload_items(payloads: Iterable[Any]) -> List[JsonRecord]:
    """Items of every intercepted payload that carried a result list."""
    items: List[JsonRecord] = []
    for payload in payloads:
        items.extend(extract_items_from_payload(payload))
    return items
