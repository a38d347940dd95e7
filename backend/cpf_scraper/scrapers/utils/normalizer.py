"""Field normalization utilities.

Raw marketplace records change shape between site revisions, so every
canonical field is read through an ordered list of candidates: the first
usable value wins. This module also canonicalizes organization names,
free-text addresses and overlong website URLs.
"""

import math
import re
import unicodedata
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional, Sequence
from urllib.parse import urlsplit

import structlog

logger = structlog.get_logger(__name__)

RawRecord = Mapping[str, Any]
FieldRule = Callable[[RawRecord], Any]


# Longest phrases first so "centre de formation" is removed before "formation"
CORPORATE_TOKENS = [
    "centre de formation",
    "centre formation",
    "organisme de formation",
    "organisme formation",
    "association",
    "formation",
    "selarl",
    "selas",
    "sasu",
    "sarl",
    "eurl",
    "earl",
    "scop",
    "sas",
    "sca",
    "sci",
    "sa",
]

_CORPORATE_PATTERNS = [
    re.compile(r"\b" + r"\s+".join(map(re.escape, token.split())) + r"\b", re.IGNORECASE)
    for token in CORPORATE_TOKENS
]

REGION_KEYWORDS = [
    "region",
    "auvergne-rhone-alpes",
    "bourgogne-franche-comte",
    "bretagne",
    "centre-val de loire",
    "corse",
    "grand est",
    "hauts-de-france",
    "ile-de-france",
    "normandie",
    "nouvelle-aquitaine",
    "occitanie",
    "pays de la loire",
    "provence-alpes-cote d'azur",
    "guadeloupe",
    "martinique",
    "guyane",
    "la reunion",
    "mayotte",
]

_NON_NUMERIC = re.compile(r"[^0-9.,-]")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_POSTAL_CODE = re.compile(r"(?<!\d)(\d{5})(?!\d)")


# ---------------------------------------------------------------------------
# Candidate pickers
# ---------------------------------------------------------------------------

def pick_string(*candidates: Any) -> Optional[str]:
    """Return the first candidate that is a non-empty string once trimmed."""
    for value in candidates:
        if isinstance(value, str):
            trimmed = value.strip()
            if trimmed:
                return trimmed
    return None


def to_number(value: Any) -> Optional[float]:
    """Coerce a locale-formatted value to a finite float.

    "1 234,56 €" -> 1234.56, "n/a" -> None. Booleans are not numbers.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else None
    if isinstance(value, str):
        cleaned = _NON_NUMERIC.sub("", value).replace(",", ".", 1)
        if not cleaned or not any(ch.isdigit() for ch in cleaned):
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def pick_number(*candidates: Any) -> Optional[float]:
    """Return the first candidate convertible to a finite number."""
    for value in candidates:
        number = to_number(value)
        if number is not None:
            return number
    return None


def to_price_decimal(value: Optional[float]) -> Optional[Decimal]:
    """Fixed two-decimal amount; None stays None (never zero)."""
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def round_hours(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    hours = int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return hours or None


def nested(record: Any, *path: str) -> Any:
    """Walk a chain of mapping keys, None as soon as a link is missing."""
    current = record
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def first_mapping(record: RawRecord, keys: Sequence[str]) -> Optional[RawRecord]:
    """First value under keys that is itself a mapping."""
    for key in keys:
        value = record.get(key)
        if isinstance(value, Mapping):
            return value
    return None


@dataclass(frozen=True)
class FieldRules:
    """Priority-ordered extraction rules for one canonical field.

    Each rule maps a raw record to a candidate value; the picker decides
    what counts as usable (non-empty string, finite number).
    """

    rules: Sequence[FieldRule]
    picker: Callable[..., Any] = pick_string

    def resolve(self, record: RawRecord) -> Any:
        return self.picker(*(rule(record) for rule in self.rules))


def at(*path: str) -> FieldRule:
    """Rule reading a (possibly nested) key."""
    return lambda record: nested(record, *path)


def constant(value: Any) -> FieldRule:
    return lambda record: value


# ---------------------------------------------------------------------------
# Organization names
# ---------------------------------------------------------------------------

def remove_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _collapse(value: str) -> str:
    return _NON_ALNUM.sub(" ", value).strip()


def normalize_center_name(raw_name: str) -> str:
    """Canonical key for a center name.

    Lowercase, accent-free, '&' spelled 'et', legal-form tokens removed,
    non-alphanumerics collapsed to single spaces. If removing legal forms
    empties the string, the token-intact form is returned instead.
    """
    base = remove_accents(raw_name or "").replace("&", " et ").lower()

    stripped = base
    for pattern in _CORPORATE_PATTERNS:
        stripped = pattern.sub(" ", stripped)

    normalized = _collapse(stripped)
    if normalized:
        return normalized
    return _collapse(base)


def fold_text(value: Optional[str]) -> str:
    """Case- and diacritic-insensitive form for substring matching."""
    if not value:
        return ""
    return re.sub(r"\s+", " ", remove_accents(value).casefold()).strip()


# ---------------------------------------------------------------------------
# Location sanitizers
# ---------------------------------------------------------------------------

def _clean_spaces(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = re.sub(r"\s+", " ", value).strip()
    return cleaned or None


def sanitize_city(value: Optional[str]) -> Optional[str]:
    cleaned = _clean_spaces(value)
    if not cleaned or re.search(r"distance", cleaned, re.IGNORECASE):
        return None
    return cleaned


def sanitize_region(value: Optional[str]) -> Optional[str]:
    cleaned = _clean_spaces(value)
    if not cleaned or re.search(r"distance", cleaned, re.IGNORECASE):
        return None
    return cleaned


def sanitize_postal_code(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    match = re.search(r"\d{4,6}", value)
    if not match:
        return None
    return match.group(0)[:5]


def sanitize_country(value: Optional[str]) -> Optional[str]:
    cleaned = _clean_spaces(value)
    if not cleaned:
        return None
    return cleaned.upper() if len(cleaned) == 2 else cleaned


@dataclass
class ParsedAddress:
    postal_code: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None


def _is_region(segment: str) -> bool:
    # street lines ("12 rue de Bretagne") start with a number
    if segment[:1].isdigit():
        return False
    folded = fold_text(segment)
    return any(keyword in folded for keyword in REGION_KEYWORDS)


def parse_address(block: Optional[str]) -> ParsedAddress:
    """Split a free-text address block into postal code, city, region, country.

    Segments are separated by newlines or commas. A 5-digit token marks the
    postal code and the text after it on that segment is the city. The
    first match wins for each field; later segments never overwrite.
    """
    parsed = ParsedAddress()
    if not block:
        return parsed

    segments = [part.strip() for part in re.split(r"[\n,]", block) if part.strip()]
    for segment in segments:
        match = _POSTAL_CODE.search(segment)
        if match:
            if parsed.postal_code is None:
                parsed.postal_code = match.group(1)
                city = segment[match.end():].strip(" -")
                if city and parsed.city is None:
                    parsed.city = city
            continue

        if parsed.region is None and _is_region(segment):
            parsed.region = segment

        if parsed.country is None and re.search(r"\bfrance\b", fold_text(segment)):
            parsed.country = "FR"

    return parsed


# ---------------------------------------------------------------------------
# Website URLs
# ---------------------------------------------------------------------------

def guard_website_url(url: Optional[str], max_length: int = 255) -> Optional[str]:
    """Fit a website URL into max_length characters.

    Overlong values are reduced to scheme://host/path (query and fragment
    dropped); if that is still too long the value is hard-truncated. Either
    reduction is logged.
    """
    if url is None:
        return None
    url = url.strip()
    if not url:
        return None
    if len(url) <= max_length:
        return url

    parts = urlsplit(url)
    shortened = url
    if parts.scheme and parts.netloc:
        shortened = f"{parts.scheme}://{parts.netloc}{parts.path}"

    if len(shortened) <= max_length:
        logger.warning(
            "website_url_shortened",
            original_length=len(url),
            new_length=len(shortened),
            host=parts.netloc,
        )
        return shortened

    truncated = shortened[:max_length]
    logger.warning(
        "website_url_truncated",
        original_length=len(url),
        new_length=len(truncated),
        host=parts.netloc,
    )
    return truncated
