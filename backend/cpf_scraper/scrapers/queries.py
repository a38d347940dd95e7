"""Configured marketplace searches and CLI name resolution."""

import copy
import json
from typing import Iterable, List, Sequence, Tuple
from urllib.parse import quote

from cpf_scraper.scrapers.base import JsonRecord, SearchQuery

SITE_ROOT = "https://www.moncompteformation.gouv.fr/"
RESULTS_BASE_URL = (
    "https://www.moncompteformation.gouv.fr/espace-prive/html/#/formation/recherche/resultats?q="
)
DETAIL_BASE_URL = "https://www.moncompteformation.gouv.fr/espace-prive/html/#/formation/recherche/"

OFFSET_KEY = "debutPagination"
PAGE_SIZE_KEY = "nombreOccurences"


def _remote_search(code: str, label: str, referential_type: str) -> JsonRecord:
    """Search payload for remote trainings of one referential entry."""
    return {
        "ou": {"modality": "A_DISTANCE", "type": "CP"},
        OFFSET_KEY: 1,
        PAGE_SIZE_KEY: 10,
        "contexteFormation": "ACTIVITE_PROFESSIONNELLE",
        "nomOrganisme": None,
        "endDate": None,
        "startDate": None,
        "evaluation": None,
        "niveauSortie": None,
        "minPrix": None,
        "maxPrix": None,
        "rythme": None,
        "onlyWithAbondementsEligibles": None,
        "durationHours": None,
        "certifications": None,
        "quoi": None,
        "quoiReferentiel": {
            "code": code,
            "libelle": label,
            "type": referential_type,
            "publics": ["GD_PUBLIC"],
        },
    }


DEFAULT_QUERIES: Tuple[SearchQuery, ...] = (
    SearchQuery("anglais-distance", _remote_search("15234", "ANGLAIS", "FORMACODE")),
    SearchQuery(
        "bilan-competences-distance",
        _remote_search("CPF202", "BILAN DE COMPETENCES", "CERTIFICATION"),
    ),
    SearchQuery("vae-distance", _remote_search("44591", "VALIDATION ACQUIS EXPERIENCE", "FORMACODE")),
    SearchQuery("allemand-distance", _remote_search("15287", "ALLEMAND", "FORMACODE")),
    SearchQuery("comptable-distance", _remote_search("32663", "COMPTABLE", "FORMACODE")),
)


def build_search_url(payload: JsonRecord) -> str:
    """Results page URL carrying the JSON search payload."""
    encoded = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"{RESULTS_BASE_URL}{quote(encoded, safe='')}"


def paginated_payload(payload: JsonRecord, offset: int, page_size: int) -> JsonRecord:
    """Deep copy of payload asking for page_size results starting at offset (1-based)."""
    paged = copy.deepcopy(payload)
    paged[OFFSET_KEY] = offset
    paged[PAGE_SIZE_KEY] = page_size
    return paged


def split_query_names(raw_values: Iterable[str]) -> List[str]:
    """Flatten repeated / comma-separated CLI values."""
    names: List[str] = []
    for raw in raw_values:
        for value in raw.split(","):
            value = value.strip()
            if value:
                names.append(value)
    return names


def resolve_queries(
    requested: Sequence[str],
    available: Sequence[SearchQuery],
) -> Tuple[List[SearchQuery], List[str]]:
    """Select queries by exact name or by the prefix before a hyphen.

    "anglais" selects "anglais-distance"; an empty selection means all.

    Returns:
        (selected queries in configuration order, requested names that matched nothing)
    """
    if not requested:
        return list(available), []

    matched = set()
    unknown: List[str] = []
    for name in requested:
        hits = [q.name for q in available if q.name == name or q.name.startswith(f"{name}-")]
        if hits:
            matched.update(hits)
        else:
            unknown.append(name)

    return [q for q in available if q.name in matched], unknown
