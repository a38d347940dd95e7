"""Open-data registry cross-referencing.

Fills SIREN/SIRET and declared activity figures of training centers from
the public list of training organizations. A registry record is only
accepted when its denomination matches the center's normalized name
exactly, or (optionally) when it is a person's registration whose name
tokens cover the center's. Nothing is ever guessed.
"""

import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cpf_scraper.config import Settings, settings
from cpf_scraper.core.exceptions import RegistryError
from cpf_scraper.models import TrainingCenter, utcnow
from cpf_scraper.scrapers.utils.humanizer import pacing_delay
from cpf_scraper.scrapers.utils.normalizer import normalize_center_name, remove_accents
from cpf_scraper.scrapers.utils.retry import RETRYABLE_HTTP_ERRORS, registry_retrying
from cpf_scraper.scrapers.utils.user_agents import ACCEPT_LANGUAGE

logger = structlog.get_logger(__name__)

DECLARATION_DATE_FIELD = "informationsdeclarees_datedernieredeclaration"

CIVILITY_TOKENS = frozenset({"m", "mr", "monsieur", "mme", "madame", "mlle", "mademoiselle"})

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")

RegistryRecord = Dict[str, Any]


@dataclass
class SyncStats:
    candidates: int = 0
    matched: int = 0
    unmatched: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _fields(record: RegistryRecord) -> Dict[str, Any]:
    fields = record.get("fields")
    return fields if isinstance(fields, dict) else {}


def _raw_tokens(value: str) -> List[str]:
    return [token for token in _TOKEN_SPLIT.split(remove_accents(value).lower()) if token]


def is_exact_match(center_name: str, denomination: str) -> bool:
    target = normalize_center_name(center_name)
    return bool(target) and normalize_center_name(denomination) == target


def is_person_match(center_name: str, denomination: str) -> bool:
    """Registration of an individual ("M. Jean Dupont") covering every name token.

    Loose by nature: two people sharing the same name tokens would both
    match, which is why the rule can be switched off.
    """
    record_tokens = _raw_tokens(denomination)
    if not CIVILITY_TOKENS.intersection(record_tokens):
        return False

    target_tokens = set(normalize_center_name(center_name).split()) - CIVILITY_TOKENS
    if not target_tokens:
        return False
    name_tokens = set(normalize_center_name(denomination).split()) - CIVILITY_TOKENS
    return target_tokens.issubset(name_tokens)


def pick_best_record(
    center_name: str,
    records: Sequence[RegistryRecord],
    allow_person_match: bool = True,
) -> Optional[RegistryRecord]:
    """Most recently declared record that passes an acceptance rule, or None."""
    accepted = []
    for record in records:
        denomination = (_fields(record).get("denomination") or "").strip()
        if not denomination:
            continue
        if is_exact_match(center_name, denomination) or (
            allow_person_match and is_person_match(center_name, denomination)
        ):
            accepted.append(record)

    if not accepted:
        return None
    accepted.sort(key=lambda r: str(_fields(r).get(DECLARATION_DATE_FIELD) or ""), reverse=True)
    return accepted[0]


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_datetime(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class OpenDataCrossReferencer:
    """Looks up centers with registry gaps and fills them from accepted records.

    Args:
        session_factory: Database session factory
        config: Settings (API URL, dataset, rows, retries, person-match switch)
        transport: Optional httpx transport (tests pass an httpx.MockTransport)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: Settings = settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session_factory = session_factory
        self.config = config
        self.transport = transport
        self.logger = logger.bind(service="opendata_sync")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.config.OPENDATA_TIMEOUT_SECONDS,
            headers={"Accept": "application/json", "Accept-Language": ACCEPT_LANGUAGE},
            transport=self.transport,
        )

    def _attempts(self, name: str) -> List[Dict[str, Any]]:
        base = {"dataset": self.config.OPENDATA_DATASET, "rows": self.config.OPENDATA_ROWS}
        return [
            {**base, "refine.denomination": name},
            {**base, "q": name, "sort": f"-{DECLARATION_DATE_FIELD}"},
        ]

    async def _search(self, client: httpx.AsyncClient, params: Dict[str, Any]) -> List[RegistryRecord]:
        retrying = registry_retrying(
            self.config.OPENDATA_RETRIES,
            self.config.MIN_WAIT_MS,
            self.config.MAX_WAIT_MS,
        )
        async for attempt in retrying:
            with attempt:
                response = await client.get(self.config.OPENDATA_API_URL, params=params)
                response.raise_for_status()
                data = response.json()
        records = data.get("records") if isinstance(data, dict) else None
        return [r for r in records or [] if isinstance(r, dict)]

    async def find_record(self, client: httpx.AsyncClient, center_name: str) -> Optional[RegistryRecord]:
        """Exact denomination query first, then the broad text query.

        Raises:
            RegistryError: the registry kept failing after every retry
        """
        search_name = center_name.strip()
        for params in self._attempts(search_name):
            try:
                records = await self._search(client, params)
            except RETRYABLE_HTTP_ERRORS as e:
                raise RegistryError(search_name, str(e)) from e
            except ValueError as e:
                # body was not JSON
                raise RegistryError(search_name, f"invalid response: {e}") from e

            best = pick_best_record(center_name, records, self.config.OPENDATA_ALLOW_PERSON_MATCH)
            if best is not None:
                return best
        return None

    async def pending_center_ids(self) -> List[int]:
        """Centers missing any of SIREN, SIRET, declared trainees or trainers."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(TrainingCenter.id)
                .where(or_(
                    TrainingCenter.siren.is_(None),
                    TrainingCenter.siret.is_(None),
                    TrainingCenter.declared_trainees.is_(None),
                    TrainingCenter.declared_trainers.is_(None),
                ))
                .order_by(TrainingCenter.id)
            )
            return list(result.scalars().all())

    async def apply_record(self, center_id: int, record: RegistryRecord) -> None:
        fields = _fields(record)
        values = {
            "siren": fields.get("siren"),
            "siret": fields.get("siretetablissementdeclarant"),
            "declared_trainees": _to_int(fields.get("informationsdeclarees_nbstagiaires")),
            "delegated_trainees": _to_int(fields.get("informationsdeclarees_nbstagiairesconfiesparunautreof")),
            "declared_trainers": _to_int(fields.get("informationsdeclarees_effectifformateurs")),
            "fiscal_year_start": _to_datetime(fields.get("informationsdeclarees_debutexercice")),
        }

        async with self.session_factory() as session:
            async with session.begin():
                center = await session.get(TrainingCenter, center_id)
                if center is None:
                    return
                for column, value in values.items():
                    if value is not None:
                        setattr(center, column, str(value) if column in ("siren", "siret") else value)
                center.open_data_payload = fields
                center.open_data_updated_at = utcnow()

    async def sync(self) -> SyncStats:
        """Cross-reference every center with registry gaps."""
        stats = SyncStats()
        center_ids = await self.pending_center_ids()
        stats.candidates = len(center_ids)
        if not center_ids:
            self.logger.info("no_center_to_sync")
            return stats

        self.logger.info("opendata_sync_started", centers=len(center_ids))
        async with self._client() as client:
            for center_id in center_ids:
                async with self.session_factory() as session:
                    center = await session.get(TrainingCenter, center_id)
                    name = center.name if center else None
                if not name:
                    continue

                log = self.logger.bind(center_id=center_id, name=name)
                try:
                    record = await self.find_record(client, name)
                    if record is None:
                        stats.unmatched += 1
                        log.warning("opendata_no_exact_match")
                        continue
                    await self.apply_record(center_id, record)
                except RegistryError as e:
                    stats.failed += 1
                    log.error("opendata_lookup_failed", error=e.message)
                    continue
                except Exception as e:
                    stats.failed += 1
                    log.error("opendata_update_failed", error=str(e))
                    continue

                stats.matched += 1
                log.info("opendata_center_matched", siren=_fields(record).get("siren"))
                await pacing_delay(self.config.MIN_WAIT_MS, self.config.MAX_WAIT_MS)

        self.logger.info("opendata_sync_finished", **stats.as_dict())
        return stats
