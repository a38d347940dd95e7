"""Spreadsheet export of centers and trainings.

Builds an .xlsx workbook with three sheets (Centres, Formations, Résumé).
Rows are read with keyset pagination; when a rendered workbook exceeds
EXPORT_MAX_BYTES the selected id lists are bisected and each half is
rendered into its own file.
"""

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cpf_scraper.config import Settings, settings
from cpf_scraper.core.exceptions import ExportError
from cpf_scraper.models import Training, TrainingCenter, utcnow
from cpf_scraper.scrapers.utils.normalizer import fold_text

logger = structlog.get_logger(__name__)

DATE_FMT = "yyyy-mm-dd hh:mm"
MONEY_FMT = "#,##0.00"
FILE_PREFIX = "export_mcf_"

CENTER_COLUMNS: List[Tuple[str, str, int]] = [
    ("ID", "id", 8),
    ("Nom", "name", 40),
    ("Ville", "city", 18),
    ("CP", "postal_code", 10),
    ("Région", "region", 18),
    ("Pays", "country", 8),
    ("SIREN", "siren", 16),
    ("SIRET", "siret", 22),
    ("Email", "email", 28),
    ("Téléphone", "phone", 16),
    ("Site", "website", 40),
    ("Nb stagiaires déclarés", "declared_trainees", 14),
    ("Nb stagiaires délégués", "delegated_trainees", 14),
    ("Nb formateurs", "declared_trainers", 14),
    ("Début exercice", "fiscal_year_start", 18),
    ("MAJ OpenData", "open_data_updated_at", 20),
    ("Formations (nb)", "trainings_count", 16),
    ("List scrappée", "last_list_scraped_at", 20),
    ("Detail scrappé", "last_detail_scraped_at", 20),
    ("Créé", "created_at", 20),
    ("MAJ", "updated_at", 20),
]

TRAINING_COLUMNS: List[Tuple[str, str, int]] = [
    ("ID", "id", 8),
    ("Centre ID", "center_id", 10),
    ("Centre", "center_name", 40),
    ("Ville (centre)", "center_city", 18),
    ("Titre formation", "title", 50),
    ("Modalité", "modality", 18),
    ("Certification", "certification", 22),
    ("Localisation (fiche)", "location_text", 28),
    ("Région (fiche)", "region", 18),
    ("Prix (texte)", "price_text", 16),
    ("Prix (num.)", "price_value", 14),
    ("Durée (texte)", "duration_text", 16),
    ("Durée (h)", "duration_hours", 12),
    ("Débute le", "start_date", 18),
    ("Se termine le", "end_date", 18),
    ("Recherche", "search_query", 18),
    ("URL détail", "detail_url", 60),
    ("List scrappée", "last_list_scraped_at", 20),
    ("Detail scrappé", "last_detail_scraped_at", 20),
    ("Créé", "created_at", 20),
    ("MAJ", "updated_at", 20),
]

SUMMARY_COLUMNS: List[Tuple[str, str, int]] = [
    ("Région", "region", 24),
    ("Centres (nb)", "centers", 14),
    ("Formations (nb)", "trainings", 16),
]


@dataclass
class ExportFilters:
    """Row filters of one export run.

    created_after applies to both sheets; clean keeps only centers with
    SIREN, SIRET, city, email and a phone or website; title keeps
    trainings whose title contains the text (case and accent blind) and
    the centers owning them.
    """

    centers_only: bool = False
    created_after: Optional[datetime] = None
    clean: bool = False
    title: Optional[str] = None

    @property
    def restricts_centers(self) -> bool:
        return self.clean or bool(self.title)


@dataclass
class ExportSelection:
    center_ids: List[int]
    training_ids: List[int]
    summary: List[Tuple[str, int, int]]


def is_clean_center(center: TrainingCenter) -> bool:
    required = (center.siren, center.siret, center.city, center.email)
    if not all(value and str(value).strip() for value in required):
        return False
    return bool((center.phone or "").strip() or (center.website or "").strip())


def excel_datetime(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC datetime (openpyxl rejects tz-aware values)."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def website_link(url: str) -> str:
    return url if url.lower().startswith(("http://", "https://")) else f"https://{url}"


def halves(ids: Sequence[int]) -> Tuple[List[int], List[int]]:
    middle = (len(ids) + 1) // 2
    return list(ids[:middle]), list(ids[middle:])


def chunked(ids: Sequence[int], size: int) -> Iterable[Sequence[int]]:
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


def build_summary(center_regions: Iterable[Optional[str]], training_regions: Iterable[Optional[str]]) -> List[Tuple[str, int, int]]:
    """Per-region center and training counts, "N/A" for missing regions, sorted."""
    centers = Counter(region or "N/A" for region in center_regions)
    trainings = Counter(region or "N/A" for region in training_regions)
    regions = sorted(set(centers) | set(trainings), key=lambda r: (r == "N/A", r))
    return [(region, centers[region], trainings[region]) for region in regions]


class ExcelExporter:
    """Exports the store to one or more .xlsx files.

    Usage:
        exporter = ExcelExporter(async_session_factory)
        paths = await exporter.export(ExportFilters(clean=True))
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: Settings = settings,
        output_dir: Optional[Path] = None,
    ):
        self.session_factory = session_factory
        self.config = config
        self.output_dir = Path(output_dir or config.EXPORT_DIR)
        self.page_size = max(1, config.EXPORT_PAGE_SIZE)
        self.logger = logger.bind(service="excel_export")

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def _iter_pages(self, model, created_after: Optional[datetime]):
        """Yield pages of rows ordered by id (keyset pagination)."""
        last_id = 0
        while True:
            stmt = select(model).where(model.id > last_id).order_by(model.id).limit(self.page_size)
            if created_after is not None:
                stmt = stmt.where(model.created_at >= created_after)
            async with self.session_factory() as session:
                rows = list((await session.execute(stmt)).scalars().all())
            if not rows:
                return
            yield rows
            if len(rows) < self.page_size:
                return
            last_id = rows[-1].id

    async def select(self, filters: ExportFilters) -> ExportSelection:
        created_after = filters.created_after
        if created_after is not None:
            created_after = created_after.astimezone(timezone.utc)
        needle = fold_text(filters.title) if filters.title else ""

        # Trainings matching the title decide which centers survive
        training_rows: List[Tuple[int, int, Optional[str]]] = []
        if needle or not filters.centers_only:
            async for page in self._iter_pages(Training, created_after):
                for training in page:
                    if needle and needle not in fold_text(training.title):
                        continue
                    training_rows.append((training.id, training.center_id, training.region))

        title_center_ids = {center_id for _, center_id, _ in training_rows} if needle else None

        center_ids: List[int] = []
        center_regions: List[Optional[str]] = []
        async for page in self._iter_pages(TrainingCenter, created_after):
            for center in page:
                if filters.clean and not is_clean_center(center):
                    continue
                if title_center_ids is not None and center.id not in title_center_ids:
                    continue
                center_ids.append(center.id)
                center_regions.append(center.region)

        training_ids: List[int] = []
        training_regions: List[Optional[str]] = []
        if not filters.centers_only:
            included = set(center_ids)
            for training_id, center_id, region in training_rows:
                if filters.restricts_centers and center_id not in included:
                    continue
                training_ids.append(training_id)
                training_regions.append(region)

        return ExportSelection(
            center_ids=center_ids,
            training_ids=training_ids,
            summary=build_summary(center_regions, training_regions),
        )

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    @staticmethod
    def _prepare_sheet(ws: Worksheet, columns: List[Tuple[str, str, int]]) -> None:
        ws.append([header for header, _, _ in columns])
        for index, (_, _, width) in enumerate(columns, start=1):
            ws.column_dimensions[get_column_letter(index)].width = width
            ws.cell(row=1, column=index).font = Font(bold=True)
        ws.freeze_panes = "A2"
        ws.auto_filter.ref = f"A1:{get_column_letter(len(columns))}1"

    @staticmethod
    def _write_row(
        ws: Worksheet,
        columns: List[Tuple[str, str, int]],
        values: Dict[str, Any],
        links: Optional[Dict[str, str]] = None,
    ) -> None:
        row_index = ws.max_row + 1
        for col_index, (_, key, _) in enumerate(columns, start=1):
            value = values.get(key)
            if isinstance(value, datetime):
                value = excel_datetime(value)
            elif isinstance(value, Decimal):
                value = float(value)
            cell = ws.cell(row=row_index, column=col_index, value=value)
            if isinstance(value, datetime):
                cell.number_format = DATE_FMT
            elif key == "price_value" and value is not None:
                cell.number_format = MONEY_FMT
            if links and key in links:
                cell.hyperlink = links[key]
                cell.style = "Hyperlink"

    async def _training_counts(self, session: AsyncSession, center_ids: Sequence[int]) -> Dict[int, int]:
        result = await session.execute(
            select(Training.center_id, func.count(Training.id))
            .where(Training.center_id.in_(center_ids))
            .group_by(Training.center_id)
        )
        return {center_id: count for center_id, count in result.all()}

    async def _write_centers(self, ws: Worksheet, center_ids: Sequence[int]) -> None:
        self._prepare_sheet(ws, CENTER_COLUMNS)
        for chunk in chunked(center_ids, self.page_size):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(TrainingCenter).where(TrainingCenter.id.in_(chunk)).order_by(TrainingCenter.id)
                )
                centers = list(result.scalars().all())
                counts = await self._training_counts(session, chunk)

            for center in centers:
                values = {key: getattr(center, key, None) for _, key, _ in CENTER_COLUMNS}
                values["trainings_count"] = counts.get(center.id, 0)
                links = {"website": website_link(center.website)} if center.website else None
                self._write_row(ws, CENTER_COLUMNS, values, links)

    async def _write_trainings(self, ws: Worksheet, training_ids: Sequence[int]) -> None:
        self._prepare_sheet(ws, TRAINING_COLUMNS)
        for chunk in chunked(training_ids, self.page_size):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Training, TrainingCenter.name, TrainingCenter.city)
                    .join(TrainingCenter, Training.center_id == TrainingCenter.id)
                    .where(Training.id.in_(chunk))
                    .order_by(Training.id)
                )
                rows = result.all()

            for training, center_name, center_city in rows:
                values = {key: getattr(training, key, None) for _, key, _ in TRAINING_COLUMNS}
                values["center_name"] = center_name
                values["center_city"] = center_city
                links = {"detail_url": website_link(training.detail_url)} if training.detail_url else None
                self._write_row(ws, TRAINING_COLUMNS, values, links)

    def _write_summary(self, ws: Worksheet, summary: List[Tuple[str, int, int]]) -> None:
        self._prepare_sheet(ws, SUMMARY_COLUMNS)
        for region, centers, trainings in summary:
            ws.append([region, centers, trainings])
        ws.append(["TOTAL", sum(row[1] for row in summary), sum(row[2] for row in summary)])
        for cell in ws[ws.max_row]:
            cell.font = Font(bold=True)

    async def render(
        self,
        center_ids: Sequence[int],
        training_ids: Sequence[int],
        summary: List[Tuple[str, int, int]],
        include_trainings: bool = True,
    ) -> bytes:
        """Render one workbook into memory."""
        workbook = Workbook()
        centers_ws = workbook.active
        centers_ws.title = "Centres"
        await self._write_centers(centers_ws, center_ids)
        if include_trainings:
            await self._write_trainings(workbook.create_sheet("Formations"), training_ids)
        self._write_summary(workbook.create_sheet("Résumé"), summary)

        buffer = BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()

    async def render_parts(
        self,
        center_ids: List[int],
        training_ids: List[int],
        summary: List[Tuple[str, int, int]],
        include_trainings: bool = True,
    ) -> List[bytes]:
        """Render, bisecting both id lists until every part fits EXPORT_MAX_BYTES."""
        data = await self.render(center_ids, training_ids, summary, include_trainings)
        if len(data) <= self.config.EXPORT_MAX_BYTES:
            return [data]
        if len(center_ids) <= 1 and len(training_ids) <= 1:
            self.logger.warning(
                "export_part_oversized",
                size=len(data),
                limit=self.config.EXPORT_MAX_BYTES,
            )
            return [data]

        self.logger.info(
            "export_splitting",
            size=len(data),
            centers=len(center_ids),
            trainings=len(training_ids),
        )
        left_centers, right_centers = halves(center_ids)
        left_trainings, right_trainings = halves(training_ids)
        return (
            await self.render_parts(left_centers, left_trainings, summary, include_trainings)
            + await self.render_parts(right_centers, right_trainings, summary, include_trainings)
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def _file_names(self, parts: int, stamp: datetime) -> List[str]:
        timestamp = stamp.strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3] + "Z"
        if parts == 1:
            return [f"{FILE_PREFIX}{timestamp}.xlsx"]
        return [f"{FILE_PREFIX}{timestamp}_part{index}.xlsx" for index in range(1, parts + 1)]

    async def export(self, filters: Optional[ExportFilters] = None) -> List[Path]:
        """Write the export file(s).

        Returns:
            Paths of the written files, in part order

        Raises:
            ExportError: the files could not be written
        """
        filters = filters or ExportFilters()
        selection = await self.select(filters)
        self.logger.info(
            "export_selection",
            centers=len(selection.center_ids),
            trainings=len(selection.training_ids),
            centers_only=filters.centers_only,
            clean=filters.clean,
            title=filters.title,
        )

        parts = await self.render_parts(
            selection.center_ids,
            selection.training_ids,
            selection.summary,
            include_trainings=not filters.centers_only,
        )

        paths = []
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            for name, data in zip(self._file_names(len(parts), utcnow()), parts):
                path = self.output_dir / name
                path.write_bytes(data)
                paths.append(path)
        except OSError as e:
            self.logger.error("export_write_failed", error=str(e), directory=str(self.output_dir))
            raise ExportError(f"Cannot write export to {self.output_dir}: {e}") from e

        self.logger.info("export_written", files=[str(p) for p in paths])
        return paths
