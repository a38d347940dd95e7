"""Tests for the spreadsheet export."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from openpyxl import load_workbook

from cpf_scraper.core.exceptions import ExportError
from cpf_scraper.models import Training, TrainingCenter
from cpf_scraper.services.export_service import (
    CENTER_COLUMNS,
    TRAINING_COLUMNS,
    ExcelExporter,
    ExportFilters,
    build_summary,
    halves,
    is_clean_center,
)


def utc(year, month, day) -> datetime:
    return datetime(year, month, day, 9, 30, tzinfo=timezone.utc)


def column(columns, key) -> int:
    """1-based column index of a key."""
    return [k for _, k, _ in columns].index(key) + 1


def sheet_values(ws, key_columns, key):
    index = column(key_columns, key)
    return [ws.cell(row=row, column=index).value for row in range(2, ws.max_row + 1)]


@pytest_asyncio.fixture
async def populated(session_factory):
    """Three centers (two clean) and four trainings."""
    async with session_factory() as session:
        acme = TrainingCenter(
            name="ACME Langues", normalized_name="acme langues",
            city="Paris", region="Île-de-France", siren="123456789", siret="12345678900012",
            email="contact@acme.fr", phone="0123456789", created_at=utc(2024, 1, 10),
        )
        beta = TrainingCenter(
            name="Beta Compta", normalized_name="beta compta",
            city="Lyon", email="beta@example.fr", created_at=utc(2023, 6, 1),
        )
        gamma = TrainingCenter(
            name="Gamma", normalized_name="gamma",
            city="Rennes", region="Bretagne", siren="987654321", siret="98765432100011",
            email="hello@gamma.bzh", website="gamma.bzh", created_at=utc(2024, 2, 1),
        )
        session.add_all([acme, beta, gamma])
        await session.flush()

        session.add_all([
            Training(
                center_id=acme.id, detail_url="https://mcf.example/t1", title="Anglais Débutant",
                region="Île-de-France", price_value=Decimal("1200.00"), created_at=utc(2024, 1, 10),
            ),
            Training(
                center_id=beta.id, detail_url="https://mcf.example/t2", title="Comptabilité",
                created_at=utc(2023, 6, 1),
            ),
            Training(
                center_id=gamma.id, detail_url="https://mcf.example/t3", title="Anglais avancé",
                region="Bretagne", created_at=utc(2024, 2, 1),
            ),
            Training(
                center_id=acme.id, detail_url="https://mcf.example/t4", title="Allemand",
                region="Île-de-France", created_at=utc(2024, 1, 11),
            ),
        ])
        await session.commit()
        return {"acme": acme.id, "beta": beta.id, "gamma": gamma.id}


# ============================================================================
# Helpers
# ============================================================================


class TestHelpers:
    """Test pure export helpers."""

    def test_clean_center_rule(self):
        """Test the clean-list requirements."""
        center = TrainingCenter(
            name="X", normalized_name="x", siren="1", siret="2", city="Paris", email="a@b.fr",
        )
        assert is_clean_center(center) is False

        center.website = "x.fr"
        assert is_clean_center(center) is True

        center.email = "  "
        assert is_clean_center(center) is False

    def test_summary_sorted_with_missing_region_last(self):
        """Test region grouping."""
        summary = build_summary(["Bretagne", None, "Bretagne"], ["Normandie", None])

        assert summary == [("Bretagne", 2, 0), ("Normandie", 0, 1), ("N/A", 1, 1)]

    def test_halves(self):
        """Test bisection of id lists."""
        assert halves([1, 2, 3]) == ([1, 2], [3])
        assert halves([]) == ([], [])


# ============================================================================
# Export
# ============================================================================


class TestExcelExporter:
    """Test written workbooks."""

    async def test_full_export(self, session_factory, test_settings, populated, tmp_path):
        """Test sheets, rows, formatting and the summary."""
        exporter = ExcelExporter(session_factory, test_settings, output_dir=tmp_path)

        paths = await exporter.export()

        assert len(paths) == 1
        assert paths[0].name.startswith("export_mcf_")
        assert paths[0].name.endswith("Z.xlsx")

        workbook = load_workbook(paths[0])
        assert workbook.sheetnames == ["Centres", "Formations", "Résumé"]

        centers = workbook["Centres"]
        assert centers["A1"].value == "ID"
        assert centers["A1"].font.bold is True
        assert centers.freeze_panes == "A2"
        assert sheet_values(centers, CENTER_COLUMNS, "name") == ["ACME Langues", "Beta Compta", "Gamma"]
        assert sheet_values(centers, CENTER_COLUMNS, "trainings_count") == [2, 1, 1]
        website = centers.cell(row=4, column=column(CENTER_COLUMNS, "website"))
        assert website.hyperlink.target == "https://gamma.bzh"
        created = centers.cell(row=2, column=column(CENTER_COLUMNS, "created_at")).value
        assert abs((created - datetime(2024, 1, 10, 9, 30)).total_seconds()) < 1

        trainings = workbook["Formations"]
        assert trainings.max_row == 5
        assert sheet_values(trainings, TRAINING_COLUMNS, "center_name")[0] == "ACME Langues"
        price = trainings.cell(row=2, column=column(TRAINING_COLUMNS, "price_value"))
        assert price.value == 1200.0
        assert price.number_format == "#,##0.00"

        summary = [row for row in workbook["Résumé"].iter_rows(min_row=2, values_only=True)]
        assert summary == [
            ("Bretagne", 1, 1),
            ("Île-de-France", 1, 2),
            ("N/A", 1, 1),
            ("TOTAL", 3, 4),
        ]

    async def test_created_after(self, session_factory, test_settings, populated):
        """Test the creation-date filter on both sheets."""
        exporter = ExcelExporter(session_factory, test_settings)

        selection = await exporter.select(ExportFilters(created_after=utc(2024, 1, 1)))

        assert selection.center_ids == [populated["acme"], populated["gamma"]]
        assert len(selection.training_ids) == 3

    async def test_clean_list(self, session_factory, test_settings, populated):
        """Test that the clean list drops incomplete centers and their trainings."""
        exporter = ExcelExporter(session_factory, test_settings)

        selection = await exporter.select(ExportFilters(clean=True))

        assert selection.center_ids == [populated["acme"], populated["gamma"]]
        assert len(selection.training_ids) == 3
        assert all(region != "N/A" for region, _, _ in selection.summary)

    async def test_title_filter_is_accent_insensitive(self, session_factory, test_settings, populated):
        """Test the title filter and the centers it keeps."""
        exporter = ExcelExporter(session_factory, test_settings)

        selection = await exporter.select(ExportFilters(title="DEBUTANT"))

        assert selection.center_ids == [populated["acme"]]
        assert len(selection.training_ids) == 1

    async def test_centers_only_with_title(self, session_factory, test_settings, populated, tmp_path):
        """Test the centers-only workbook."""
        exporter = ExcelExporter(session_factory, test_settings, output_dir=tmp_path)

        paths = await exporter.export(ExportFilters(centers_only=True, title="anglais"))

        workbook = load_workbook(paths[0])
        assert workbook.sheetnames == ["Centres", "Résumé"]
        assert sheet_values(workbook["Centres"], CENTER_COLUMNS, "name") == ["ACME Langues", "Gamma"]

    async def test_oversized_export_is_split(self, session_factory, test_settings, populated, tmp_path):
        """Test bisection into parts, each carrying the full summary."""
        test_settings.EXPORT_MAX_BYTES = 1
        exporter = ExcelExporter(session_factory, test_settings, output_dir=tmp_path)

        paths = await exporter.export()

        assert [p.name.rsplit("_", 1)[1] for p in paths] == [
            "part1.xlsx", "part2.xlsx", "part3.xlsx", "part4.xlsx",
        ]
        center_rows = 0
        training_rows = 0
        for path in paths:
            workbook = load_workbook(path)
            center_rows += workbook["Centres"].max_row - 1
            training_rows += workbook["Formations"].max_row - 1
            total = list(workbook["Résumé"].iter_rows(values_only=True))[-1]
            assert total == ("TOTAL", 3, 4)
        assert center_rows == 3
        assert training_rows == 4

    async def test_unwritable_directory(self, session_factory, test_settings, populated, tmp_path):
        """Test that a write failure is reported as ExportError."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        exporter = ExcelExporter(session_factory, test_settings, output_dir=blocker)

        with pytest.raises(ExportError):
            await exporter.export()


if __name__ == "__main__":
    pytest.main([__file__, "-v", "-s"])
