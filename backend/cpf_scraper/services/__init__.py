"""Services for persistence, enrichment, registry sync and export.

Services own the database work of each operation: upserting list items,
draining the detail backlog, cross-referencing the open-data registry
and rendering spreadsheets.
"""

from cpf_scraper.services.center_service import CenterService
from cpf_scraper.services.training_service import PersistOutcome, TrainingService
from cpf_scraper.services.enrichment_service import DetailEnrichmentWorker, EnrichmentOutcome
from cpf_scraper.services.opendata_service import OpenDataCrossReferencer
from cpf_scraper.services.export_service import ExcelExporter, ExportFilters

__all__ = [
    "CenterService",
    "TrainingService",
    "PersistOutcome",
    "DetailEnrichmentWorker",
    "EnrichmentOutcome",
    "OpenDataCrossReferencer",
    "ExcelExporter",
    "ExportFilters",
]
