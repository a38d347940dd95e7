"""SQLAlchemy models for the scraper store.

All models are imported here so create_all() sees every table.
"""

from cpf_scraper.models.base import Base, IntegerPrimaryKeyMixin, TimestampMixin, utcnow
from cpf_scraper.models.training_center import TrainingCenter, WEBSITE_MAX_LENGTH
from cpf_scraper.models.training import Training

__all__ = [
    "Base",
    "IntegerPrimaryKeyMixin",
    "TimestampMixin",
    "utcnow",
    "TrainingCenter",
    "Training",
    "WEBSITE_MAX_LENGTH",
]
