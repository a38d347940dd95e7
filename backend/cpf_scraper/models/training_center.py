"""TrainingCenter model: an organization offering trainings on the marketplace."""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cpf_scraper.models.base import Base, IntegerPrimaryKeyMixin, TimestampMixin

if TYPE_CHECKING:
    from cpf_scraper.models.training import Training

WEBSITE_MAX_LENGTH = 255


class TrainingCenter(IntegerPrimaryKeyMixin, TimestampMixin, Base):
    """Training provider ("centre de formation").

    Identified by external_id when the marketplace exposes one, otherwise
    by normalized_name. Updates never blank out a populated field.
    """

    __tablename__ = "training_centers"

    # Identity
    external_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
        comment="Organization id from the marketplace (when exposed)"
    )
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    normalized_name: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        index=True,
        comment="Accent/legal-form free lowercase name used for dedup"
    )

    # Location
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    region: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)
    country: Mapped[str] = mapped_column(String(50), nullable=False, default="FR")

    # Contact
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String(WEBSITE_MAX_LENGTH), nullable=True)

    # Open-data registry enrichment
    siren: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    siret: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    declared_trainees: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    delegated_trainees: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    declared_trainers: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fiscal_year_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    open_data_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    open_data_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Scrape bookkeeping
    last_list_scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_detail_scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    trainings: Mapped[list["Training"]] = relationship(
        back_populates="center",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<TrainingCenter(id={self.id}, normalized_name='{self.normalized_name}')>"
