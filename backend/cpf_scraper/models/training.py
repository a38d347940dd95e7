"""Training model: one listing of the marketplace search results."""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cpf_scraper.models.base import Base, IntegerPrimaryKeyMixin, TimestampMixin

if TYPE_CHECKING:
    from cpf_scraper.models.training_center import TrainingCenter


class Training(IntegerPrimaryKeyMixin, TimestampMixin, Base):
    """Training listing scraped from a search result page.

    detail_url is the natural key: external ids are not stable across
    site revisions. Rows are created on first sighting, refreshed on
    every later sighting and enriched once by the detail worker.
    """

    __tablename__ = "trainings"

    center_id: Mapped[int] = mapped_column(
        ForeignKey("training_centers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    external_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)
    detail_url: Mapped[str] = mapped_column(String(2000), unique=True, nullable=False)

    # Content
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    modality: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    certification: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    location_text: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    region: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)

    # Pricing and duration
    price_text: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    price_value: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2),
        nullable=True,
        comment="Best-effort parse of price_text, NULL when unparseable"
    )
    duration_text: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    duration_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Provenance
    search_query: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    list_page_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    detail_page_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Backlog state
    needs_detail: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_list_scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_detail_scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_trainings_backlog", "needs_detail", "last_detail_scraped_at", "id"),
    )

    center: Mapped["TrainingCenter"] = relationship(back_populates="trainings")

    def __repr__(self) -> str:
        return f"<Training(id={self.id}, title='{self.title[:50]}', center_id={self.center_id})>"
