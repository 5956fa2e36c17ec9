"""CrawlJob model: one scrape attempt for one competitor.

Rows are created in the 'queued' state when the scrape provider accepts a
submission. Later transitions (running, succeeded, failed) come from the
provider's pipeline; see services/job_state.py for the legal transitions.

A competitor accumulates many rows over time. "Current status" always means
the most recent row, served by the (competitor_id, created_at DESC) index.
"""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from crawl_orchestrator.core.database import Base


class CrawlJob(Base):
    """CrawlJob model.

    Attributes:
        id: UUID primary key
        competitor_id: Competitor this attempt belongs to
        upstream_job_id: Handle assigned by the scrape provider
        status: 'queued', 'running', 'succeeded' or 'failed'
        products_found: Products the provider extracted
        products_inserted: Products that made it into the catalog
        error_message: Provider error text (failed jobs only)
        created_at: When the provider accepted the submission
        updated_at: Last write to the row
        completed_at: When the job reached a terminal status
    """

    __tablename__ = "crawl_jobs"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
        server_default=text("gen_random_uuid()"),
    )

    competitor_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("competitors.id", ondelete="CASCADE"),
        nullable=False,
    )

    upstream_job_id: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="queued",
        server_default=text("'queued'"),
        index=True,
    )

    products_found: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )

    products_inserted: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )

    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        server_default=text("now()"),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        server_default=text("now()"),
        onupdate=lambda: datetime.now(UTC),
    )

    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<CrawlJob(id={self.id!r}, competitor_id={self.competitor_id!r}, "
            f"status={self.status!r})>"
        )


Index(
    "ix_crawl_jobs_competitor_id_created_at",
    CrawlJob.competitor_id,
    CrawlJob.created_at.desc(),
)
