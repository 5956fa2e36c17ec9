"""CrawlHistory model: per-competitor outcome of a scheduled or manual run.

Unlike crawl_jobs, which tracks the provider's progress, a history row
records whether the submission itself went through.
"""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from crawl_orchestrator.core.database import Base


class CrawlHistory(Base):
    """CrawlHistory model.

    Attributes:
        id: UUID primary key
        competitor_id: Competitor the entry belongs to
        status: 'success' or 'error'
        job_id: CrawlJob created by the submission, if any
        trigger_type: 'scheduled' or 'manual'
        error_message: Why the submission failed
        created_at: Timestamp when record was created
    """

    __tablename__ = "crawl_history"

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
        index=True,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    job_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
    )

    trigger_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="scheduled",
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
        index=True,
    )

    def __repr__(self) -> str:
        return f"<CrawlHistory(id={self.id!r}, competitor_id={self.competitor_id!r}, status={self.status!r})>"
