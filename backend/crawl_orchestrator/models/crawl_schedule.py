"""CrawlSchedule model for the recurring all-competitor crawl.

A single row holds the schedule settings:
- cron_expression: When the scheduled crawl runs (UTC)
- max_products_per_competitor: Limit handed to each scrape submission
- delay_between_competitors_seconds: Pacing interval for scheduled runs,
  much wider than the interactive bulk crawl's default
"""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from crawl_orchestrator.core.database import Base

DEFAULT_CRON_EXPRESSION = "0 6 * * *"
DEFAULT_MAX_PRODUCTS_PER_COMPETITOR = 25
DEFAULT_DELAY_BETWEEN_COMPETITORS_SECONDS = 180


class CrawlSchedule(Base):
    """CrawlSchedule model.

    Attributes:
        id: UUID primary key
        is_enabled: Whether the scheduler should trigger runs
        cron_expression: Standard 5-field cron expression
        max_products_per_competitor: Products requested per competitor
        delay_between_competitors_seconds: Spacing between submissions
        last_run_at: When the last run (scheduled or manual) finished
        created_at: Timestamp when record was created
        updated_at: Timestamp when record was last updated
    """

    __tablename__ = "crawl_schedule"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
        server_default=text("gen_random_uuid()"),
    )

    is_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )

    cron_expression: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default=DEFAULT_CRON_EXPRESSION,
    )

    max_products_per_competitor: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_PRODUCTS_PER_COMPETITOR,
    )

    delay_between_competitors_seconds: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_DELAY_BETWEEN_COMPETITORS_SECONDS,
    )

    last_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
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

    def __repr__(self) -> str:
        return f"<CrawlSchedule(id={self.id!r}, cron={self.cron_expression!r}, enabled={self.is_enabled!r})>"
