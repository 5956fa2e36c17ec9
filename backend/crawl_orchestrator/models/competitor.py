"""Competitor model for the storefronts being monitored.

The Competitor model represents an external storefront to crawl:
- name: Display name, also the dispatch ordering key
- scrape_url: Listing page handed to the scrape provider
- is_active: Only active competitors are included in a bulk crawl
- excluded_categories: Words the provider should filter out of product names

Competitors are maintained by an admin workflow; the crawl core only reads them.
"""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from crawl_orchestrator.core.database import Base


class Competitor(Base):
    """Competitor model.

    Attributes:
        id: UUID primary key
        name: Display name (ordering key for dispatch)
        scrape_url: The URL the scrape provider starts from
        is_active: Whether the competitor takes part in bulk crawls
        excluded_categories: JSONB list of words to exclude from results
        created_at: Timestamp when record was created
        updated_at: Timestamp when record was last updated
    """

    __tablename__ = "competitors"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
        server_default=text("gen_random_uuid()"),
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )

    scrape_url: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
        index=True,
    )

    excluded_categories: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default=text("'[]'::jsonb"),
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
        return f"<Competitor(id={self.id!r}, name={self.name!r}, active={self.is_active!r})>"
