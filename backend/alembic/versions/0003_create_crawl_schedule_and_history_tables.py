"""Create crawl_schedule and crawl_history tables.

Revision ID: 0003
Revises: 0002
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0003"
down_revision: str | None = "0002"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create crawl_schedule and crawl_history tables."""
    op.create_table(
        "crawl_schedule",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=False),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "is_enabled",
            sa.Boolean(),
            server_default=sa.text("true"),
            nullable=False,
        ),
        sa.Column(
            "cron_expression",
            sa.String(length=100),
            server_default=sa.text("'0 6 * * *'"),
            nullable=False,
        ),
        sa.Column(
            "max_products_per_competitor",
            sa.Integer(),
            server_default=sa.text("25"),
            nullable=False,
        ),
        sa.Column(
            "delay_between_competitors_seconds",
            sa.Integer(),
            server_default=sa.text("180"),
            nullable=False,
        ),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "crawl_history",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=False),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("competitor_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column(
            "trigger_type",
            sa.String(length=20),
            server_default=sa.text("'scheduled'"),
            nullable=False,
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["competitor_id"],
            ["competitors.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_crawl_history_competitor_id"),
        "crawl_history",
        ["competitor_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_crawl_history_created_at"),
        "crawl_history",
        ["created_at"],
        unique=False,
    )


def downgrade() -> None:
    """Drop crawl_history and crawl_schedule tables."""
    op.drop_index(op.f("ix_crawl_history_created_at"), table_name="crawl_history")
    op.drop_index(op.f("ix_crawl_history_competitor_id"), table_name="crawl_history")
    op.drop_table("crawl_history")
    op.drop_table("crawl_schedule")
