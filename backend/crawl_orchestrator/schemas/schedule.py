"""Pydantic schemas for the crawl schedule and crawl history endpoints."""

from datetime import datetime

from pydantic import Field, field_validator

from crawl_orchestrator.schemas.crawl import BulkCrawlResponse, CamelModel


class CrawlScheduleResponse(CamelModel):
    id: str
    is_enabled: bool
    cron_expression: str
    max_products_per_competitor: int
    delay_between_competitors_seconds: int
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class CrawlScheduleUpdate(CamelModel):
    """Partial update of the schedule. Omitted fields are left unchanged."""

    is_enabled: bool | None = None
    cron_expression: str | None = Field(None, max_length=100)
    max_products_per_competitor: int | None = Field(None, ge=1, le=100)
    delay_between_competitors_seconds: int | None = Field(None, ge=0, le=3600)

    @field_validator("cron_expression")
    @classmethod
    def validate_cron_expression(cls, v: str | None) -> str | None:
        """Require the 5-field crontab form (minute hour day month weekday)."""
        if v is None:
            return None
        v = " ".join(v.split())
        if len(v.split(" ")) != 5:
            raise ValueError(
                f"Invalid cron expression '{v}'. "
                "Expected 5 space-separated fields (minute hour day month weekday)"
            )
        return v


class ScheduledRunResponse(CamelModel):
    success: bool
    skipped: bool
    trigger_type: str
    message: str
    batch: BulkCrawlResponse | None = None


class CrawlHistoryEntry(CamelModel):
    id: str
    competitor_id: str
    status: str
    job_id: str | None = None
    trigger_type: str
    error_message: str | None = None
    created_at: datetime


class CrawlHistoryListResponse(CamelModel):
    items: list[CrawlHistoryEntry]
    total: int
