"""Pydantic schemas for the bulk crawl and job status endpoints.

Wire format is camelCase; Python attributes stay snake_case.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class BulkCrawlRequest(CamelModel):
    """Body of POST /crawl/bulk."""

    limit: int | None = Field(
        None,
        description="Products per competitor. Defaults to 50, clamped to 100.",
    )


class CompetitorCrawlResultResponse(CamelModel):
    competitor: str
    competitor_id: str
    success: bool
    job_id: str | None = None
    error: str | None = None


class BulkCrawlResponse(CamelModel):
    """Dispatch response: one result per processed competitor."""

    success: bool
    message: str
    success_count: int = 0
    fail_count: int = 0
    results: list[CompetitorCrawlResultResponse] = Field(default_factory=list)
    batch_id: str | None = None
    cancelled: bool = False


class ActiveBatchesResponse(CamelModel):
    batch_ids: list[str]


class CancelBatchResponse(CamelModel):
    success: bool
    batch_id: str
    message: str


class JobStatusRequest(CamelModel):
    """Body of POST /crawl/jobs/status. jobId wins if both are sent."""

    job_id: str | None = None
    competitor_id: str | None = None


class CrawlJobData(CamelModel):
    id: str
    competitor_id: str
    upstream_job_id: str | None = None
    status: str
    products_found: int
    products_inserted: int
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class JobStatusResponse(CamelModel):
    success: bool
    data: CrawlJobData | None = None


class JobListResponse(CamelModel):
    items: list[CrawlJobData]
    total: int
