"""JobStatusResolver: look up the current state of a crawl job.

A caller asks either for a specific job or for "whatever is latest" for a
competitor. Both paths return the same storage-independent CrawlJobStatus,
validated against the job record invariant before it leaves this module.

ERROR LOGGING REQUIREMENTS:
- Log method entry at DEBUG level with parameters
- Log invariant violations at ERROR level with the job id
- Log not-found outcomes at INFO level
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.core.logging import get_logger
from crawl_orchestrator.models.crawl_job import CrawlJob
from crawl_orchestrator.repositories.crawl_job import CrawlJobRepository
from crawl_orchestrator.services.job_state import (
    CrawlJobInvariantError,
    InvalidStatusRequestError,
    JobStatus,
    parse_status,
    validate_job_record,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class CrawlJobStatus:
    """Normalized view of one crawl job."""

    id: str
    competitor_id: str
    upstream_job_id: str | None
    status: JobStatus
    products_found: int
    products_inserted: int
    error_message: str | None
    created_at: datetime
    completed_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "competitor_id": self.competitor_id,
            "upstream_job_id": self.upstream_job_id,
            "status": self.status.value,
            "products_found": self.products_found,
            "products_inserted": self.products_inserted,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


def status_from_record(job: CrawlJob) -> CrawlJobStatus:
    """Convert a stored row into a validated CrawlJobStatus.

    Raises:
        CrawlJobInvariantError: If the status is unknown or the record
            breaks the invariant
    """
    try:
        status = parse_status(job.status)
    except ValueError:
        raise CrawlJobInvariantError(
            job.id, [f"unknown status '{job.status}'"]
        ) from None

    products_found = job.products_found or 0
    products_inserted = job.products_inserted or 0

    validate_job_record(
        job.id,
        status,
        job.completed_at,
        job.error_message,
        products_found,
        products_inserted,
    )

    return CrawlJobStatus(
        id=job.id,
        competitor_id=job.competitor_id,
        upstream_job_id=job.upstream_job_id,
        status=status,
        products_found=products_found,
        products_inserted=products_inserted,
        error_message=job.error_message,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


class JobStatusResolver:
    """Resolves a job by id, or the latest job for a competitor."""

    def __init__(self, session: AsyncSession) -> None:
        self._repository = CrawlJobRepository(session)

    async def resolve(
        self,
        job_id: str | None = None,
        competitor_id: str | None = None,
    ) -> CrawlJobStatus | None:
        """Return the requested job's status, or None if there is no such job.

        job_id wins when both are given.

        Raises:
            InvalidStatusRequestError: If neither argument is given. Raised
                before any storage access.
            CrawlJobInvariantError: If the stored record is inconsistent
        """
        if not job_id and not competitor_id:
            raise InvalidStatusRequestError()

        logger.debug(
            "Resolving crawl job status",
            extra={"job_id": job_id, "competitor_id": competitor_id},
        )

        if job_id:
            job = await self._repository.get_by_id(job_id)
        else:
            job = await self._repository.get_latest_for_competitor(competitor_id)  # type: ignore[arg-type]

        if job is None:
            logger.info(
                "Crawl job not found",
                extra={"job_id": job_id, "competitor_id": competitor_id},
            )
            return None

        try:
            return status_from_record(job)
        except CrawlJobInvariantError as e:
            logger.error(
                "Crawl job record violates invariant",
                extra={
                    "job_id": e.job_id,
                    "competitor_id": job.competitor_id,
                    "violations": e.violations,
                },
            )
            raise

    async def list_recent(
        self,
        limit: int = 50,
        competitor_id: str | None = None,
    ) -> list[CrawlJobStatus]:
        """Return jobs newest first, optionally for one competitor.

        Raises:
            CrawlJobInvariantError: If any listed record is inconsistent
        """
        jobs = await self._repository.list_recent(
            limit=limit, competitor_id=competitor_id
        )
        statuses: list[CrawlJobStatus] = []
        for job in jobs:
            try:
                statuses.append(status_from_record(job))
            except CrawlJobInvariantError as e:
                logger.error(
                    "Crawl job record violates invariant",
                    extra={
                        "job_id": e.job_id,
                        "competitor_id": job.competitor_id,
                        "violations": e.violations,
                    },
                )
                raise
        return statuses
