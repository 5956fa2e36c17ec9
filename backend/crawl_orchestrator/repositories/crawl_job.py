"""CrawlJobRepository: storage access for crawl job records.

Handles all database operations for CrawlJob entities.
Follows the layered architecture pattern: API -> Service -> Repository -> Database.

Status changes go through transition(), which only updates the row while it
still holds the expected prior status. Two writers racing on the same job
therefore cannot both apply a transition.

ERROR LOGGING REQUIREMENTS:
- Log method entry/exit at DEBUG level with parameters
- Log all exceptions with full stack trace and context
- Include entity IDs (job_id, competitor_id) in all logs
- Log state transitions at INFO level
- Add timing logs for operations >1 second
"""

import time
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.core.logging import db_logger, get_logger
from crawl_orchestrator.models.crawl_job import CrawlJob
from crawl_orchestrator.services.job_state import JobStatus

logger = get_logger(__name__)


class CrawlJobRepository:
    """Repository for CrawlJob records."""

    TABLE_NAME = "crawl_jobs"
    SLOW_OPERATION_THRESHOLD_MS = 1000  # 1 second

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async SQLAlchemy session for database operations
        """
        self.session = session
        logger.debug("CrawlJobRepository initialized")

    def _check_slow(self, query: str, start_time: float) -> float:
        duration_ms = (time.monotonic() - start_time) * 1000
        if duration_ms > self.SLOW_OPERATION_THRESHOLD_MS:
            db_logger.slow_query(
                query=query,
                duration_ms=duration_ms,
                table=self.TABLE_NAME,
            )
        return duration_ms

    async def create(
        self,
        competitor_id: str,
        upstream_job_id: str | None = None,
    ) -> CrawlJob:
        """Create a queued crawl job.

        Args:
            competitor_id: Competitor UUID
            upstream_job_id: Handle returned by the scrape provider

        Returns:
            Created CrawlJob instance

        Raises:
            SQLAlchemyError: On database errors
        """
        start_time = time.monotonic()
        logger.debug(
            "Creating crawl job",
            extra={
                "competitor_id": competitor_id,
                "upstream_job_id": upstream_job_id,
            },
        )

        try:
            job = CrawlJob(
                competitor_id=competitor_id,
                upstream_job_id=upstream_job_id,
                status=JobStatus.QUEUED.value,
                products_found=0,
                products_inserted=0,
            )
            self.session.add(job)
            await self.session.flush()
            await self.session.refresh(job)

            duration_ms = self._check_slow("INSERT INTO crawl_jobs", start_time)
            logger.debug(
                "Crawl job created",
                extra={
                    "job_id": job.id,
                    "competitor_id": competitor_id,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            return job

        except SQLAlchemyError as e:
            db_logger.transaction_failure(
                e,
                table=self.TABLE_NAME,
                context=f"Creating crawl job for competitor_id={competitor_id}",
            )
            raise

    async def get_by_id(self, job_id: str) -> CrawlJob | None:
        """Get a crawl job by ID.

        Always reloads the row so a job updated by another writer is seen
        in its current state.

        Args:
            job_id: UUID of the job

        Returns:
            CrawlJob instance if found, None otherwise

        Raises:
            SQLAlchemyError: On database errors
        """
        start_time = time.monotonic()
        logger.debug("Fetching crawl job by ID", extra={"job_id": job_id})

        try:
            result = await self.session.execute(
                select(CrawlJob)
                .where(CrawlJob.id == job_id)
                .execution_options(populate_existing=True)
            )
            job = result.scalar_one_or_none()

            duration_ms = self._check_slow(
                f"SELECT FROM crawl_jobs WHERE id={job_id}", start_time
            )
            logger.debug(
                "Crawl job fetch completed",
                extra={
                    "job_id": job_id,
                    "found": job is not None,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            return job

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch crawl job by ID",
                extra={
                    "job_id": job_id,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
                exc_info=True,
            )
            raise

    async def get_latest_for_competitor(self, competitor_id: str) -> CrawlJob | None:
        """Get the most recently created job for a competitor.

        Single indexed lookup on (competitor_id, created_at DESC); the
        competitor's full history is never loaded.

        Args:
            competitor_id: Competitor UUID

        Returns:
            Latest CrawlJob, or None if the competitor has none

        Raises:
            SQLAlchemyError: On database errors
        """
        start_time = time.monotonic()
        logger.debug(
            "Fetching latest crawl job for competitor",
            extra={"competitor_id": competitor_id},
        )

        try:
            result = await self.session.execute(
                select(CrawlJob)
                .where(CrawlJob.competitor_id == competitor_id)
                .order_by(CrawlJob.created_at.desc(), CrawlJob.id.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            )
            job = result.scalar_one_or_none()

            duration_ms = self._check_slow(
                f"SELECT FROM crawl_jobs WHERE competitor_id={competitor_id} "
                "ORDER BY created_at DESC LIMIT 1",
                start_time,
            )
            logger.debug(
                "Latest crawl job fetch completed",
                extra={
                    "competitor_id": competitor_id,
                    "job_id": job.id if job else None,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            return job

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch latest crawl job",
                extra={
                    "competitor_id": competitor_id,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
                exc_info=True,
            )
            raise

    async def list_recent(
        self,
        limit: int = 50,
        competitor_id: str | None = None,
    ) -> list[CrawlJob]:
        """List jobs newest first, optionally for a single competitor.

        Raises:
            SQLAlchemyError: On database errors
        """
        logger.debug(
            "Listing recent crawl jobs",
            extra={"limit": limit, "competitor_id": competitor_id},
        )

        try:
            query = select(CrawlJob)
            if competitor_id is not None:
                query = query.where(CrawlJob.competitor_id == competitor_id)
            query = query.order_by(CrawlJob.created_at.desc(), CrawlJob.id.desc()).limit(
                limit
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())

        except SQLAlchemyError as e:
            logger.error(
                "Failed to list crawl jobs",
                extra={
                    "competitor_id": competitor_id,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
                exc_info=True,
            )
            raise

    async def transition(
        self,
        job_id: str,
        expected_status: JobStatus,
        new_status: JobStatus,
        products_found: int | None = None,
        products_inserted: int | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Move a job to new_status if it still holds expected_status.

        completed_at is stamped when new_status is terminal.

        Args:
            job_id: UUID of the job
            expected_status: Status the caller last observed
            new_status: Status to write
            products_found: Optional updated count
            products_inserted: Optional updated count
            error_message: Error text (failed jobs)

        Returns:
            True if the row was updated, False if its status had changed

        Raises:
            SQLAlchemyError: On database errors
        """
        start_time = time.monotonic()

        values: dict[str, Any] = {
            "status": new_status.value,
            "updated_at": datetime.now(UTC),
        }
        if products_found is not None:
            values["products_found"] = products_found
        if products_inserted is not None:
            values["products_inserted"] = products_inserted
        if error_message is not None:
            values["error_message"] = error_message
        if new_status.is_terminal:
            values["completed_at"] = datetime.now(UTC)

        try:
            result = await self.session.execute(
                update(CrawlJob)
                .where(
                    CrawlJob.id == job_id,
                    CrawlJob.status == expected_status.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.session.flush()
            applied = bool(result.rowcount)

            duration_ms = self._check_slow(
                f"UPDATE crawl_jobs SET status={new_status.value} WHERE id={job_id}",
                start_time,
            )

            if applied:
                logger.info(
                    "Crawl job status transition",
                    extra={
                        "job_id": job_id,
                        "from_status": expected_status.value,
                        "to_status": new_status.value,
                        "duration_ms": round(duration_ms, 2),
                    },
                )
            else:
                logger.warning(
                    "Crawl job transition skipped, status changed concurrently",
                    extra={
                        "job_id": job_id,
                        "expected_status": expected_status.value,
                        "to_status": new_status.value,
                    },
                )
            return applied

        except SQLAlchemyError as e:
            db_logger.transaction_failure(
                e,
                table=self.TABLE_NAME,
                context=f"Transitioning crawl job job_id={job_id}",
            )
            raise

    async def update_counts(
        self,
        job_id: str,
        expected_status: JobStatus,
        products_found: int,
        products_inserted: int,
    ) -> bool:
        """Update progress counters without changing status.

        Guarded by expected_status like transition().
        """
        try:
            result = await self.session.execute(
                update(CrawlJob)
                .where(
                    CrawlJob.id == job_id,
                    CrawlJob.status == expected_status.value,
                )
                .values(
                    products_found=products_found,
                    products_inserted=products_inserted,
                    updated_at=datetime.now(UTC),
                )
                .execution_options(synchronize_session=False)
            )
            await self.session.flush()
            return bool(result.rowcount)

        except SQLAlchemyError as e:
            db_logger.transaction_failure(
                e,
                table=self.TABLE_NAME,
                context=f"Updating counts for job_id={job_id}",
            )
            raise
