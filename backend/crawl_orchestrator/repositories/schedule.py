"""ScheduleRepository for the crawl schedule row and its run history.

Handles all database operations for CrawlSchedule and CrawlHistory entities.
Follows the layered architecture pattern: API -> Service -> Repository -> Database.

ERROR LOGGING REQUIREMENTS:
- Log method entry/exit at DEBUG level with parameters
- Log all exceptions with full stack trace and context
- Include entity IDs (schedule_id, competitor_id) in all logs
- Log state transitions (is_enabled changes) at INFO level
- Add timing logs for operations >1 second
"""

import time
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.core.logging import db_logger, get_logger
from crawl_orchestrator.models.crawl_history import CrawlHistory
from crawl_orchestrator.models.crawl_schedule import CrawlSchedule

logger = get_logger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {
        "is_enabled",
        "cron_expression",
        "max_products_per_competitor",
        "delay_between_competitors_seconds",
    }
)


class ScheduleRepository:
    """Repository for the singleton CrawlSchedule row and CrawlHistory.

    All methods accept an AsyncSession and handle database operations
    with comprehensive logging as required.
    """

    TABLE_NAME = "crawl_schedule"
    HISTORY_TABLE_NAME = "crawl_history"
    SLOW_OPERATION_THRESHOLD_MS = 1000  # 1 second

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async SQLAlchemy session for database operations
        """
        self.session = session
        logger.debug("ScheduleRepository initialized")

    async def get(self) -> CrawlSchedule | None:
        """Get the schedule row (the oldest one if several exist).

        Raises:
            SQLAlchemyError: On database errors
        """
        logger.debug("Fetching crawl schedule")

        try:
            result = await self.session.execute(
                select(CrawlSchedule).order_by(CrawlSchedule.created_at).limit(1)
            )
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch crawl schedule",
                extra={
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
                exc_info=True,
            )
            raise

    async def get_or_create(self) -> CrawlSchedule:
        """Get the schedule row, inserting one with defaults if missing.

        Raises:
            SQLAlchemyError: On database errors
        """
        schedule = await self.get()
        if schedule is not None:
            return schedule

        logger.info("No crawl schedule found, creating default")
        try:
            schedule = CrawlSchedule()
            self.session.add(schedule)
            await self.session.flush()
            await self.session.refresh(schedule)
            return schedule

        except SQLAlchemyError as e:
            db_logger.transaction_failure(
                e,
                table=self.TABLE_NAME,
                context="Creating default crawl schedule",
            )
            raise

    async def update(self, schedule_id: str, **fields: Any) -> CrawlSchedule | None:
        """Update schedule settings.

        Unknown keys and None values are ignored.

        Args:
            schedule_id: UUID of the schedule row
            **fields: Any of is_enabled, cron_expression,
                max_products_per_competitor, delay_between_competitors_seconds

        Returns:
            Updated CrawlSchedule, or None if the row does not exist

        Raises:
            SQLAlchemyError: On database errors
        """
        start_time = time.monotonic()
        values = {
            key: value
            for key, value in fields.items()
            if key in _UPDATABLE_FIELDS and value is not None
        }
        logger.debug(
            "Updating crawl schedule",
            extra={
                "schedule_id": schedule_id,
                "update_fields": sorted(values),
            },
        )

        try:
            current = await self.session.get(CrawlSchedule, schedule_id)
            if current is None:
                logger.debug(
                    "Crawl schedule not found for update",
                    extra={"schedule_id": schedule_id},
                )
                return None

            if "is_enabled" in values and values["is_enabled"] != current.is_enabled:
                logger.info(
                    "Crawl schedule enabled state change",
                    extra={
                        "schedule_id": schedule_id,
                        "from_enabled": current.is_enabled,
                        "to_enabled": values["is_enabled"],
                    },
                )

            if values:
                values["updated_at"] = datetime.now(UTC)
                await self.session.execute(
                    update(CrawlSchedule)
                    .where(CrawlSchedule.id == schedule_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await self.session.flush()
                await self.session.refresh(current)

            duration_ms = (time.monotonic() - start_time) * 1000
            if duration_ms > self.SLOW_OPERATION_THRESHOLD_MS:
                db_logger.slow_query(
                    query=f"UPDATE crawl_schedule WHERE id={schedule_id}",
                    duration_ms=duration_ms,
                    table=self.TABLE_NAME,
                )
            return current

        except SQLAlchemyError as e:
            db_logger.transaction_failure(
                e,
                table=self.TABLE_NAME,
                context=f"Updating crawl schedule schedule_id={schedule_id}",
            )
            raise

    async def mark_run(self, schedule_id: str, run_at: datetime | None = None) -> None:
        """Stamp last_run_at on the schedule row."""
        try:
            await self.session.execute(
                update(CrawlSchedule)
                .where(CrawlSchedule.id == schedule_id)
                .values(last_run_at=run_at or datetime.now(UTC))
                .execution_options(synchronize_session=False)
            )
            await self.session.flush()

        except SQLAlchemyError as e:
            db_logger.transaction_failure(
                e,
                table=self.TABLE_NAME,
                context=f"Marking run for schedule_id={schedule_id}",
            )
            raise

    async def add_history(
        self,
        competitor_id: str,
        status: str,
        trigger_type: str,
        job_id: str | None = None,
        error_message: str | None = None,
    ) -> CrawlHistory:
        """Record the outcome of one competitor's submission in a run.

        Raises:
            SQLAlchemyError: On database errors
        """
        logger.debug(
            "Recording crawl history entry",
            extra={
                "competitor_id": competitor_id,
                "status": status,
                "trigger_type": trigger_type,
                "job_id": job_id,
            },
        )

        try:
            entry = CrawlHistory(
                competitor_id=competitor_id,
                status=status,
                trigger_type=trigger_type,
                job_id=job_id,
                error_message=error_message,
            )
            self.session.add(entry)
            await self.session.flush()
            return entry

        except SQLAlchemyError as e:
            db_logger.transaction_failure(
                e,
                table=self.HISTORY_TABLE_NAME,
                context=f"Recording history for competitor_id={competitor_id}",
            )
            raise

    async def list_history(
        self,
        limit: int = 50,
        competitor_id: str | None = None,
    ) -> list[CrawlHistory]:
        """List history entries newest first.

        Raises:
            SQLAlchemyError: On database errors
        """
        logger.debug(
            "Listing crawl history",
            extra={"limit": limit, "competitor_id": competitor_id},
        )

        try:
            query = select(CrawlHistory)
            if competitor_id is not None:
                query = query.where(CrawlHistory.competitor_id == competitor_id)
            query = query.order_by(CrawlHistory.created_at.desc()).limit(limit)
            result = await self.session.execute(query)
            return list(result.scalars().all())

        except SQLAlchemyError as e:
            logger.error(
                "Failed to list crawl history",
                extra={
                    "competitor_id": competitor_id,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
                exc_info=True,
            )
            raise
