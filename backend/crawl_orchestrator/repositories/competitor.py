"""CompetitorRepository for reading the competitor directory.

The crawl core never creates or edits competitors, so this repository is
read-only.

ERROR LOGGING REQUIREMENTS:
- Log method entry/exit at DEBUG level with parameters
- Log all exceptions with full stack trace and context
- Include competitor_id in all logs where one is known
- Add timing logs for operations >1 second
"""

import time

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.core.logging import db_logger, get_logger
from crawl_orchestrator.models.competitor import Competitor

logger = get_logger(__name__)


class CompetitorRepository:
    """Read-only repository for Competitor rows."""

    TABLE_NAME = "competitors"
    SLOW_OPERATION_THRESHOLD_MS = 1000  # 1 second

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async SQLAlchemy session for database operations
        """
        self.session = session
        logger.debug("CompetitorRepository initialized")

    async def list_active(self) -> list[Competitor]:
        """Get all active competitors ordered by name.

        Ties on name are broken by id so the order is total.

        Returns:
            Active competitors, alphabetical by name

        Raises:
            SQLAlchemyError: On database errors
        """
        start_time = time.monotonic()
        logger.debug("Fetching active competitors")

        try:
            result = await self.session.execute(
                select(Competitor)
                .where(Competitor.is_active.is_(True))
                .order_by(Competitor.name, Competitor.id)
            )
            competitors = list(result.scalars().all())

            duration_ms = (time.monotonic() - start_time) * 1000
            logger.debug(
                "Active competitors fetched",
                extra={
                    "count": len(competitors),
                    "duration_ms": round(duration_ms, 2),
                },
            )

            if duration_ms > self.SLOW_OPERATION_THRESHOLD_MS:
                db_logger.slow_query(
                    query="SELECT FROM competitors WHERE is_active ORDER BY name",
                    duration_ms=duration_ms,
                    table=self.TABLE_NAME,
                )

            return competitors

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch active competitors",
                extra={
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
                exc_info=True,
            )
            raise

    async def get_by_id(self, competitor_id: str) -> Competitor | None:
        """Get a competitor by ID.

        Args:
            competitor_id: UUID of the competitor

        Returns:
            Competitor instance if found, None otherwise

        Raises:
            SQLAlchemyError: On database errors
        """
        logger.debug(
            "Fetching competitor by ID",
            extra={"competitor_id": competitor_id},
        )

        try:
            result = await self.session.execute(
                select(Competitor).where(Competitor.id == competitor_id)
            )
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch competitor by ID",
                extra={
                    "competitor_id": competitor_id,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
                exc_info=True,
            )
            raise
