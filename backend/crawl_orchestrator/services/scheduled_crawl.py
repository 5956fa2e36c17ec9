"""ScheduledCrawlService: the recurring all-competitor crawl.

Runs the same BatchDispatcher as the interactive bulk crawl, with the limit
and pacing taken from the stored crawl schedule. Each competitor's outcome is
written to crawl_history and the schedule's last_run_at is stamped.

ERROR LOGGING REQUIREMENTS:
- Log run start/finish at INFO level with trigger type and counts
- Log skipped runs (schedule disabled) at INFO level
- Log fatal dispatch errors at ERROR level before re-raising
"""

from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.core.database import session_scope
from crawl_orchestrator.core.logging import get_logger
from crawl_orchestrator.integrations.scrape_provider import (
    ScrapeProviderClient,
    get_scrape_provider,
)
from crawl_orchestrator.repositories.schedule import ScheduleRepository
from crawl_orchestrator.services.competitor_directory import DatabaseCompetitorDirectory
from crawl_orchestrator.services.dispatch import (
    BatchDispatcher,
    BatchResult,
    batch_registry,
)
from crawl_orchestrator.services.job_state import CrawlOrchestratorError
from crawl_orchestrator.services.pacing import PacingPolicy
from crawl_orchestrator.services.scrape_invoker import (
    ProviderScrapeInvoker,
    ScrapeInvoker,
)

logger = get_logger(__name__)

TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MANUAL = "manual"
VALID_TRIGGER_TYPES = frozenset({TRIGGER_SCHEDULED, TRIGGER_MANUAL})

HISTORY_SUCCESS = "success"
HISTORY_ERROR = "error"


@dataclass
class ScheduledRunResult:
    """Outcome of one scheduled or manual run."""

    trigger_type: str
    skipped: bool
    batch: BatchResult | None = None
    reason: str | None = None

    def summary(self) -> dict[str, Any]:
        if self.batch is None:
            return {"skipped": self.skipped, "reason": self.reason}
        return {
            "skipped": self.skipped,
            "batch_id": self.batch.batch_id,
            "success_count": self.batch.success_count,
            "fail_count": self.batch.fail_count,
        }


class ScheduledCrawlService:
    """Runs the stored crawl schedule once.

    Args:
        session: Session used for schedule, history and job writes.
        invoker: Starts each competitor's scrape.
        pacing: Overrides the pacing built from the schedule (tests).
    """

    def __init__(
        self,
        session: AsyncSession,
        invoker: ScrapeInvoker,
        pacing: PacingPolicy | None = None,
    ) -> None:
        self._session = session
        self._invoker = invoker
        self._pacing = pacing
        self._schedules = ScheduleRepository(session)

    async def run(self, trigger_type: str = TRIGGER_SCHEDULED) -> ScheduledRunResult:
        """Run the crawl now.

        A disabled schedule skips scheduled runs; manual runs always go.

        Raises:
            ValueError: If trigger_type is unknown
            DispatchConfigurationError: If the provider is not configured
            DirectoryReadError: If active competitors cannot be listed
        """
        if trigger_type not in VALID_TRIGGER_TYPES:
            raise ValueError(f"Unknown trigger type: {trigger_type}")

        schedule = await self._schedules.get_or_create()

        if not schedule.is_enabled and trigger_type == TRIGGER_SCHEDULED:
            logger.info(
                "Scheduled crawl is disabled, skipping",
                extra={"schedule_id": schedule.id},
            )
            return ScheduledRunResult(
                trigger_type=trigger_type,
                skipped=True,
                reason="Scheduled crawl is disabled",
            )

        logger.info(
            "Starting scheduled crawl",
            extra={
                "schedule_id": schedule.id,
                "trigger_type": trigger_type,
                "max_products_per_competitor": schedule.max_products_per_competitor,
                "delay_between_competitors_seconds": schedule.delay_between_competitors_seconds,
            },
        )

        dispatcher = BatchDispatcher(
            directory=DatabaseCompetitorDirectory(self._session),
            invoker=self._invoker,
            pacing=self._pacing
            or PacingPolicy(schedule.delay_between_competitors_seconds),
        )

        batch_id = str(uuid4())
        token = batch_registry.register(batch_id)
        try:
            batch = await dispatcher.dispatch(
                limit=schedule.max_products_per_competitor,
                cancel_token=token,
                batch_id=batch_id,
            )
        except CrawlOrchestratorError as e:
            logger.error(
                "Scheduled crawl failed",
                extra={
                    "schedule_id": schedule.id,
                    "trigger_type": trigger_type,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
            )
            raise
        finally:
            batch_registry.unregister(batch_id)

        for result in batch.results:
            await self._schedules.add_history(
                competitor_id=result.competitor_id,
                status=HISTORY_SUCCESS if result.success else HISTORY_ERROR,
                trigger_type=trigger_type,
                job_id=result.job_id,
                error_message=result.error,
            )
        await self._schedules.mark_run(schedule.id)
        await self._session.commit()

        logger.info(
            "Scheduled crawl complete",
            extra={
                "schedule_id": schedule.id,
                "trigger_type": trigger_type,
                "batch_id": batch.batch_id,
                "success_count": batch.success_count,
                "fail_count": batch.fail_count,
            },
        )
        return ScheduledRunResult(
            trigger_type=trigger_type,
            skipped=False,
            batch=batch,
        )


async def run_scheduled_crawl() -> dict[str, Any]:
    """Scheduler entry point: run the stored schedule in its own session."""
    client: ScrapeProviderClient = await get_scrape_provider()
    async with session_scope() as session:
        service = ScheduledCrawlService(
            session, ProviderScrapeInvoker(session, client)
        )
        result = await service.run(TRIGGER_SCHEDULED)
    return result.summary()
