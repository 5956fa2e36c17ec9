"""ScrapeInvoker: starts scrapes at the provider and tracks their jobs.

The dispatcher only needs start(); refresh() is how a job's status moves
forward. It reads the provider's view of the job and applies the matching
transition with a compare-and-swap on the status it read, so two refreshers
racing on one job cannot both apply a transition.

ERROR LOGGING REQUIREMENTS:
- Log job creation and transitions at INFO level with job and competitor ids
- Log provider responses that cannot be applied at WARNING level
- Roll back and re-raise database errors
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.core.logging import get_logger
from crawl_orchestrator.integrations.scrape_provider import (
    ProviderJobStatus,
    ScrapeProviderClient,
    ScrapeProviderResponseError,
)
from crawl_orchestrator.models.crawl_job import CrawlJob
from crawl_orchestrator.repositories.competitor import CompetitorRepository
from crawl_orchestrator.repositories.crawl_job import CrawlJobRepository
from crawl_orchestrator.services.job_state import (
    CrawlJobNotFoundError,
    InvalidTransitionError,
    JobStatus,
    can_transition,
    invariant_violations,
    parse_status,
)
from crawl_orchestrator.services.job_status import CrawlJobStatus, status_from_record

logger = get_logger(__name__)

DEFAULT_FAILURE_MESSAGE = "Scrape failed without an error message"


@dataclass(frozen=True)
class StartedJob:
    """Outcome of one start() call.

    A provider may accept the call yet report a problem inline; that comes
    back as `error` with no job id.
    """

    job_id: str | None = None
    error: str | None = None


class ScrapeInvoker(Protocol):
    """Capability the dispatcher uses to start one competitor's scrape."""

    @property
    def available(self) -> bool: ...

    async def start(self, competitor_id: str, limit: int) -> StartedJob: ...


class ProviderScrapeInvoker:
    """ScrapeInvoker that submits to the scrape provider and stores jobs."""

    def __init__(self, session: AsyncSession, client: ScrapeProviderClient) -> None:
        self._session = session
        self._client = client
        self._competitors = CompetitorRepository(session)
        self._jobs = CrawlJobRepository(session)

    @property
    def available(self) -> bool:
        return self._client.available

    async def start(self, competitor_id: str, limit: int) -> StartedJob:
        """Submit a scrape for one competitor and record it as queued.

        Once the provider has accepted the scrape, the job row is written
        even if this call is cancelled; the cancellation is re-raised after.

        Raises:
            ScrapeProviderError: If the provider refuses the submission
            SQLAlchemyError: If the job row cannot be written
        """
        competitor = await self._competitors.get_by_id(competitor_id)
        if competitor is None:
            return StartedJob(error="Competitor not found")
        if not competitor.scrape_url:
            return StartedJob(error="Competitor has no scrape URL")

        upstream_job_id = await self._client.start_scrape(
            competitor.scrape_url,
            limit,
            excluded_categories=list(competitor.excluded_categories or []),
        )

        persist = asyncio.ensure_future(
            self._record_job(competitor_id, upstream_job_id)
        )
        try:
            job = await asyncio.shield(persist)
        except asyncio.CancelledError:
            # The provider has already accepted the scrape, so its row must land
            job = await persist
            logger.warning(
                "Crawl job recorded after its submission was cancelled",
                extra={
                    "job_id": job.id,
                    "competitor_id": competitor_id,
                    "upstream_job_id": upstream_job_id,
                },
            )
            raise

        logger.info(
            "Crawl job queued",
            extra={
                "job_id": job.id,
                "competitor_id": competitor_id,
                "upstream_job_id": upstream_job_id,
            },
        )
        return StartedJob(job_id=job.id)

    async def _record_job(self, competitor_id: str, upstream_job_id: str) -> CrawlJob:
        try:
            job = await self._jobs.create(
                competitor_id=competitor_id,
                upstream_job_id=upstream_job_id,
            )
            await self._session.commit()
        except SQLAlchemyError:
            await self._session.rollback()
            raise
        return job

    async def refresh(self, job_id: str) -> CrawlJobStatus:
        """Pull the provider's status for a job and apply it.

        A job that is already terminal is returned unchanged. A provider
        that reports completion of a still-queued job moves it through
        running first.

        Raises:
            CrawlJobNotFoundError: If the job does not exist
            InvalidTransitionError: If the provider reports a status the job
                cannot move to
            ScrapeProviderResponseError: If the provider reports an unknown
                status or inconsistent counts
            ScrapeProviderError: On any other provider failure
        """
        job = await self._jobs.get_by_id(job_id)
        if job is None:
            raise CrawlJobNotFoundError(job_id)

        current = status_from_record(job)
        if current.is_terminal or not job.upstream_job_id:
            return current

        reported = await self._client.get_job(job.upstream_job_id)
        target = self._target_status(job_id, reported)
        failure_message = (
            (reported.error or DEFAULT_FAILURE_MESSAGE)
            if target == JobStatus.FAILED
            else None
        )
        self._check_counts(job_id, target, reported, failure_message)

        try:
            if target == current.status:
                if target == JobStatus.RUNNING:
                    await self._jobs.update_counts(
                        job_id,
                        JobStatus.RUNNING,
                        reported.products_found,
                        reported.products_inserted,
                    )
            else:
                await self._apply(job_id, current.status, target, reported, failure_message)
            await self._session.commit()
        except SQLAlchemyError:
            await self._session.rollback()
            raise

        refreshed = await self._jobs.get_by_id(job_id)
        if refreshed is None:
            raise CrawlJobNotFoundError(job_id)
        return status_from_record(refreshed)

    async def _apply(
        self,
        job_id: str,
        current: JobStatus,
        target: JobStatus,
        reported: ProviderJobStatus,
        failure_message: str | None,
    ) -> None:
        path = [target]
        if current == JobStatus.QUEUED and target == JobStatus.SUCCEEDED:
            path = [JobStatus.RUNNING, JobStatus.SUCCEEDED]

        expected = current
        for step in path:
            if not can_transition(expected, step):
                raise InvalidTransitionError(job_id, expected.value, step.value)
            applied = await self._jobs.transition(
                job_id,
                expected_status=expected,
                new_status=step,
                products_found=reported.products_found,
                products_inserted=reported.products_inserted,
                error_message=failure_message if step == JobStatus.FAILED else None,
            )
            if not applied:
                # Another writer moved the job first; its write stands.
                return
            expected = step

    @staticmethod
    def _target_status(job_id: str, reported: ProviderJobStatus) -> JobStatus:
        try:
            return parse_status(reported.status)
        except ValueError:
            logger.warning(
                "Provider reported an unknown job status",
                extra={"job_id": job_id, "provider_status": reported.status},
            )
            raise ScrapeProviderResponseError(
                f"Unknown provider status '{reported.status}'"
            ) from None

    @staticmethod
    def _check_counts(
        job_id: str,
        target: JobStatus,
        reported: ProviderJobStatus,
        failure_message: str | None,
    ) -> None:
        # The repository stamps completed_at on terminal transitions.
        violations = invariant_violations(
            target,
            datetime.now(UTC) if target.is_terminal else None,
            failure_message,
            reported.products_found,
            reported.products_inserted,
        )
        if violations:
            logger.warning(
                "Provider reported inconsistent job data",
                extra={"job_id": job_id, "violations": violations},
            )
            raise ScrapeProviderResponseError(
                f"Inconsistent provider data: {'; '.join(violations)}"
            )
