"""Tests for ProviderScrapeInvoker.

Tests cover:
- start(): provider submission and the queued job row it creates
- start(): inline errors for missing competitors
- start(): provider errors propagate and leave no job row
- start(): a cancelled call still records the job the provider accepted
- refresh(): applying provider-reported status changes
- refresh(): terminal jobs are never touched
- refresh(): rejecting unknown statuses, inconsistent counts and illegal moves
"""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.integrations.scrape_provider import (
    ProviderJobStatus,
    ScrapeProviderRateLimitError,
    ScrapeProviderResponseError,
)
from crawl_orchestrator.models import Competitor, CrawlJob
from crawl_orchestrator.services.job_state import (
    CrawlJobNotFoundError,
    InvalidTransitionError,
    JobStatus,
)
from crawl_orchestrator.services.scrape_invoker import (
    DEFAULT_FAILURE_MESSAGE,
    ProviderScrapeInvoker,
    StartedJob,
)


@pytest.fixture
def provider() -> MagicMock:
    client = MagicMock()
    client.available = True
    client.start_scrape = AsyncMock(return_value="up-42")
    client.get_job = AsyncMock()
    return client


def reported(status: str, found: int = 0, inserted: int = 0, error: str | None = None):
    return ProviderJobStatus(
        upstream_job_id="up-1",
        status=status,
        products_found=found,
        products_inserted=inserted,
        error=error,
    )


async def count_jobs(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(CrawlJob))
    return result.scalar_one()


# ---------------------------------------------------------------------------
# start()
# ---------------------------------------------------------------------------


class TestStart:
    """Tests for ProviderScrapeInvoker.start()."""

    @pytest.mark.asyncio
    async def test_creates_queued_job(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor
    ) -> None:
        competitor = await make_competitor(
            "Acme",
            scrape_url="https://acme.example.com/shop",
            excluded_categories=["gift card"],
        )
        invoker = ProviderScrapeInvoker(db_session, provider)

        started = await invoker.start(competitor.id, 25)

        assert isinstance(started, StartedJob)
        assert started.error is None
        provider.start_scrape.assert_awaited_once_with(
            "https://acme.example.com/shop", 25, excluded_categories=["gift card"]
        )
        job = await db_session.get(CrawlJob, started.job_id)
        assert job.status == "queued"
        assert job.upstream_job_id == "up-42"
        assert job.competitor_id == competitor.id
        assert job.completed_at is None

    @pytest.mark.asyncio
    async def test_cancellation_while_recording_keeps_job_row(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor
    ) -> None:
        """A job the provider accepted is stored even if start() is cancelled."""
        competitor = await make_competitor("Acme")
        invoker = ProviderScrapeInvoker(db_session, provider)
        entered = asyncio.Event()
        release = asyncio.Event()
        create = invoker._jobs.create

        async def gated_create(**kwargs: Any) -> CrawlJob:
            entered.set()
            await release.wait()
            return await create(**kwargs)

        invoker._jobs.create = gated_create
        task = asyncio.create_task(invoker.start(competitor.id, 25))
        await entered.wait()
        task.cancel()
        await asyncio.sleep(0)
        release.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert await count_jobs(db_session) == 1
        job = (await db_session.execute(select(CrawlJob))).scalar_one()
        assert job.upstream_job_id == "up-42"
        assert job.status == "queued"

    @pytest.mark.asyncio
    async def test_unknown_competitor(
        self, db_session: AsyncSession, provider: MagicMock
    ) -> None:
        invoker = ProviderScrapeInvoker(db_session, provider)

        started = await invoker.start("00000000-0000-0000-0000-000000000000", 10)

        assert started == StartedJob(error="Competitor not found")
        provider.start_scrape.assert_not_called()

    @pytest.mark.asyncio
    async def test_competitor_without_url(
        self, db_session: AsyncSession, provider: MagicMock
    ) -> None:
        competitor = Competitor(name="Blank", scrape_url="", excluded_categories=[])
        db_session.add(competitor)
        await db_session.commit()
        invoker = ProviderScrapeInvoker(db_session, provider)

        started = await invoker.start(competitor.id, 10)

        assert started == StartedJob(error="Competitor has no scrape URL")

    @pytest.mark.asyncio
    async def test_provider_error_propagates(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor
    ) -> None:
        """A refused submission raises and records nothing."""
        competitor = await make_competitor("Acme")
        provider.start_scrape.side_effect = ScrapeProviderRateLimitError(
            "rate limited", retry_after=30
        )
        invoker = ProviderScrapeInvoker(db_session, provider)

        with pytest.raises(ScrapeProviderRateLimitError, match="rate limited"):
            await invoker.start(competitor.id, 10)

        assert await count_jobs(db_session) == 0

    def test_available_follows_client(
        self, db_session: AsyncSession, provider: MagicMock
    ) -> None:
        invoker = ProviderScrapeInvoker(db_session, provider)
        assert invoker.available is True

        provider.available = False
        assert invoker.available is False


# ---------------------------------------------------------------------------
# refresh()
# ---------------------------------------------------------------------------


class TestRefresh:
    """Tests for ProviderScrapeInvoker.refresh()."""

    @pytest.mark.asyncio
    async def test_queued_to_running(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor, make_job
    ) -> None:
        competitor = await make_competitor("Acme")
        job = await make_job(competitor.id, status="queued")
        provider.get_job.return_value = reported("running", found=8, inserted=2)

        status = await ProviderScrapeInvoker(db_session, provider).refresh(job.id)

        provider.get_job.assert_awaited_once_with("up-1")
        assert status.status is JobStatus.RUNNING
        assert status.products_found == 8
        assert status.products_inserted == 2
        assert status.completed_at is None

    @pytest.mark.asyncio
    async def test_running_counts_update(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor, make_job
    ) -> None:
        """Progress while running updates the counters only."""
        competitor = await make_competitor("Acme")
        job = await make_job(competitor.id, status="running", products_found=1)
        provider.get_job.return_value = reported("scraping", found=20, inserted=15)

        status = await ProviderScrapeInvoker(db_session, provider).refresh(job.id)

        assert status.status is JobStatus.RUNNING
        assert status.products_found == 20
        assert status.products_inserted == 15

    @pytest.mark.asyncio
    async def test_running_to_succeeded(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor, make_job
    ) -> None:
        competitor = await make_competitor("Acme")
        job = await make_job(competitor.id, status="running")
        provider.get_job.return_value = reported("completed", found=30, inserted=28)

        status = await ProviderScrapeInvoker(db_session, provider).refresh(job.id)

        assert status.status is JobStatus.SUCCEEDED
        assert status.completed_at is not None
        assert status.products_inserted == 28

    @pytest.mark.asyncio
    async def test_queued_to_succeeded_passes_through_running(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor, make_job
    ) -> None:
        """A job the provider finished before we saw it run still ends succeeded."""
        competitor = await make_competitor("Acme")
        job = await make_job(competitor.id, status="queued")
        provider.get_job.return_value = reported("succeeded", found=5, inserted=5)

        status = await ProviderScrapeInvoker(db_session, provider).refresh(job.id)

        assert status.status is JobStatus.SUCCEEDED
        assert status.completed_at is not None

    @pytest.mark.asyncio
    async def test_failure_without_message_gets_default(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor, make_job
    ) -> None:
        competitor = await make_competitor("Acme")
        job = await make_job(competitor.id, status="running")
        provider.get_job.return_value = reported("failed")

        status = await ProviderScrapeInvoker(db_session, provider).refresh(job.id)

        assert status.status is JobStatus.FAILED
        assert status.error_message == DEFAULT_FAILURE_MESSAGE

    @pytest.mark.asyncio
    async def test_failure_keeps_provider_message(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor, make_job
    ) -> None:
        competitor = await make_competitor("Acme")
        job = await make_job(competitor.id, status="queued")
        provider.get_job.return_value = reported("error", error="Blocked by robots.txt")

        status = await ProviderScrapeInvoker(db_session, provider).refresh(job.id)

        assert status.status is JobStatus.FAILED
        assert status.error_message == "Blocked by robots.txt"

    @pytest.mark.asyncio
    async def test_terminal_job_untouched(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor, make_job
    ) -> None:
        """Terminal jobs are returned without asking the provider."""
        competitor = await make_competitor("Acme")
        job = await make_job(competitor.id, status="succeeded", products_found=3)

        status = await ProviderScrapeInvoker(db_session, provider).refresh(job.id)

        assert status.status is JobStatus.SUCCEEDED
        provider.get_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_job_without_upstream_id_untouched(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor, make_job
    ) -> None:
        competitor = await make_competitor("Acme")
        job = await make_job(competitor.id, status="queued", upstream_job_id=None)

        status = await ProviderScrapeInvoker(db_session, provider).refresh(job.id)

        assert status.status is JobStatus.QUEUED
        provider.get_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_job(
        self, db_session: AsyncSession, provider: MagicMock
    ) -> None:
        with pytest.raises(CrawlJobNotFoundError):
            await ProviderScrapeInvoker(db_session, provider).refresh(
                "00000000-0000-0000-0000-000000000000"
            )

    @pytest.mark.asyncio
    async def test_unknown_provider_status(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor, make_job
    ) -> None:
        competitor = await make_competitor("Acme")
        job = await make_job(competitor.id, status="queued")
        provider.get_job.return_value = reported("teleported")

        with pytest.raises(ScrapeProviderResponseError, match="teleported"):
            await ProviderScrapeInvoker(db_session, provider).refresh(job.id)

    @pytest.mark.asyncio
    async def test_inconsistent_counts_rejected(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor, make_job
    ) -> None:
        """More inserted than found is never written."""
        competitor = await make_competitor("Acme")
        job = await make_job(competitor.id, status="running")
        provider.get_job.return_value = reported("succeeded", found=2, inserted=9)
        invoker = ProviderScrapeInvoker(db_session, provider)

        with pytest.raises(ScrapeProviderResponseError):
            await invoker.refresh(job.id)

        stored = await db_session.get(CrawlJob, job.id, populate_existing=True)
        assert stored.status == "running"

    @pytest.mark.asyncio
    async def test_backwards_move_rejected(
        self, db_session: AsyncSession, provider: MagicMock, make_competitor, make_job
    ) -> None:
        """A running job cannot go back to queued."""
        competitor = await make_competitor("Acme")
        job = await make_job(competitor.id, status="running")
        provider.get_job.return_value = reported("pending")

        with pytest.raises(InvalidTransitionError) as exc_info:
            await ProviderScrapeInvoker(db_session, provider).refresh(job.id)

        assert exc_info.value.current == "running"
        assert exc_info.value.target == "queued"
