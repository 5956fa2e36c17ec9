"""BatchDispatcher: fan one "crawl all competitors" request out to N jobs.

Competitors are processed one at a time in name order. Before each
submission the dispatcher checks the cancellation token and waits out the
pacing delay that follows the previous submission; the submission itself
is bounded by a timeout. A failing competitor is recorded in its result
entry and never stops the batch.

Only two errors abort a batch, both before any competitor is processed:
missing configuration (DispatchConfigurationError) and an unreadable
competitor directory (DirectoryReadError).

ERROR LOGGING REQUIREMENTS:
- Every log entry carries the batch_id
- Log per-competitor failures at WARNING level with error type
- Log fatal errors at ERROR level with full stack trace
- Log batch completion with counts and duration
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from crawl_orchestrator.core.config import get_settings
from crawl_orchestrator.core.logging import dispatch_logger, get_logger
from crawl_orchestrator.services.competitor_directory import (
    CompetitorDirectory,
    CompetitorEntry,
)
from crawl_orchestrator.services.job_state import (
    DirectoryReadError,
    DispatchConfigurationError,
    InvalidDispatchRequestError,
)
from crawl_orchestrator.services.pacing import CancellationToken, PacingPolicy
from crawl_orchestrator.services.scrape_invoker import ScrapeInvoker, StartedJob

logger = get_logger(__name__)

NO_ACTIVE_COMPETITORS_MESSAGE = "No active competitors found"


@dataclass
class CompetitorCrawlResult:
    """Outcome of one competitor's submission within a batch."""

    competitor: str
    competitor_id: str
    success: bool
    job_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "competitor": self.competitor,
            "competitor_id": self.competitor_id,
            "success": self.success,
        }
        if self.job_id is not None:
            result["job_id"] = self.job_id
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class BatchResult:
    """Summary of a dispatched batch."""

    success: bool
    message: str
    batch_id: str
    success_count: int = 0
    fail_count: int = 0
    cancelled: bool = False
    results: list[CompetitorCrawlResult] = field(default_factory=list)


class BatchRegistry:
    """In-process registry of running batches, used to cancel them by id."""

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}

    def register(self, batch_id: str) -> CancellationToken:
        token = CancellationToken()
        self._tokens[batch_id] = token
        return token

    def unregister(self, batch_id: str) -> None:
        self._tokens.pop(batch_id, None)

    def cancel(self, batch_id: str, reason: str | None = None) -> bool:
        """Signal a running batch to stop. Returns False if it is unknown."""
        token = self._tokens.get(batch_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def active(self) -> list[str]:
        return list(self._tokens)


batch_registry = BatchRegistry()


def _error_text(error: BaseException) -> str:
    return str(error) or type(error).__name__


class BatchDispatcher:
    """Paced, sequential, failure-isolated fan-out over active competitors.

    Args:
        directory: Source of active competitors.
        invoker: Starts one competitor's scrape.
        pacing: Rest taken after each submission. Defaults to the configured
            dispatch pacing delay.
        invoke_timeout: Seconds allowed per submission.
        default_limit: Limit used when the caller gives none.
        max_limit: Upper bound limits are clamped to.
    """

    def __init__(
        self,
        directory: CompetitorDirectory,
        invoker: ScrapeInvoker,
        pacing: PacingPolicy | None = None,
        invoke_timeout: float | None = None,
        default_limit: int | None = None,
        max_limit: int | None = None,
    ) -> None:
        settings = get_settings()
        self._directory = directory
        self._invoker = invoker
        self._pacing = pacing or PacingPolicy(settings.dispatch_pacing_delay_seconds)
        self._invoke_timeout = (
            invoke_timeout
            if invoke_timeout is not None
            else settings.dispatch_invoke_timeout_seconds
        )
        self._default_limit = default_limit or settings.dispatch_default_limit
        self._max_limit = max_limit or settings.dispatch_max_limit

    def normalize_limit(self, limit: int | None) -> int:
        """Apply the default and the upper clamp to a requested limit.

        Raises:
            InvalidDispatchRequestError: If limit is not a positive integer
        """
        if limit is None:
            return self._default_limit
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise InvalidDispatchRequestError(
                "limit", limit, "Limit must be an integer"
            )
        if limit < 1:
            raise InvalidDispatchRequestError(
                "limit", limit, "Limit must be a positive integer"
            )
        return min(limit, self._max_limit)

    async def dispatch(
        self,
        limit: int | None = None,
        cancel_token: CancellationToken | None = None,
        batch_id: str | None = None,
    ) -> BatchResult:
        """Start a crawl for every active competitor.

        Args:
            limit: Products requested per competitor
            cancel_token: Checked between competitors
            batch_id: Identifier for logs and cancellation. Generated if absent.

        Returns:
            BatchResult with one entry per processed competitor, in name order

        Raises:
            InvalidDispatchRequestError: If limit is unusable
            DispatchConfigurationError: If the invoker is not configured
            DirectoryReadError: If active competitors cannot be listed
        """
        batch_id = batch_id or str(uuid4())
        effective_limit = self.normalize_limit(limit)

        if not self._invoker.available:
            logger.error(
                "Bulk crawl aborted, scrape provider not configured",
                extra={"batch_id": batch_id},
            )
            raise DispatchConfigurationError("Scrape provider is not configured")

        try:
            competitors = await self._directory.list_active()
        except Exception as e:
            logger.error(
                "Failed to fetch active competitors",
                extra={
                    "batch_id": batch_id,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
                exc_info=True,
            )
            raise DirectoryReadError(
                f"Failed to fetch competitors: {_error_text(e)}"
            ) from e

        if not competitors:
            logger.warning(
                NO_ACTIVE_COMPETITORS_MESSAGE,
                extra={"batch_id": batch_id},
            )
            return BatchResult(
                success=True,
                message=NO_ACTIVE_COMPETITORS_MESSAGE,
                batch_id=batch_id,
            )

        total = len(competitors)
        dispatch_logger.batch_start(batch_id, total, effective_limit)
        start_time = time.monotonic()

        results: list[CompetitorCrawlResult] = []
        cancelled = False

        for position, competitor in enumerate(competitors, start=1):
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                dispatch_logger.batch_cancelled(batch_id, len(results), total)
                break

            await self._pacing.wait()
            dispatch_logger.competitor_start(
                batch_id, competitor.id, competitor.name, position
            )
            try:
                results.append(
                    await self._start_one(batch_id, competitor, effective_limit)
                )
            finally:
                self._pacing.mark_done()

        success_count = sum(1 for r in results if r.success)
        fail_count = len(results) - success_count
        dispatch_logger.batch_complete(
            batch_id,
            success_count,
            fail_count,
            (time.monotonic() - start_time) * 1000,
        )

        if cancelled:
            message = f"Crawl cancelled after {len(results)} of {total} competitors"
        else:
            message = f"Started crawl jobs for {success_count} of {total} competitors"

        return BatchResult(
            success=True,
            message=message,
            batch_id=batch_id,
            success_count=success_count,
            fail_count=fail_count,
            cancelled=cancelled,
            results=results,
        )

    async def _start_one(
        self,
        batch_id: str,
        competitor: CompetitorEntry,
        limit: int,
    ) -> CompetitorCrawlResult:
        try:
            started: StartedJob = await asyncio.wait_for(
                self._invoker.start(competitor.id, limit),
                timeout=self._invoke_timeout,
            )
        except TimeoutError:
            return self._failed(
                batch_id,
                competitor,
                f"Timed out after {self._invoke_timeout}s",
                "TimeoutError",
            )
        except Exception as e:
            return self._failed(batch_id, competitor, _error_text(e), type(e).__name__)

        if not isinstance(started, StartedJob):
            return self._failed(
                batch_id,
                competitor,
                f"Invoker returned {type(started).__name__} instead of StartedJob",
                "MalformedResponse",
            )
        if started.error:
            return self._failed(batch_id, competitor, started.error, "InvokerError")
        if not started.job_id:
            return self._failed(
                batch_id,
                competitor,
                "Invoker returned no job id",
                "MalformedResponse",
            )

        dispatch_logger.competitor_started(
            batch_id, competitor.id, competitor.name, started.job_id
        )
        return CompetitorCrawlResult(
            competitor=competitor.name,
            competitor_id=competitor.id,
            success=True,
            job_id=started.job_id,
        )

    @staticmethod
    def _failed(
        batch_id: str,
        competitor: CompetitorEntry,
        error: str,
        error_type: str,
    ) -> CompetitorCrawlResult:
        dispatch_logger.competitor_failed(
            batch_id, competitor.id, competitor.name, error, error_type
        )
        return CompetitorCrawlResult(
            competitor=competitor.name,
            competitor_id=competitor.id,
            success=False,
            error=error,
        )
