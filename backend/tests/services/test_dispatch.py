"""Tests for BatchDispatcher and BatchRegistry.

Tests cover:
- One result per active competitor, in directory (name) order
- Per-competitor failures are isolated and never stop the batch
- Submissions are sequential and paced
- Configuration and directory errors abort before any submission
- Limit defaulting, clamping and validation
- Submission timeouts and malformed invoker results
- Cooperative cancellation between competitors
"""

import asyncio
from typing import Any

import pytest

from conftest import FakeClock, FakeDirectory, FakeInvoker, entry
from crawl_orchestrator.services.dispatch import (
    NO_ACTIVE_COMPETITORS_MESSAGE,
    BatchDispatcher,
    BatchRegistry,
    CompetitorCrawlResult,
)
from crawl_orchestrator.services.job_state import (
    DirectoryReadError,
    DispatchConfigurationError,
    InvalidDispatchRequestError,
)
from crawl_orchestrator.services.pacing import CancellationToken, PacingPolicy
from crawl_orchestrator.services.scrape_invoker import StartedJob


def make_dispatcher(
    directory: FakeDirectory,
    invoker: Any,
    pacing: PacingPolicy,
    invoke_timeout: float = 5.0,
) -> BatchDispatcher:
    return BatchDispatcher(
        directory,
        invoker,
        pacing=pacing,
        invoke_timeout=invoke_timeout,
        default_limit=50,
        max_limit=100,
    )


class ClockedInvoker(FakeInvoker):
    """FakeInvoker whose submissions take `seconds` on a FakeClock."""

    def __init__(self, clock: FakeClock, seconds: float) -> None:
        super().__init__()
        self.clock = clock
        self.seconds = seconds
        self.windows: list[tuple[float, float]] = []

    async def start(self, competitor_id: str, limit: int) -> Any:
        began = self.clock()
        self.clock.advance(self.seconds)
        result = await super().start(competitor_id, limit)
        self.windows.append((began, self.clock()))
        return result


@pytest.fixture
def abc_directory() -> FakeDirectory:
    return FakeDirectory([entry("C"), entry("A"), entry("B")])


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


class TestDispatchFanOut:
    """Tests for the happy path and failure isolation."""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_batch(
        self, abc_directory: FakeDirectory, instant_pacing: PacingPolicy
    ) -> None:
        """B fails with 'rate limited'; A and C still get jobs."""
        invoker = FakeInvoker(outcomes={"id-b": RuntimeError("rate limited")})
        dispatcher = make_dispatcher(abc_directory, invoker, instant_pacing)

        result = await dispatcher.dispatch(limit=10)

        assert result.success is True
        assert result.success_count == 2
        assert result.fail_count == 1
        assert result.cancelled is False
        assert result.message == "Started crawl jobs for 2 of 3 competitors"
        assert result.results == [
            CompetitorCrawlResult("A", "id-a", True, job_id="j1"),
            CompetitorCrawlResult("B", "id-b", False, error="rate limited"),
            CompetitorCrawlResult("C", "id-c", True, job_id="j3"),
        ]

    @pytest.mark.asyncio
    async def test_competitors_processed_in_name_order(
        self, abc_directory: FakeDirectory, instant_pacing: PacingPolicy
    ) -> None:
        """The invoker sees competitors in the directory's order with the limit."""
        invoker = FakeInvoker()
        dispatcher = make_dispatcher(abc_directory, invoker, instant_pacing)

        await dispatcher.dispatch(limit=7)

        assert invoker.calls == [("id-a", 7), ("id-b", 7), ("id-c", 7)]

    @pytest.mark.asyncio
    async def test_counts_always_add_up(self, instant_pacing: PacingPolicy) -> None:
        """success_count + fail_count equals the number of results."""
        directory = FakeDirectory([entry(name) for name in "ABCDEF"])
        invoker = FakeInvoker(
            outcomes={
                "id-b": ValueError("bad url"),
                "id-d": StartedJob(error="Competitor not found"),
                "id-f": StartedJob(),
            }
        )
        dispatcher = make_dispatcher(directory, invoker, instant_pacing)

        result = await dispatcher.dispatch()

        assert len(result.results) == 6
        assert result.success_count + result.fail_count == 6
        assert result.success_count == 3
        for item in result.results:
            assert (item.job_id is not None) == item.success
            assert (item.error is not None) == (not item.success)

    @pytest.mark.asyncio
    async def test_empty_directory(self, instant_pacing: PacingPolicy) -> None:
        """No active competitors is a successful, empty batch."""
        invoker = FakeInvoker()
        dispatcher = make_dispatcher(FakeDirectory([]), invoker, instant_pacing)

        result = await dispatcher.dispatch()

        assert result.success is True
        assert result.message == NO_ACTIVE_COMPETITORS_MESSAGE
        assert result.results == []
        assert result.success_count == 0
        assert result.fail_count == 0
        assert invoker.calls == []

    @pytest.mark.asyncio
    async def test_result_to_dict_omits_missing_fields(self) -> None:
        ok = CompetitorCrawlResult("A", "id-a", True, job_id="j1")
        failed = CompetitorCrawlResult("B", "id-b", False, error="boom")

        assert ok.to_dict() == {
            "competitor": "A",
            "competitor_id": "id-a",
            "success": True,
            "job_id": "j1",
        }
        assert "job_id" not in failed.to_dict()
        assert failed.to_dict()["error"] == "boom"


# ---------------------------------------------------------------------------
# Pacing and concurrency
# ---------------------------------------------------------------------------


class TestDispatchPacing:
    """Tests for sequential, paced submission."""

    @pytest.mark.asyncio
    async def test_submissions_are_paced(
        self,
        abc_directory: FakeDirectory,
        fake_clock: FakeClock,
        instant_pacing: PacingPolicy,
    ) -> None:
        """Every submission after the first waits the pacing interval."""
        dispatcher = make_dispatcher(abc_directory, FakeInvoker(), instant_pacing)

        await dispatcher.dispatch()

        assert fake_clock.sleeps == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_failed_submissions_are_paced_too(
        self,
        abc_directory: FakeDirectory,
        fake_clock: FakeClock,
        instant_pacing: PacingPolicy,
    ) -> None:
        """A failure does not let the next submission skip the wait."""
        invoker = FakeInvoker(outcomes={"id-a": RuntimeError("boom")})
        dispatcher = make_dispatcher(abc_directory, invoker, instant_pacing)

        await dispatcher.dispatch()

        assert fake_clock.sleeps == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_rest_follows_slow_submission(
        self, fake_clock: FakeClock, instant_pacing: PacingPolicy
    ) -> None:
        """A submission longer than the interval still gets the full rest after it."""
        invoker = ClockedInvoker(fake_clock, seconds=0.6)
        dispatcher = make_dispatcher(
            FakeDirectory([entry("A"), entry("B")]), invoker, instant_pacing
        )

        await dispatcher.dispatch()

        (_, a_ended), (b_started, _) = invoker.windows
        assert b_started - a_ended >= 0.5
        assert fake_clock.sleeps == [pytest.approx(0.5)]

    @pytest.mark.asyncio
    async def test_never_more_than_one_in_flight(
        self, instant_pacing: PacingPolicy
    ) -> None:
        """Submissions never overlap, even when they are slow."""
        directory = FakeDirectory([entry("A"), entry("B"), entry("C")])
        invoker = FakeInvoker(delays={"id-a": 0.01, "id-b": 0.01, "id-c": 0.01})
        dispatcher = make_dispatcher(directory, invoker, instant_pacing)

        await dispatcher.dispatch()

        assert invoker.max_in_flight == 1


# ---------------------------------------------------------------------------
# Fatal errors
# ---------------------------------------------------------------------------


class TestDispatchFatalErrors:
    """Tests for errors that abort the whole batch."""

    @pytest.mark.asyncio
    async def test_unconfigured_invoker(
        self, abc_directory: FakeDirectory, instant_pacing: PacingPolicy
    ) -> None:
        """A missing provider configuration aborts before reading the directory."""
        invoker = FakeInvoker(available=False)
        dispatcher = make_dispatcher(abc_directory, invoker, instant_pacing)

        with pytest.raises(DispatchConfigurationError):
            await dispatcher.dispatch()

        assert abc_directory.calls == 0
        assert invoker.calls == []

    @pytest.mark.asyncio
    async def test_directory_failure(self, instant_pacing: PacingPolicy) -> None:
        """A directory error aborts with a descriptive DirectoryReadError."""
        directory = FakeDirectory(error=ConnectionError("connection refused"))
        invoker = FakeInvoker()
        dispatcher = make_dispatcher(directory, invoker, instant_pacing)

        with pytest.raises(DirectoryReadError) as exc_info:
            await dispatcher.dispatch()

        assert str(exc_info.value) == "Failed to fetch competitors: connection refused"
        assert invoker.calls == []


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


class TestNormalizeLimit:
    """Tests for limit handling."""

    @pytest.fixture
    def dispatcher(self, instant_pacing: PacingPolicy) -> BatchDispatcher:
        return make_dispatcher(FakeDirectory(), FakeInvoker(), instant_pacing)

    def test_default_when_absent(self, dispatcher: BatchDispatcher) -> None:
        assert dispatcher.normalize_limit(None) == 50

    def test_clamped_to_max(self, dispatcher: BatchDispatcher) -> None:
        assert dispatcher.normalize_limit(500) == 100

    def test_passes_through_in_range(self, dispatcher: BatchDispatcher) -> None:
        assert dispatcher.normalize_limit(1) == 1
        assert dispatcher.normalize_limit(100) == 100

    @pytest.mark.parametrize("value", [0, -5])
    def test_rejects_non_positive(self, dispatcher: BatchDispatcher, value: int) -> None:
        with pytest.raises(InvalidDispatchRequestError) as exc_info:
            dispatcher.normalize_limit(value)

        assert exc_info.value.field == "limit"
        assert exc_info.value.message == "Limit must be a positive integer"

    @pytest.mark.parametrize("value", ["10", 2.5, True])
    def test_rejects_non_integer(self, dispatcher: BatchDispatcher, value: Any) -> None:
        with pytest.raises(InvalidDispatchRequestError) as exc_info:
            dispatcher.normalize_limit(value)

        assert exc_info.value.message == "Limit must be an integer"

    @pytest.mark.asyncio
    async def test_invalid_limit_aborts_before_directory(
        self, abc_directory: FakeDirectory, instant_pacing: PacingPolicy
    ) -> None:
        dispatcher = make_dispatcher(abc_directory, FakeInvoker(), instant_pacing)

        with pytest.raises(InvalidDispatchRequestError):
            await dispatcher.dispatch(limit=0)

        assert abc_directory.calls == 0

    @pytest.mark.asyncio
    async def test_clamped_limit_reaches_invoker(
        self, instant_pacing: PacingPolicy
    ) -> None:
        invoker = FakeInvoker()
        dispatcher = make_dispatcher(FakeDirectory([entry("A")]), invoker, instant_pacing)

        await dispatcher.dispatch(limit=1000)

        assert invoker.calls == [("id-a", 100)]


# ---------------------------------------------------------------------------
# Timeouts and malformed results
# ---------------------------------------------------------------------------


class TestDispatchSubmissionFailures:
    """Tests for failures recorded against a single competitor."""

    @pytest.mark.asyncio
    async def test_timeout_is_isolated(
        self, abc_directory: FakeDirectory, instant_pacing: PacingPolicy
    ) -> None:
        """A hung submission times out and the batch moves on."""
        invoker = FakeInvoker(delays={"id-a": 1.0})
        dispatcher = make_dispatcher(
            abc_directory, invoker, instant_pacing, invoke_timeout=0.05
        )

        result = await dispatcher.dispatch()

        first = result.results[0]
        assert first.success is False
        assert first.error == "Timed out after 0.05s"
        assert [r.success for r in result.results[1:]] == [True, True]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("outcome", "expected_error"),
        [
            (None, "Invoker returned NoneType instead of StartedJob"),
            ({"job_id": "x"}, "Invoker returned dict instead of StartedJob"),
            (StartedJob(), "Invoker returned no job id"),
            (StartedJob(error="Competitor has no scrape URL"), "Competitor has no scrape URL"),
            (RuntimeError(), "RuntimeError"),
        ],
    )
    async def test_bad_outcomes_are_recorded(
        self,
        instant_pacing: PacingPolicy,
        outcome: Any,
        expected_error: str,
    ) -> None:
        """Malformed or error results become failed entries with a message."""
        invoker = FakeInvoker(outcomes={"id-a": outcome})
        dispatcher = make_dispatcher(
            FakeDirectory([entry("A"), entry("B")]), invoker, instant_pacing
        )

        result = await dispatcher.dispatch()

        assert result.results[0].success is False
        assert result.results[0].error == expected_error
        assert result.results[1].success is True


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellingInvoker(FakeInvoker):
    """Cancels the token while a given competitor's submission is in flight."""

    def __init__(self, token: CancellationToken, cancel_on: str) -> None:
        super().__init__()
        self.token = token
        self.cancel_on = cancel_on

    async def start(self, competitor_id: str, limit: int) -> Any:
        if competitor_id == self.cancel_on:
            self.token.cancel("user request")
        return await super().start(competitor_id, limit)


class TestDispatchCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_in_flight_submission_completes(
        self, abc_directory: FakeDirectory, instant_pacing: PacingPolicy
    ) -> None:
        """Cancelling during B lets B finish and skips C."""
        token = CancellationToken()
        invoker = CancellingInvoker(token, cancel_on="id-b")
        dispatcher = make_dispatcher(abc_directory, invoker, instant_pacing)

        result = await dispatcher.dispatch(cancel_token=token)

        assert result.cancelled is True
        assert result.success is True
        assert [r.competitor for r in result.results] == ["A", "B"]
        assert result.success_count == 2
        assert result.message == "Crawl cancelled after 2 of 3 competitors"
        assert [call[0] for call in invoker.calls] == ["id-a", "id-b"]

    @pytest.mark.asyncio
    async def test_cancelled_before_start(
        self, abc_directory: FakeDirectory, instant_pacing: PacingPolicy
    ) -> None:
        token = CancellationToken()
        token.cancel()
        invoker = FakeInvoker()
        dispatcher = make_dispatcher(abc_directory, invoker, instant_pacing)

        result = await dispatcher.dispatch(cancel_token=token)

        assert result.cancelled is True
        assert result.results == []
        assert invoker.calls == []


class TestBatchRegistry:
    """Tests for BatchRegistry."""

    def test_cancel_registered_batch(self) -> None:
        registry = BatchRegistry()
        token = registry.register("batch-1")

        assert registry.active() == ["batch-1"]
        assert registry.cancel("batch-1", "stop") is True
        assert token.cancelled is True
        assert token.reason == "stop"

    def test_cancel_unknown_batch(self) -> None:
        assert BatchRegistry().cancel("missing") is False

    def test_unregister(self) -> None:
        registry = BatchRegistry()
        registry.register("batch-1")

        registry.unregister("batch-1")
        registry.unregister("batch-1")

        assert registry.active() == []

    @pytest.mark.asyncio
    async def test_cancel_from_another_task(
        self, instant_pacing: PacingPolicy
    ) -> None:
        """A batch registered by one task can be stopped from another."""
        registry = BatchRegistry()
        token = registry.register("batch-1")
        directory = FakeDirectory([entry(name) for name in "ABCD"])
        invoker = FakeInvoker(delays={"id-a": 0.05})
        dispatcher = make_dispatcher(directory, invoker, instant_pacing)

        task = asyncio.create_task(
            dispatcher.dispatch(cancel_token=token, batch_id="batch-1")
        )
        await asyncio.sleep(0.01)
        registry.cancel("batch-1")
        result = await task

        assert result.cancelled is True
        assert [r.competitor for r in result.results] == ["A"]
