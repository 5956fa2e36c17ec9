"""APScheduler setup for the recurring crawl.

The scheduler runs on the application's event loop (AsyncIOScheduler) so the
scheduled crawl can use the same async sessions and provider client as the
API. Jobs live in the in-memory job store; the crawl job is registered at
startup from the stored crawl_schedule row and re-registered whenever that
row changes.

ERROR LOGGING REQUIREMENTS:
- Log job execution errors with full context
- Log missed job executions at WARNING level
- Log scheduler lifecycle events at INFO level
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from apscheduler.events import (
    EVENT_ALL,
    EVENT_JOB_ADDED,
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    EVENT_JOB_REMOVED,
    EVENT_SCHEDULER_SHUTDOWN,
    EVENT_SCHEDULER_STARTED,
    SchedulerEvent,
)
from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from crawl_orchestrator.core.config import get_settings
from crawl_orchestrator.core.logging import get_logger, scheduler_logger

logger = get_logger(__name__)

SCHEDULED_CRAWL_JOB_ID = "scheduled_crawl"


class SchedulerState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"


@dataclass
class JobInfo:
    """Snapshot of a registered job."""

    id: str
    name: str | None
    trigger: str
    next_run_time: datetime | None

    @classmethod
    def from_job(cls, job: Job) -> "JobInfo":
        return cls(
            id=job.id,
            name=job.name,
            trigger=str(job.trigger),
            next_run_time=job.next_run_time,
        )


class SchedulerServiceError(Exception):
    """Base exception for scheduler service errors."""

    pass


class InvalidCronExpressionError(SchedulerServiceError):
    """Raised when a cron expression cannot be parsed."""

    def __init__(self, expression: str, reason: str) -> None:
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid cron expression '{expression}': {reason}")


def parse_cron(expression: str) -> CronTrigger:
    """Build a UTC CronTrigger from a 5-field crontab expression.

    Raises:
        InvalidCronExpressionError: If the expression is malformed
    """
    try:
        return CronTrigger.from_crontab(expression, timezone="UTC")
    except ValueError as e:
        raise InvalidCronExpressionError(expression, str(e)) from e


class SchedulerManager:
    """Owns the application's AsyncIOScheduler."""

    def __init__(self) -> None:
        self._scheduler: AsyncIOScheduler | None = None
        self._state: SchedulerState = SchedulerState.STOPPED

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    def _on_event(self, event: SchedulerEvent) -> None:
        """Forward scheduler and job events to scheduler_logger."""
        code = event.code
        if code == EVENT_SCHEDULER_STARTED:
            scheduler_logger.scheduler_start(len(self.get_jobs()))
        elif code == EVENT_SCHEDULER_SHUTDOWN:
            scheduler_logger.scheduler_stop(graceful=True)
        elif code == EVENT_JOB_ADDED:
            info = self.get_job(event.job_id)
            scheduler_logger.job_added(
                job_id=event.job_id,
                job_name=info.name if info else None,
                trigger=info.trigger if info else "unknown",
                next_run=(
                    info.next_run_time.isoformat()
                    if info and info.next_run_time
                    else None
                ),
            )
        elif code == EVENT_JOB_REMOVED:
            scheduler_logger.job_removed(job_id=event.job_id)
        elif code == EVENT_JOB_EXECUTED:
            scheduler_logger.job_execution_success(
                job_id=event.job_id, result=event.retval
            )
        elif code == EVENT_JOB_ERROR:
            scheduler_logger.job_execution_error(
                job_id=event.job_id,
                error=str(event.exception),
                error_type=type(event.exception).__name__,
            )
        elif code == EVENT_JOB_MISSED:
            scheduler_logger.job_missed(
                job_id=event.job_id,
                scheduled_time=(
                    event.scheduled_run_time.isoformat()
                    if event.scheduled_run_time
                    else "unknown"
                ),
                misfire_grace_time=get_settings().scheduler_misfire_grace_time,
            )

    def start(self) -> bool:
        """Create and start the scheduler on the running event loop.

        Returns:
            True if the scheduler is running afterwards.
        """
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler is disabled via configuration")
            return False
        if self.is_running:
            return True

        scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": settings.scheduler_job_coalesce,
                "max_instances": settings.scheduler_job_default_max_instances,
                "misfire_grace_time": settings.scheduler_misfire_grace_time,
            },
            timezone="UTC",
        )
        self._scheduler = scheduler
        scheduler.add_listener(self._on_event, EVENT_ALL)
        try:
            scheduler.start()
        except Exception as e:
            logger.error(
                "Failed to start scheduler",
                extra={"error_type": type(e).__name__, "error_message": str(e)},
                exc_info=True,
            )
            self._scheduler = None
            return False

        self._state = SchedulerState.RUNNING
        return True

    def stop(self, wait: bool = False) -> None:
        """Shut the scheduler down; `wait` lets running jobs finish first."""
        if self._scheduler is None or not self.is_running:
            return

        self._state = SchedulerState.SHUTTING_DOWN
        try:
            self._scheduler.shutdown(wait=wait)
        except Exception as e:
            logger.error(
                "Error during scheduler shutdown",
                extra={"error_type": type(e).__name__, "error_message": str(e)},
                exc_info=True,
            )
        finally:
            self._scheduler = None
            self._state = SchedulerState.STOPPED

    def add_cron_job(
        self,
        func: Callable[..., Any],
        cron_expression: str,
        job_id: str,
        name: str | None = None,
    ) -> str | None:
        """Add or replace a cron-triggered job.

        The expression is validated even when the scheduler is stopped.

        Returns:
            Job ID, or None if the scheduler is not running.

        Raises:
            InvalidCronExpressionError: If the expression is malformed
        """
        trigger = parse_cron(cron_expression)
        if self._scheduler is None:
            scheduler_logger.scheduler_not_available(
                operation="add_cron_job", reason="Scheduler is not running"
            )
            return None

        job = self._scheduler.add_job(
            func, trigger=trigger, id=job_id, name=name, replace_existing=True
        )
        return str(job.id)

    def remove_job(self, job_id: str) -> bool:
        """Remove a job; False if there was nothing to remove."""
        if self._scheduler is None or self._scheduler.get_job(job_id) is None:
            return False
        self._scheduler.remove_job(job_id)
        return True

    def get_job(self, job_id: str) -> JobInfo | None:
        job = self._scheduler.get_job(job_id) if self._scheduler else None
        return JobInfo.from_job(job) if job is not None else None

    def get_jobs(self) -> list[JobInfo]:
        if self._scheduler is None:
            return []
        return [JobInfo.from_job(job) for job in self._scheduler.get_jobs()]

    def apply_crawl_schedule(
        self,
        func: Callable[..., Any],
        is_enabled: bool,
        cron_expression: str,
    ) -> JobInfo | None:
        """Register, replace or remove the scheduled crawl job.

        Returns:
            The registered job, or None when disabled or not running.

        Raises:
            InvalidCronExpressionError: If the expression is malformed
        """
        if not is_enabled:
            self.remove_job(SCHEDULED_CRAWL_JOB_ID)
            return None

        job_id = self.add_cron_job(
            func,
            cron_expression,
            job_id=SCHEDULED_CRAWL_JOB_ID,
            name="Scheduled competitor crawl",
        )
        return self.get_job(job_id) if job_id else None

    def check_health(self) -> dict[str, Any]:
        jobs = self.get_jobs()
        if self._scheduler is None:
            status = "not_initialized"
        else:
            status = "ok" if self.is_running else "degraded"
        return {
            "status": status,
            "running": self.is_running,
            "state": self._state.value,
            "job_count": len(jobs),
        }


scheduler_manager = SchedulerManager()


def get_scheduler() -> SchedulerManager:
    return scheduler_manager
