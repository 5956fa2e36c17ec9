"""Crawl job state machine and the crawl core's error model.

States and transitions:

    queued  -> running | failed
    running -> succeeded | failed
    succeeded, failed: terminal

Transitions are driven by the scrape provider. The core validates records
when it reads them and when the invoker writes a transition on the provider's
behalf.

Record invariant: completed_at is set exactly when the status is terminal,
a failed job carries a non-empty error_message, and
0 <= products_inserted <= products_found.
"""

from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Lifecycle states of a crawl job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# Vocabulary used by older rows and by the provider's own status field.
_STATUS_ALIASES: dict[str, JobStatus] = {
    "pending": JobStatus.QUEUED,
    "scraping": JobStatus.RUNNING,
    "processing": JobStatus.RUNNING,
    "completed": JobStatus.SUCCEEDED,
    "success": JobStatus.SUCCEEDED,
    "cancelled": JobStatus.FAILED,
    "error": JobStatus.FAILED,
}


class CrawlOrchestratorError(Exception):
    """Base exception for the crawl orchestration core."""

    pass


class DispatchConfigurationError(CrawlOrchestratorError):
    """Raised before any competitor is processed when storage or provider
    credentials are missing."""

    pass


class DirectoryReadError(CrawlOrchestratorError):
    """Raised when the list of active competitors cannot be read."""

    pass


class InvalidDispatchRequestError(CrawlOrchestratorError):
    """Raised when a dispatch request carries an unusable limit."""

    def __init__(self, field: str, value: Any, message: str) -> None:
        self.field = field
        self.value = value
        self.message = message
        super().__init__(f"Validation failed for '{field}': {message}")


class InvalidStatusRequestError(CrawlOrchestratorError):
    """Raised when a status lookup names neither a job nor a competitor."""

    def __init__(self, message: str = "jobId or competitorId required") -> None:
        self.message = message
        super().__init__(message)


class CrawlJobNotFoundError(CrawlOrchestratorError):
    """Raised when an operation needs a job that does not exist."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Crawl job not found: {job_id}")


class CrawlJobInvariantError(CrawlOrchestratorError):
    """Raised when a stored job violates the record invariant."""

    def __init__(self, job_id: str, violations: list[str]) -> None:
        self.job_id = job_id
        self.violations = violations
        super().__init__(
            f"Crawl job {job_id} is inconsistent: {'; '.join(violations)}"
        )


class InvalidTransitionError(CrawlOrchestratorError):
    """Raised when a status change is not allowed from the current status."""

    def __init__(self, job_id: str, current: str, target: str) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(
            f"Crawl job {job_id} cannot move from '{current}' to '{target}'"
        )


def parse_status(value: str | JobStatus) -> JobStatus:
    """Map a stored or provider-reported status onto JobStatus.

    Raises:
        ValueError: If the value is not a known status or alias
    """
    if isinstance(value, JobStatus):
        return value
    normalized = value.strip().lower()
    if normalized in _STATUS_ALIASES:
        return _STATUS_ALIASES[normalized]
    return JobStatus(normalized)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether current -> target is a legal transition."""
    return target in ALLOWED_TRANSITIONS[current]


def invariant_violations(
    status: JobStatus,
    completed_at: datetime | None,
    error_message: str | None,
    products_found: int,
    products_inserted: int,
) -> list[str]:
    """Return every way the given record breaks the job invariant."""
    violations: list[str] = []

    if status.is_terminal and completed_at is None:
        violations.append(f"status '{status.value}' requires completed_at")
    if not status.is_terminal and completed_at is not None:
        violations.append(f"status '{status.value}' must not have completed_at")
    has_error = bool(error_message and error_message.strip())
    if status == JobStatus.FAILED and not has_error:
        violations.append("failed job requires an error_message")
    if status != JobStatus.FAILED and has_error:
        violations.append(f"status '{status.value}' must not have an error_message")
    if products_found < 0 or products_inserted < 0:
        violations.append("product counts must be non-negative")
    if products_inserted > products_found:
        violations.append(
            f"products_inserted ({products_inserted}) exceeds "
            f"products_found ({products_found})"
        )

    return violations


def validate_job_record(
    job_id: str,
    status: JobStatus,
    completed_at: datetime | None,
    error_message: str | None,
    products_found: int,
    products_inserted: int,
) -> None:
    """Raise CrawlJobInvariantError if the record breaks the invariant."""
    violations = invariant_violations(
        status, completed_at, error_message, products_found, products_inserted
    )
    if violations:
        raise CrawlJobInvariantError(job_id, violations)
