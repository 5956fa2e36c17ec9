"""Structured logging configuration.

All logs go to stdout for the platform log collector to capture.
Uses JSON format for structured logging in production.

ERROR LOGGING REQUIREMENTS:
- Database connection errors with masked connection string
- Slow queries (>100ms) at WARNING level
- Transaction failures with rollback context
- Outbound scrape provider calls with endpoint, method, timing
- Per-competitor dispatch outcomes with competitor_id and batch_id
- Scheduler lifecycle and job execution events
"""

import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

from pythonjsonlogger import jsonlogger

from crawl_orchestrator.core.config import get_settings

_PASSWORD_IN_DSN = re.compile(r"(://[^:/@]+:)([^@]+)(@)")
_QUIET_LIBRARIES = ("uvicorn.access", "httpx", "apscheduler")


class CustomJsonFormatter(jsonlogger.JsonFormatter):  # type: ignore[name-defined]
    """JSON formatter that stamps UTC time, level and logger name."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.update(
            timestamp=datetime.now(UTC).isoformat(),
            level=record.levelname,
            logger=record.name,
        )
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


def mask_connection_string(conn_str: str) -> str:
    """Hide the password in a user:password@host DSN."""
    return _PASSWORD_IN_DSN.sub(r"\1****\3", conn_str) if conn_str else ""


def mask_token(token: str | None) -> str | None:
    """Keep only the last four characters of an API token."""
    if not token:
        return None
    return "****" if len(token) <= 4 else "****" + token[-4:]


def setup_logging() -> None:
    """Route every logger to stdout, as JSON or plain text per settings."""
    settings = get_settings()

    formatter: logging.Formatter = (
        CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
        if settings.log_format == "json"
        else logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level.upper())

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class _StructuredLogger:
    """Named logger whose events carry their fields as `extra`."""

    name = "crawl_orchestrator"

    def __init__(self) -> None:
        self.logger = get_logger(self.name)

    def _log(self, level: int, message: str, **fields: Any) -> None:
        self.logger.log(level, message, extra=fields)


class DatabaseLogger(_StructuredLogger):
    """Connection, slow query, transaction and migration events."""

    name = "database"

    def connection_error(self, error: Exception, connection_string: str) -> None:
        self._log(
            logging.ERROR,
            "Database connection failed",
            connection_string=mask_connection_string(connection_string),
            error_type=type(error).__name__,
            error_message=str(error),
        )

    def slow_query(
        self, query: str, duration_ms: float, table: str | None = None
    ) -> None:
        self._log(
            logging.WARNING,
            "Slow query detected",
            query=query[:500],
            duration_ms=round(duration_ms, 2),
            table=table,
        )

    def transaction_failure(
        self, error: Exception, table: str | None = None, context: str | None = None
    ) -> None:
        self._log(
            logging.ERROR,
            "Transaction failed, rolling back",
            table=table,
            rollback_context=context,
            error_type=type(error).__name__,
            error_message=str(error),
        )

    def migration_start(self, version: str, description: str) -> None:
        self._log(
            logging.INFO,
            "Starting database migration",
            migration_version=version,
            description=description,
        )

    def migration_end(self, version: str, success: bool) -> None:
        self._log(
            logging.INFO if success else logging.ERROR,
            "Database migration completed",
            migration_version=version,
            success=success,
        )


db_logger = DatabaseLogger()


class ScrapeProviderLogger(_StructuredLogger):
    """Outbound calls to the scrape provider.

    Calls and bodies are logged at DEBUG; timeouts, 429s, auth failures
    and circuit changes at WARNING; failed calls at WARNING for 4xx and
    ERROR otherwise. Tokens are masked.
    """

    name = "scrape_provider"
    max_value_length = 500

    def api_call_start(
        self, method: str, endpoint: str, retry_attempt: int = 0
    ) -> None:
        self._log(
            logging.DEBUG,
            f"Scrape provider API call: {method} {endpoint}",
            method=method,
            endpoint=endpoint,
            retry_attempt=retry_attempt,
        )

    def api_call_success(
        self, method: str, endpoint: str, duration_ms: float, status_code: int
    ) -> None:
        self._log(
            logging.DEBUG,
            f"Scrape provider API call completed: {method} {endpoint}",
            method=method,
            endpoint=endpoint,
            status_code=status_code,
            duration_ms=round(duration_ms, 2),
            success=True,
        )

    def api_call_error(
        self,
        method: str,
        endpoint: str,
        duration_ms: float,
        status_code: int | None,
        error: str,
        error_type: str,
        retry_attempt: int = 0,
    ) -> None:
        client_side = status_code is not None and 400 <= status_code < 500
        self._log(
            logging.WARNING if client_side else logging.ERROR,
            f"Scrape provider API call failed: {method} {endpoint}",
            method=method,
            endpoint=endpoint,
            status_code=status_code,
            duration_ms=round(duration_ms, 2),
            error=error,
            error_type=error_type,
            retry_attempt=retry_attempt,
            success=False,
        )

    def timeout(self, endpoint: str, timeout_seconds: float) -> None:
        self._log(
            logging.WARNING,
            "Scrape provider request timeout",
            endpoint=endpoint,
            timeout_seconds=timeout_seconds,
        )

    def rate_limit(self, endpoint: str, retry_after: int | None = None) -> None:
        self._log(
            logging.WARNING,
            "Scrape provider rate limit hit (429)",
            endpoint=endpoint,
            retry_after_seconds=retry_after,
        )

    def auth_failure(
        self, endpoint: str, status_code: int, token: str | None = None
    ) -> None:
        self._log(
            logging.WARNING,
            f"Scrape provider authentication failed ({status_code})",
            endpoint=endpoint,
            status_code=status_code,
            api_token=mask_token(token),
        )

    def request_body(self, endpoint: str, body: dict[str, Any]) -> None:
        self._log(
            logging.DEBUG,
            "Scrape provider request body",
            endpoint=endpoint,
            request_body=self._shorten(body),
        )

    def response_body(
        self, endpoint: str, body: dict[str, Any], duration_ms: float
    ) -> None:
        self._log(
            logging.DEBUG,
            "Scrape provider response body",
            endpoint=endpoint,
            response_body=self._shorten(body),
            duration_ms=round(duration_ms, 2),
        )

    def _shorten(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {key: self._shorten(item) for key, item in value.items()}
        if isinstance(value, list) and len(value) > 10:
            return f"[list with {len(value)} items]"
        if isinstance(value, str) and len(value) > self.max_value_length:
            return f"{value[: self.max_value_length]}... ({len(value)} chars)"
        return value

    def circuit_state_change(
        self, previous_state: str, new_state: str, failure_count: int
    ) -> None:
        self._log(
            logging.WARNING,
            "Scrape provider circuit breaker state changed",
            previous_state=previous_state,
            new_state=new_state,
            failure_count=failure_count,
        )

    def graceful_fallback(self, operation: str, reason: str) -> None:
        """A call refused locally, without reaching the provider."""
        self._log(
            logging.INFO,
            "Scrape provider unavailable, request refused",
            operation=operation,
            reason=reason,
        )


scrape_provider_logger = ScrapeProviderLogger()


class DispatchLogger(_StructuredLogger):
    """Batch dispatch events, each tagged with its batch_id."""

    name = "dispatch"

    def batch_start(self, batch_id: str, competitor_count: int, limit: int) -> None:
        self._log(
            logging.INFO,
            f"Found {competitor_count} active competitors",
            batch_id=batch_id,
            competitor_count=competitor_count,
            limit=limit,
        )

    def competitor_start(
        self, batch_id: str, competitor_id: str, competitor_name: str, position: int
    ) -> None:
        self._log(
            logging.INFO,
            f"Starting crawl for {competitor_name}",
            batch_id=batch_id,
            competitor_id=competitor_id,
            competitor_name=competitor_name,
            position=position,
        )

    def competitor_started(
        self, batch_id: str, competitor_id: str, competitor_name: str, job_id: str
    ) -> None:
        self._log(
            logging.INFO,
            f"Successfully started crawl for {competitor_name}",
            batch_id=batch_id,
            competitor_id=competitor_id,
            job_id=job_id,
        )

    def competitor_failed(
        self,
        batch_id: str,
        competitor_id: str,
        competitor_name: str,
        error: str,
        error_type: str,
    ) -> None:
        self._log(
            logging.WARNING,
            f"Failed to start crawl for {competitor_name}",
            batch_id=batch_id,
            competitor_id=competitor_id,
            error=error,
            error_type=error_type,
        )

    def batch_cancelled(self, batch_id: str, processed: int, total: int) -> None:
        self._log(
            logging.WARNING,
            "Bulk crawl cancelled",
            batch_id=batch_id,
            processed=processed,
            total=total,
        )

    def batch_complete(
        self, batch_id: str, success_count: int, fail_count: int, duration_ms: float
    ) -> None:
        self._log(
            logging.INFO,
            f"Bulk crawl complete: {success_count} started, {fail_count} failed",
            batch_id=batch_id,
            success_count=success_count,
            fail_count=fail_count,
            duration_ms=round(duration_ms, 2),
        )


dispatch_logger = DispatchLogger()


class SchedulerLogger(_StructuredLogger):
    """APScheduler lifecycle and job execution events."""

    name = "scheduler"

    def scheduler_start(self, job_count: int) -> None:
        self._log(logging.INFO, "Scheduler started", job_count=job_count)

    def scheduler_stop(self, graceful: bool) -> None:
        self._log(logging.INFO, "Scheduler stopped", graceful=graceful)

    def job_added(
        self,
        job_id: str,
        job_name: str | None,
        trigger: str,
        next_run: str | None = None,
    ) -> None:
        self._log(
            logging.INFO,
            "Job added to scheduler",
            job_id=job_id,
            job_name=job_name,
            trigger=trigger,
            next_run=next_run,
        )

    def job_removed(self, job_id: str) -> None:
        self._log(logging.INFO, "Job removed from scheduler", job_id=job_id)

    def job_execution_success(self, job_id: str, result: Any = None) -> None:
        self._log(
            logging.INFO,
            "Job execution completed",
            job_id=job_id,
            success=True,
            result=str(result)[:200] if result else None,
        )

    def job_execution_error(self, job_id: str, error: str, error_type: str) -> None:
        self._log(
            logging.ERROR,
            "Job execution failed",
            job_id=job_id,
            success=False,
            error=error,
            error_type=error_type,
        )

    def job_missed(
        self, job_id: str, scheduled_time: str, misfire_grace_time: int
    ) -> None:
        self._log(
            logging.WARNING,
            "Job execution missed",
            job_id=job_id,
            scheduled_time=scheduled_time,
            misfire_grace_time=misfire_grace_time,
        )

    def scheduler_not_available(self, operation: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "Scheduler not available",
            operation=operation,
            reason=reason,
        )


scheduler_logger = SchedulerLogger()
