"""Scrape provider integration client with async support and circuit breaker.

The provider performs the actual page fetch and product extraction. This
client only submits jobs and reads their progress:

- POST /v1/jobs          {"url", "limit", "excludedCategories"} -> {"id"}
- GET  /v1/jobs/{id}     -> {"status", "productsFound", "productsInserted", "error"}

Features:
- Async HTTP client using httpx
- Circuit breaker for fault tolerance
- Retry logic with exponential backoff on timeouts, 5xx and 429
- Request/response logging per requirements
- Masks API tokens in all logs

ERROR LOGGING REQUIREMENTS:
- Log all outbound API calls with endpoint, method, timing
- Log request/response bodies at DEBUG level (truncate large responses)
- Log and handle: timeouts, rate limits (429), auth failures (401/403)
- Include retry attempt number in logs
- Mask API keys and tokens in all logs
- Log circuit breaker state changes
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import httpx

from crawl_orchestrator.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from crawl_orchestrator.core.config import get_settings
from crawl_orchestrator.core.logging import get_logger, scrape_provider_logger

logger = get_logger(__name__)

MAX_HONORED_RETRY_AFTER_SECONDS = 60


@dataclass
class ProviderJobStatus:
    """Progress of a job as reported by the provider."""

    upstream_job_id: str
    status: str
    products_found: int = 0
    products_inserted: int = 0
    error: str | None = None


class ScrapeProviderError(Exception):
    """Base exception for scrape provider errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class ScrapeProviderNotConfiguredError(ScrapeProviderError):
    """Raised when no provider URL is configured."""

    pass


class ScrapeProviderTimeoutError(ScrapeProviderError):
    """Raised when a request times out on every attempt."""

    pass


class ScrapeProviderRateLimitError(ScrapeProviderError):
    """Raised when rate limited (429)."""

    def __init__(
        self,
        message: str,
        retry_after: int | None = None,
        response_body: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, status_code=429, response_body=response_body)
        self.retry_after = retry_after


class ScrapeProviderAuthError(ScrapeProviderError):
    """Raised when authentication fails (401/403)."""

    pass


class ScrapeProviderCircuitOpenError(ScrapeProviderError):
    """Raised when the circuit breaker refuses the call."""

    pass


class ScrapeProviderResponseError(ScrapeProviderError):
    """Raised when the provider answers with an unusable body."""

    pass


def _parse_retry_after(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _json_or_none(response: httpx.Response) -> dict[str, Any] | None:
    if not response.content:
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _coerce_count(body: dict[str, Any], key: str) -> int:
    value = body.get(key, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ScrapeProviderResponseError(
            f"Provider field '{key}' is not a number: {value!r}",
            response_body=body,
        )
    return int(value)


class ScrapeProviderClient:
    """Async client for the scrape provider API."""

    def __init__(
        self,
        api_url: str | None = None,
        api_token: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Any = asyncio.sleep,
    ) -> None:
        """Initialize the provider client.

        Args:
            api_url: Provider base URL. Defaults to settings.
            api_token: Bearer token. Defaults to settings.
            timeout: Request timeout in seconds. Defaults to settings.
            max_retries: Maximum attempts per request. Defaults to settings.
            retry_delay: Base delay between retries. Defaults to settings.
            transport: Optional httpx transport (tests use MockTransport).
            sleep: Awaitable sleep used between retries.
        """
        settings = get_settings()

        self._api_url = (api_url or settings.scrape_provider_api_url or "").rstrip("/")
        self._api_token = api_token or settings.scrape_provider_api_token
        self._timeout = timeout or settings.scrape_provider_timeout
        self._max_retries = max_retries or settings.scrape_provider_max_retries
        self._retry_delay = (
            retry_delay
            if retry_delay is not None
            else settings.scrape_provider_retry_delay
        )
        self._transport = transport
        self._sleep = sleep

        self._circuit_breaker = CircuitBreaker(
            CircuitBreakerConfig(
                failure_threshold=settings.scrape_provider_circuit_failure_threshold,
                recovery_timeout=settings.scrape_provider_circuit_recovery_timeout,
            ),
            name="scrape_provider",
            on_state_change=self._log_circuit_change,
        )

        self._client: httpx.AsyncClient | None = None
        self._available = bool(self._api_url)

    @staticmethod
    def _log_circuit_change(
        previous: CircuitState, new: CircuitState, failure_count: int
    ) -> None:
        scrape_provider_logger.circuit_state_change(
            previous.value, new.value, failure_count
        )

    @property
    def available(self) -> bool:
        """Check if the provider is configured."""
        return self._available

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            if self._api_token:
                headers["Authorization"] = f"Bearer {self._api_token}"

            self._client = httpx.AsyncClient(
                base_url=self._api_url,
                headers=headers,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("Scrape provider client closed")

    async def _backoff(self, attempt: int, reason: str, **context: Any) -> None:
        delay = self._retry_delay * (2**attempt)
        logger.warning(
            f"Scrape provider request attempt {attempt + 1} {reason}, "
            f"retrying in {delay}s",
            extra={
                "attempt": attempt + 1,
                "max_retries": self._max_retries,
                "delay_seconds": delay,
                **context,
            },
        )
        await self._sleep(delay)

    async def _request(
        self,
        method: str,
        endpoint: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an HTTP request with retry logic and circuit breaker.

        Raises:
            ScrapeProviderNotConfiguredError: If no API URL is set
            ScrapeProviderCircuitOpenError: If circuit breaker is open
            ScrapeProviderTimeoutError: If every attempt timed out
            ScrapeProviderRateLimitError: If rate limited (429)
            ScrapeProviderAuthError: If authentication fails (401/403)
            ScrapeProviderError: For other errors
        """
        if not self._available:
            raise ScrapeProviderNotConfiguredError(
                "Scrape provider not configured (missing API URL)"
            )

        if not await self._circuit_breaker.can_execute():
            scrape_provider_logger.graceful_fallback(endpoint, "Circuit breaker open")
            raise ScrapeProviderCircuitOpenError("Circuit breaker is open")

        client = await self._get_client()
        last_error: ScrapeProviderError | None = None
        final_attempt = self._max_retries - 1

        for attempt in range(self._max_retries):
            start_time = time.monotonic()
            scrape_provider_logger.api_call_start(
                method, endpoint, retry_attempt=attempt
            )
            if json:
                scrape_provider_logger.request_body(endpoint, json)

            try:
                response = await client.request(method, endpoint, json=json)
            except httpx.TimeoutException:
                duration_ms = (time.monotonic() - start_time) * 1000
                scrape_provider_logger.timeout(endpoint, self._timeout)
                scrape_provider_logger.api_call_error(
                    method,
                    endpoint,
                    duration_ms,
                    None,
                    "Request timed out",
                    "TimeoutError",
                    retry_attempt=attempt,
                )
                await self._circuit_breaker.record_failure()
                last_error = ScrapeProviderTimeoutError(
                    f"Request timed out after {self._timeout}s"
                )
                if attempt < final_attempt:
                    await self._backoff(attempt, "timed out")
                    continue
                break
            except httpx.RequestError as e:
                duration_ms = (time.monotonic() - start_time) * 1000
                scrape_provider_logger.api_call_error(
                    method,
                    endpoint,
                    duration_ms,
                    None,
                    str(e),
                    type(e).__name__,
                    retry_attempt=attempt,
                )
                await self._circuit_breaker.record_failure()
                last_error = ScrapeProviderError(f"Request failed: {e}")
                if attempt < final_attempt:
                    await self._backoff(attempt, "failed", error=str(e))
                    continue
                break

            duration_ms = (time.monotonic() - start_time) * 1000
            status_code = response.status_code
            body = _json_or_none(response)

            if status_code == 429:
                retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                scrape_provider_logger.rate_limit(endpoint, retry_after=retry_after)
                await self._circuit_breaker.record_failure()
                if (
                    attempt < final_attempt
                    and retry_after
                    and retry_after <= MAX_HONORED_RETRY_AFTER_SECONDS
                ):
                    await self._sleep(retry_after)
                    continue
                raise ScrapeProviderRateLimitError(
                    "rate limited",
                    retry_after=retry_after,
                    response_body=body,
                )

            if status_code in (401, 403):
                scrape_provider_logger.auth_failure(
                    endpoint, status_code, token=self._api_token
                )
                scrape_provider_logger.api_call_error(
                    method,
                    endpoint,
                    duration_ms,
                    status_code,
                    "Authentication failed",
                    "AuthError",
                    retry_attempt=attempt,
                )
                await self._circuit_breaker.record_failure()
                raise ScrapeProviderAuthError(
                    f"Authentication failed ({status_code})",
                    status_code=status_code,
                )

            if status_code >= 500:
                error_msg = f"Server error ({status_code})"
                scrape_provider_logger.api_call_error(
                    method,
                    endpoint,
                    duration_ms,
                    status_code,
                    error_msg,
                    "ServerError",
                    retry_attempt=attempt,
                )
                await self._circuit_breaker.record_failure()
                if attempt < final_attempt:
                    await self._backoff(
                        attempt, "failed", status_code=status_code
                    )
                    continue
                raise ScrapeProviderError(
                    error_msg, status_code=status_code, response_body=body
                )

            if status_code >= 400:
                error_msg = (
                    str(body.get("error", body)) if body else "Client error"
                )
                scrape_provider_logger.api_call_error(
                    method,
                    endpoint,
                    duration_ms,
                    status_code,
                    error_msg,
                    "ClientError",
                    retry_attempt=attempt,
                )
                raise ScrapeProviderError(
                    f"Client error ({status_code}): {error_msg}",
                    status_code=status_code,
                    response_body=body,
                )

            if body is None:
                await self._circuit_breaker.record_success()
                raise ScrapeProviderResponseError(
                    f"Provider returned a non-object body from {endpoint}",
                    status_code=status_code,
                )

            scrape_provider_logger.api_call_success(
                method, endpoint, duration_ms, status_code
            )
            scrape_provider_logger.response_body(endpoint, body, duration_ms)
            await self._circuit_breaker.record_success()
            return body

        if last_error:
            raise last_error
        raise ScrapeProviderError("Request failed after all retries")

    async def start_scrape(
        self,
        url: str,
        limit: int,
        excluded_categories: list[str] | None = None,
    ) -> str:
        """Submit a scrape job.

        Args:
            url: Storefront URL to scrape
            limit: Maximum number of products to extract
            excluded_categories: Category names the provider should skip

        Returns:
            The provider's job id

        Raises:
            ScrapeProviderResponseError: If the response carries no job id
            ScrapeProviderError: On any other provider failure
        """
        payload: dict[str, Any] = {"url": url, "limit": limit}
        if excluded_categories:
            payload["excludedCategories"] = list(excluded_categories)

        body = await self._request("POST", "/v1/jobs", json=payload)
        upstream_id = body.get("id")
        if not isinstance(upstream_id, str | int) or isinstance(upstream_id, bool):
            raise ScrapeProviderResponseError(
                "Provider response is missing a job id",
                response_body=body,
            )
        upstream_id = str(upstream_id)
        if not upstream_id:
            raise ScrapeProviderResponseError(
                "Provider response is missing a job id",
                response_body=body,
            )

        logger.info(
            "Scrape job submitted",
            extra={"upstream_job_id": upstream_id, "url": url, "limit": limit},
        )
        return upstream_id

    async def get_job(self, upstream_job_id: str) -> ProviderJobStatus:
        """Read a job's progress from the provider.

        Raises:
            ScrapeProviderResponseError: If the body lacks a status or the
                counts are not numbers
            ScrapeProviderError: On any other provider failure
        """
        body = await self._request("GET", f"/v1/jobs/{upstream_job_id}")

        status = body.get("status")
        if not isinstance(status, str) or not status.strip():
            raise ScrapeProviderResponseError(
                "Provider response is missing a status",
                response_body=body,
            )
        error = body.get("error")

        return ProviderJobStatus(
            upstream_job_id=upstream_job_id,
            status=status,
            products_found=_coerce_count(body, "productsFound"),
            products_inserted=_coerce_count(body, "productsInserted"),
            error=str(error) if error else None,
        )

    async def health_check(self) -> bool:
        """Check if the provider API answers its health endpoint."""
        if not self._available:
            return False

        try:
            await self._request("GET", "/health")
            return True
        except ScrapeProviderError:
            return False


# Global scrape provider client instance
scrape_provider_client: ScrapeProviderClient | None = None


async def init_scrape_provider() -> ScrapeProviderClient:
    """Initialize the global scrape provider client."""
    global scrape_provider_client
    if scrape_provider_client is None:
        scrape_provider_client = ScrapeProviderClient()
        if scrape_provider_client.available:
            logger.info("Scrape provider client initialized")
        else:
            logger.info("Scrape provider not configured (missing API URL)")
    return scrape_provider_client


async def close_scrape_provider() -> None:
    """Close the global scrape provider client."""
    global scrape_provider_client
    if scrape_provider_client:
        await scrape_provider_client.close()
        scrape_provider_client = None


async def get_scrape_provider() -> ScrapeProviderClient:
    """Dependency for getting the scrape provider client.

    Usage:
        @router.post("/crawl/bulk")
        async def bulk_crawl(
            provider: ScrapeProviderClient = Depends(get_scrape_provider)
        ):
            ...
    """
    global scrape_provider_client
    if scrape_provider_client is None:
        await init_scrape_provider()
    return scrape_provider_client  # type: ignore[return-value]
