"""Bulk crawl and crawl job status API endpoints.

- POST /api/v1/crawl/bulk - Start a crawl for every active competitor
- GET /api/v1/crawl/bulk/active - List batches still dispatching
- POST /api/v1/crawl/bulk/{batch_id}/cancel - Stop a batch between competitors
- POST /api/v1/crawl/jobs/status - Resolve a job by jobId or competitorId
- GET /api/v1/crawl/jobs - Recent jobs, newest first
- GET /api/v1/crawl/jobs/{job_id} - Get one job
- GET /api/v1/crawl/competitors/{competitor_id}/latest-job - Latest job for a competitor
- POST /api/v1/crawl/jobs/{job_id}/refresh - Sync a job with the scrape provider

Error Logging Requirements:
- Log all incoming requests with method, path, request_id
- Return structured error responses: {"success": false, "error": str, "code": str, "request_id": str}
- Log 4xx errors at WARNING, 5xx at ERROR
"""

from uuid import uuid4

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.core.database import get_session
from crawl_orchestrator.core.logging import get_logger
from crawl_orchestrator.integrations.scrape_provider import (
    ScrapeProviderClient,
    ScrapeProviderError,
    ScrapeProviderNotConfiguredError,
    get_scrape_provider,
)
from crawl_orchestrator.schemas.crawl import (
    ActiveBatchesResponse,
    BulkCrawlRequest,
    BulkCrawlResponse,
    CancelBatchResponse,
    CompetitorCrawlResultResponse,
    CrawlJobData,
    JobListResponse,
    JobStatusRequest,
    JobStatusResponse,
)
from crawl_orchestrator.services.competitor_directory import DatabaseCompetitorDirectory
from crawl_orchestrator.services.dispatch import (
    BatchDispatcher,
    BatchResult,
    batch_registry,
)
from crawl_orchestrator.services.job_state import (
    CrawlJobInvariantError,
    CrawlJobNotFoundError,
    DirectoryReadError,
    DispatchConfigurationError,
    InvalidDispatchRequestError,
    InvalidStatusRequestError,
    InvalidTransitionError,
)
from crawl_orchestrator.services.job_status import CrawlJobStatus, JobStatusResolver
from crawl_orchestrator.services.scrape_invoker import ProviderScrapeInvoker

logger = get_logger(__name__)

router = APIRouter()

JOB_NOT_FOUND = "Job not found"


def _get_request_id(request: Request) -> str:
    """Get request_id from request state."""
    return getattr(request.state, "request_id", "unknown")


def _error(status_code: int, error: str, code: str, request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "code": code,
            "request_id": request_id,
        },
    )


async def get_scrape_invoker(
    session: AsyncSession = Depends(get_session),
    provider: ScrapeProviderClient = Depends(get_scrape_provider),
) -> ProviderScrapeInvoker:
    return ProviderScrapeInvoker(session, provider)


async def get_batch_dispatcher(
    session: AsyncSession = Depends(get_session),
    invoker: ProviderScrapeInvoker = Depends(get_scrape_invoker),
) -> BatchDispatcher:
    return BatchDispatcher(
        directory=DatabaseCompetitorDirectory(session),
        invoker=invoker,
    )


def batch_response(batch: BatchResult) -> BulkCrawlResponse:
    return BulkCrawlResponse(
        success=batch.success,
        message=batch.message,
        success_count=batch.success_count,
        fail_count=batch.fail_count,
        results=[
            CompetitorCrawlResultResponse(**result.to_dict())
            for result in batch.results
        ],
        batch_id=batch.batch_id,
        cancelled=batch.cancelled,
    )


def _job_response(job: CrawlJobStatus) -> JobStatusResponse:
    return JobStatusResponse(success=True, data=CrawlJobData(**job.to_dict()))


def _invariant_error(
    e: CrawlJobInvariantError, request_id: str
) -> JSONResponse:
    logger.error(
        "Crawl job record is inconsistent",
        extra={
            "request_id": request_id,
            "job_id": e.job_id,
            "violations": e.violations,
        },
    )
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        str(e),
        "INVARIANT_VIOLATION",
        request_id,
    )


def _not_found(request_id: str, **context: str | None) -> JSONResponse:
    logger.warning(
        "Crawl job not found",
        extra={"request_id": request_id, **context},
    )
    return _error(
        status.HTTP_404_NOT_FOUND, JOB_NOT_FOUND, "NOT_FOUND", request_id
    )


# ---------------------------------------------------------------------------
# Bulk dispatch
# ---------------------------------------------------------------------------


@router.post(
    "/bulk",
    response_model=BulkCrawlResponse,
    response_model_exclude_none=True,
    summary="Crawl all active competitors",
    description=(
        "Start one scrape job per active competitor, in name order, paced. "
        "Per-competitor failures are reported in the results."
    ),
    responses={
        400: {"description": "Invalid limit"},
        500: {"description": "Configuration or directory error"},
    },
)
async def bulk_crawl(
    request: Request,
    data: BulkCrawlRequest | None = None,
    dispatcher: BatchDispatcher = Depends(get_batch_dispatcher),
) -> BulkCrawlResponse | JSONResponse:
    """Dispatch a crawl for every active competitor."""
    request_id = _get_request_id(request)
    requested_limit = data.limit if data is not None else None
    logger.info(
        "Bulk crawl request",
        extra={"request_id": request_id, "limit": requested_limit},
    )

    batch_id = str(uuid4())
    token = batch_registry.register(batch_id)
    try:
        batch = await dispatcher.dispatch(
            limit=requested_limit,
            cancel_token=token,
            batch_id=batch_id,
        )
    except InvalidDispatchRequestError as e:
        logger.warning(
            "Bulk crawl validation error",
            extra={
                "request_id": request_id,
                "field": e.field,
                "value": e.value,
                "error_message": e.message,
            },
        )
        return _error(
            status.HTTP_400_BAD_REQUEST, str(e), "VALIDATION_ERROR", request_id
        )
    except DispatchConfigurationError as e:
        logger.error(
            "Bulk crawl configuration error",
            extra={"request_id": request_id, "error_message": str(e)},
        )
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            str(e),
            "CONFIGURATION_ERROR",
            request_id,
        )
    except DirectoryReadError as e:
        logger.error(
            "Bulk crawl directory error",
            extra={"request_id": request_id, "error_message": str(e)},
        )
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            str(e),
            "DIRECTORY_ERROR",
            request_id,
        )
    finally:
        batch_registry.unregister(batch_id)

    return batch_response(batch)


@router.get(
    "/bulk/active",
    response_model=ActiveBatchesResponse,
    summary="List batches still dispatching",
)
async def list_active_batches() -> ActiveBatchesResponse:
    return ActiveBatchesResponse(batch_ids=batch_registry.active())


@router.post(
    "/bulk/{batch_id}/cancel",
    response_model=CancelBatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Cancel a running batch",
    description=(
        "The batch stops before its next competitor. A submission already "
        "in flight completes."
    ),
    responses={404: {"description": "Batch not running"}},
)
async def cancel_batch(
    request: Request,
    batch_id: str,
) -> CancelBatchResponse | JSONResponse:
    request_id = _get_request_id(request)
    if not batch_registry.cancel(batch_id, reason=f"Cancelled by request {request_id}"):
        logger.warning(
            "Cancel requested for unknown batch",
            extra={"request_id": request_id, "batch_id": batch_id},
        )
        return _error(
            status.HTTP_404_NOT_FOUND,
            f"Batch not running: {batch_id}",
            "NOT_FOUND",
            request_id,
        )

    logger.info(
        "Batch cancellation requested",
        extra={"request_id": request_id, "batch_id": batch_id},
    )
    return CancelBatchResponse(
        success=True,
        batch_id=batch_id,
        message="Cancellation requested",
    )


# ---------------------------------------------------------------------------
# Job status
# ---------------------------------------------------------------------------


@router.post(
    "/jobs/status",
    response_model=JobStatusResponse,
    summary="Resolve a crawl job's status",
    description="Look up by jobId, or the latest job for competitorId.",
    responses={
        400: {"description": "Neither jobId nor competitorId given"},
        404: {"description": "Job not found"},
    },
)
async def resolve_job_status(
    request: Request,
    data: JobStatusRequest,
    session: AsyncSession = Depends(get_session),
) -> JobStatusResponse | JSONResponse:
    request_id = _get_request_id(request)
    logger.debug(
        "Job status request",
        extra={
            "request_id": request_id,
            "job_id": data.job_id,
            "competitor_id": data.competitor_id,
        },
    )

    resolver = JobStatusResolver(session)
    try:
        job = await resolver.resolve(
            job_id=data.job_id,
            competitor_id=data.competitor_id,
        )
    except InvalidStatusRequestError as e:
        logger.warning(
            "Job status request invalid",
            extra={"request_id": request_id, "error_message": e.message},
        )
        return _error(
            status.HTTP_400_BAD_REQUEST, e.message, "VALIDATION_ERROR", request_id
        )
    except CrawlJobInvariantError as e:
        return _invariant_error(e, request_id)

    if job is None:
        return _not_found(
            request_id, job_id=data.job_id, competitor_id=data.competitor_id
        )
    return _job_response(job)


@router.get(
    "/jobs",
    response_model=JobListResponse,
    summary="List recent crawl jobs",
    responses={500: {"description": "A listed job record is inconsistent"}},
)
async def list_jobs(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    competitor_id: str | None = Query(None, alias="competitorId"),
    session: AsyncSession = Depends(get_session),
) -> JobListResponse | JSONResponse:
    try:
        jobs = await JobStatusResolver(session).list_recent(
            limit=limit, competitor_id=competitor_id
        )
    except CrawlJobInvariantError as e:
        return _invariant_error(e, _get_request_id(request))

    return JobListResponse(
        items=[CrawlJobData(**job.to_dict()) for job in jobs],
        total=len(jobs),
    )


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    summary="Get a crawl job",
    responses={404: {"description": "Job not found"}},
)
async def get_job(
    request: Request,
    job_id: str,
    session: AsyncSession = Depends(get_session),
) -> JobStatusResponse | JSONResponse:
    request_id = _get_request_id(request)
    try:
        job = await JobStatusResolver(session).resolve(job_id=job_id)
    except CrawlJobInvariantError as e:
        return _invariant_error(e, request_id)

    if job is None:
        return _not_found(request_id, job_id=job_id)
    return _job_response(job)


@router.get(
    "/competitors/{competitor_id}/latest-job",
    response_model=JobStatusResponse,
    summary="Get a competitor's most recent crawl job",
    responses={404: {"description": "Job not found"}},
)
async def get_latest_job(
    request: Request,
    competitor_id: str,
    session: AsyncSession = Depends(get_session),
) -> JobStatusResponse | JSONResponse:
    request_id = _get_request_id(request)
    try:
        job = await JobStatusResolver(session).resolve(competitor_id=competitor_id)
    except CrawlJobInvariantError as e:
        return _invariant_error(e, request_id)

    if job is None:
        return _not_found(request_id, competitor_id=competitor_id)
    return _job_response(job)


@router.post(
    "/jobs/{job_id}/refresh",
    response_model=JobStatusResponse,
    summary="Sync a crawl job with the scrape provider",
    responses={
        404: {"description": "Job not found"},
        409: {"description": "Provider status is not a legal transition"},
        502: {"description": "Provider error"},
        503: {"description": "Provider not configured"},
    },
)
async def refresh_job(
    request: Request,
    job_id: str,
    invoker: ProviderScrapeInvoker = Depends(get_scrape_invoker),
) -> JobStatusResponse | JSONResponse:
    request_id = _get_request_id(request)
    logger.info(
        "Job refresh request",
        extra={"request_id": request_id, "job_id": job_id},
    )

    try:
        job = await invoker.refresh(job_id)
    except CrawlJobNotFoundError:
        return _not_found(request_id, job_id=job_id)
    except CrawlJobInvariantError as e:
        return _invariant_error(e, request_id)
    except InvalidTransitionError as e:
        logger.warning(
            "Provider reported an illegal transition",
            extra={
                "request_id": request_id,
                "job_id": job_id,
                "current": e.current,
                "target": e.target,
            },
        )
        return _error(status.HTTP_409_CONFLICT, str(e), "INVALID_TRANSITION", request_id)
    except ScrapeProviderNotConfiguredError as e:
        logger.error(
            "Job refresh failed, provider not configured",
            extra={"request_id": request_id, "job_id": job_id},
        )
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            str(e),
            "CONFIGURATION_ERROR",
            request_id,
        )
    except ScrapeProviderError as e:
        logger.error(
            "Job refresh failed, provider error",
            extra={
                "request_id": request_id,
                "job_id": job_id,
                "error_type": type(e).__name__,
                "error_message": str(e),
            },
        )
        return _error(status.HTTP_502_BAD_GATEWAY, str(e), "PROVIDER_ERROR", request_id)

    return _job_response(job)
