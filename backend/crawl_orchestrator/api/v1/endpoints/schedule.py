"""Crawl schedule and crawl history API endpoints.

- GET /api/v1/crawl/schedule - Current schedule settings and next run
- PUT /api/v1/crawl/schedule - Update schedule settings (re-registers the cron job)
- POST /api/v1/crawl/schedule/run - Run the scheduled crawl now
- GET /api/v1/crawl/history - Per-competitor outcomes of past runs

Error Logging Requirements:
- Log all incoming requests with method, path, request_id
- Return structured error responses: {"success": false, "error": str, "code": str, "request_id": str}
- Log 4xx errors at WARNING, 5xx at ERROR
"""

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.api.v1.endpoints.crawl import (
    batch_response,
    get_scrape_invoker,
)
from crawl_orchestrator.core.database import get_session
from crawl_orchestrator.core.logging import get_logger
from crawl_orchestrator.core.scheduler import (
    SCHEDULED_CRAWL_JOB_ID,
    InvalidCronExpressionError,
    SchedulerManager,
    get_scheduler,
    parse_cron,
)
from crawl_orchestrator.models.crawl_schedule import CrawlSchedule
from crawl_orchestrator.repositories.schedule import ScheduleRepository
from crawl_orchestrator.schemas.schedule import (
    CrawlHistoryEntry,
    CrawlHistoryListResponse,
    CrawlScheduleResponse,
    CrawlScheduleUpdate,
    ScheduledRunResponse,
)
from crawl_orchestrator.services.job_state import (
    DirectoryReadError,
    DispatchConfigurationError,
)
from crawl_orchestrator.services.scheduled_crawl import (
    TRIGGER_MANUAL,
    ScheduledCrawlService,
    run_scheduled_crawl,
)
from crawl_orchestrator.services.scrape_invoker import ProviderScrapeInvoker

logger = get_logger(__name__)

router = APIRouter()


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


def _schedule_response(
    schedule: CrawlSchedule, scheduler: SchedulerManager
) -> CrawlScheduleResponse:
    response = CrawlScheduleResponse.model_validate(schedule)
    job = scheduler.get_job(SCHEDULED_CRAWL_JOB_ID)
    response.next_run_at = job.next_run_time if job else None
    return response


@router.get(
    "/schedule",
    response_model=CrawlScheduleResponse,
    summary="Get the crawl schedule",
)
async def get_schedule(
    session: AsyncSession = Depends(get_session),
    scheduler: SchedulerManager = Depends(get_scheduler),
) -> CrawlScheduleResponse:
    schedule = await ScheduleRepository(session).get_or_create()
    return _schedule_response(schedule, scheduler)


@router.put(
    "/schedule",
    response_model=CrawlScheduleResponse,
    summary="Update the crawl schedule",
    responses={400: {"description": "Invalid cron expression"}},
)
async def update_schedule(
    request: Request,
    data: CrawlScheduleUpdate,
    session: AsyncSession = Depends(get_session),
    scheduler: SchedulerManager = Depends(get_scheduler),
) -> CrawlScheduleResponse | JSONResponse:
    request_id = _get_request_id(request)
    update_fields = data.model_dump(exclude_none=True)
    logger.info(
        "Update crawl schedule request",
        extra={"request_id": request_id, "update_fields": sorted(update_fields)},
    )

    if data.cron_expression is not None:
        try:
            parse_cron(data.cron_expression)
        except InvalidCronExpressionError as e:
            logger.warning(
                "Crawl schedule validation error",
                extra={
                    "request_id": request_id,
                    "field": "cron_expression",
                    "value": e.expression,
                    "reason": e.reason,
                },
            )
            return _error(
                status.HTTP_400_BAD_REQUEST, str(e), "VALIDATION_ERROR", request_id
            )

    repository = ScheduleRepository(session)
    schedule = await repository.get_or_create()
    updated = await repository.update(schedule.id, **update_fields)
    if updated is None:
        logger.error(
            "Crawl schedule missing after get_or_create",
            extra={"request_id": request_id, "schedule_id": schedule.id},
        )
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Crawl schedule disappeared during update",
            "INTERNAL_ERROR",
            request_id,
        )
    await session.commit()

    scheduler.apply_crawl_schedule(
        run_scheduled_crawl,
        is_enabled=updated.is_enabled,
        cron_expression=updated.cron_expression,
    )
    return _schedule_response(updated, scheduler)


@router.post(
    "/schedule/run",
    response_model=ScheduledRunResponse,
    response_model_exclude_none=True,
    summary="Run the scheduled crawl now",
    description=(
        "Runs with the schedule's limit and pacing, even if the schedule is "
        "disabled, and records crawl history."
    ),
    responses={500: {"description": "Configuration or directory error"}},
)
async def run_schedule_now(
    request: Request,
    session: AsyncSession = Depends(get_session),
    invoker: ProviderScrapeInvoker = Depends(get_scrape_invoker),
) -> ScheduledRunResponse | JSONResponse:
    request_id = _get_request_id(request)
    logger.info("Manual scheduled crawl request", extra={"request_id": request_id})

    service = ScheduledCrawlService(session, invoker)
    try:
        result = await service.run(TRIGGER_MANUAL)
    except DispatchConfigurationError as e:
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            str(e),
            "CONFIGURATION_ERROR",
            request_id,
        )
    except DirectoryReadError as e:
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            str(e),
            "DIRECTORY_ERROR",
            request_id,
        )

    batch = result.batch
    return ScheduledRunResponse(
        success=True,
        skipped=result.skipped,
        trigger_type=result.trigger_type,
        message=batch.message if batch else (result.reason or ""),
        batch=batch_response(batch) if batch else None,
    )


@router.get(
    "/history",
    response_model=CrawlHistoryListResponse,
    summary="List crawl history",
)
async def list_history(
    limit: int = Query(50, ge=1, le=500),
    competitor_id: str | None = Query(None, alias="competitorId"),
    session: AsyncSession = Depends(get_session),
) -> CrawlHistoryListResponse:
    entries = await ScheduleRepository(session).list_history(
        limit=limit, competitor_id=competitor_id
    )
    return CrawlHistoryListResponse(
        items=[CrawlHistoryEntry.model_validate(entry) for entry in entries],
        total=len(entries),
    )
