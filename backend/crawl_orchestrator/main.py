"""FastAPI application entry point for the crawl orchestrator.

Deployment Requirements:
- Binds to PORT from environment variable
- Health endpoints under /health for platform health checks
- All logs to stdout

Error Logging Requirements:
- Log all incoming requests with method, path, request_id
- Log request body at DEBUG level (sensitive fields redacted)
- Log response status and timing for every request
- Return structured error responses:
  {"success": false, "error": str, "code": str, "request_id": str}
- Log 4xx errors at WARNING, 5xx at ERROR
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from crawl_orchestrator.api.v1 import router as api_v1_router
from crawl_orchestrator.core.config import get_settings
from crawl_orchestrator.core.database import db_manager, session_scope
from crawl_orchestrator.core.logging import get_logger, setup_logging
from crawl_orchestrator.core.scheduler import (
    InvalidCronExpressionError,
    scheduler_manager,
)
from crawl_orchestrator.integrations.scrape_provider import (
    close_scrape_provider,
    get_scrape_provider,
    init_scrape_provider,
)
from crawl_orchestrator.repositories.schedule import ScheduleRepository
from crawl_orchestrator.services.scheduled_crawl import run_scheduled_crawl

setup_logging()
logger = get_logger(__name__)

# Body keys containing any of these are logged as "****"
SENSITIVE_KEY_PARTS = ("password", "token", "secret", "api_key", "authorization")
BODYLESS_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
STATUS_MESSAGES = {
    logging.INFO: "Request completed",
    logging.WARNING: "Request error",
    logging.ERROR: "Request failed",
}


def sanitize_body(body: Any) -> Any:
    """Redact sensitive values, recursing into nested objects and lists."""
    if isinstance(body, list):
        return [sanitize_body(item) for item in body]
    if not isinstance(body, dict):
        return body
    return {
        key: "****"
        if any(part in key.lower() for part in SENSITIVE_KEY_PARTS)
        else sanitize_body(value)
        for key, value in body.items()
    }


def request_id_of(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def error_response(
    request: Request, status_code: int, error: str, code: str
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "code": code,
            "request_id": request_id_of(request),
        },
    )


def _level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with a request_id and log it with its timing."""

    async def _log_body(self, request: Request, request_id: str) -> None:
        body = await request.body()
        if not body:
            return
        try:
            logged: Any = sanitize_body(json.loads(body))
        except json.JSONDecodeError:
            logger.debug(
                "Request body (non-JSON)",
                extra={"request_id": request_id, "body_length": len(body)},
            )
            return
        logger.debug("Request body", extra={"request_id": request_id, "body": logged})

    async def dispatch(self, request: Request, call_next: Any) -> Any:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        context = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
        }

        logger.info(
            "Request started",
            extra={**context, "query_params": str(request.query_params) or None},
        )
        if request.method not in BODYLESS_METHODS and logger.isEnabledFor(
            logging.DEBUG
        ):
            await self._log_body(request, request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        level = _level_for_status(response.status_code)
        logger.log(
            level,
            STATUS_MESSAGES[level],
            extra={
                **context,
                "status_code": response.status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
            },
        )
        return response


async def register_crawl_schedule() -> None:
    """Register the scheduled crawl job from the stored schedule row."""
    try:
        async with session_scope() as session:
            schedule = await ScheduleRepository(session).get_or_create()
            is_enabled = schedule.is_enabled
            cron_expression = schedule.cron_expression
    except SQLAlchemyError as e:
        logger.error(
            "Could not load crawl schedule, scheduled crawl not registered",
            extra={"error_type": type(e).__name__, "error_message": str(e)},
        )
        return

    try:
        job = scheduler_manager.apply_crawl_schedule(
            run_scheduled_crawl,
            is_enabled=is_enabled,
            cron_expression=cron_expression,
        )
    except InvalidCronExpressionError as e:
        logger.error(
            "Stored crawl schedule has an invalid cron expression",
            extra={"cron_expression": e.expression, "reason": e.reason},
        )
        return

    if job is None:
        logger.info("Scheduled crawl not registered (disabled)")


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    """Start the database, provider client and scheduler; stop them on exit."""
    settings = get_settings()
    logger.info(
        "Starting crawl orchestrator",
        extra={
            "app_name": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
        },
    )

    db_manager.init_db()

    provider = await init_scrape_provider()
    if not provider.available:
        logger.warning(
            "Scrape provider not configured (missing SCRAPE_PROVIDER_API_URL)"
        )

    if scheduler_manager.start():
        await register_crawl_schedule()
    else:
        logger.info("Scheduler not started (disabled or error)")

    yield

    logger.info("Shutting down crawl orchestrator")
    scheduler_manager.stop(wait=False)
    await close_scrape_provider()
    await db_manager.close()


health_router = APIRouter(prefix="/health", tags=["Health"])


@health_router.get("")
async def health_check() -> dict[str, str]:
    """Liveness probe; does not touch dependencies."""
    return {"status": "ok"}


@health_router.get("/db")
async def database_health() -> dict[str, str | bool]:
    connected = await db_manager.check_connection()
    return {"status": "ok" if connected else "error", "database": connected}


@health_router.get("/scheduler")
async def scheduler_health() -> dict[str, Any]:
    return scheduler_manager.check_health()


@health_router.get("/integrations")
async def integrations_health() -> dict[str, Any]:
    """Scrape provider configuration and circuit breaker state."""
    provider = await get_scrape_provider()
    return {
        "scrape_provider": {
            "available": provider.available,
            "api_token_set": bool(get_settings().scrape_provider_api_token),
            "circuit_breaker": provider.circuit_breaker.state.value,
        },
    }


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url] if settings.frontend_url else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        error_msg = "; ".join(
            f"{'.'.join(str(part) for part in e['loc'])}: {e['msg']}"
            for e in exc.errors()
        )
        logger.warning(
            "Validation error",
            extra={"request_id": request_id_of(request), "error_message": error_msg},
        )
        return error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_msg,
            "VALIDATION_ERROR",
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            extra={
                "request_id": request_id_of(request),
                "error_type": type(exc).__name__,
                "error_message": str(exc),
            },
            exc_info=True,
        )
        return error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "An internal error occurred. Please try again later.",
            "INTERNAL_ERROR",
        )

    app.include_router(health_router)
    app.include_router(api_v1_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "crawl_orchestrator.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
