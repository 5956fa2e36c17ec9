"""API v1 router and endpoint organization."""

from fastapi import APIRouter

from crawl_orchestrator.api.v1.endpoints import crawl, schedule

router = APIRouter(prefix="/api/v1", tags=["v1"])

router.include_router(crawl.router, prefix="/crawl", tags=["Crawl"])
router.include_router(schedule.router, prefix="/crawl", tags=["Crawl Schedule"])
