"""Models layer - SQLAlchemy ORM models.

All models inherit from the Base class defined in core.database.
"""

from crawl_orchestrator.core.database import Base
from crawl_orchestrator.models.competitor import Competitor
from crawl_orchestrator.models.crawl_history import CrawlHistory
from crawl_orchestrator.models.crawl_job import CrawlJob
from crawl_orchestrator.models.crawl_schedule import CrawlSchedule

__all__ = [
    "Base",
    "Competitor",
    "CrawlHistory",
    "CrawlJob",
    "CrawlSchedule",
]
