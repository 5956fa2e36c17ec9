"""Repositories layer - Data access and persistence.

Repositories handle all database operations using SQLAlchemy.
They abstract the database implementation from the service layer.
"""

from crawl_orchestrator.repositories.competitor import CompetitorRepository
from crawl_orchestrator.repositories.crawl_job import CrawlJobRepository
from crawl_orchestrator.repositories.schedule import ScheduleRepository

__all__ = ["CompetitorRepository", "CrawlJobRepository", "ScheduleRepository"]
