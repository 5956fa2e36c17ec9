"""Competitor directory: the dispatcher's source of active competitors."""

from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.core.logging import get_logger
from crawl_orchestrator.repositories.competitor import CompetitorRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class CompetitorEntry:
    """An active competitor as seen by the dispatcher."""

    id: str
    name: str
    url: str
    excluded_categories: tuple[str, ...] = field(default_factory=tuple)


class CompetitorDirectory(Protocol):
    """Anything that can list active competitors ordered by name."""

    async def list_active(self) -> list[CompetitorEntry]: ...


class DatabaseCompetitorDirectory:
    """CompetitorDirectory backed by the competitors table."""

    def __init__(self, session: AsyncSession) -> None:
        self._repository = CompetitorRepository(session)

    async def list_active(self) -> list[CompetitorEntry]:
        competitors = await self._repository.list_active()
        entries = [
            CompetitorEntry(
                id=competitor.id,
                name=competitor.name,
                url=competitor.scrape_url,
                excluded_categories=tuple(competitor.excluded_categories or ()),
            )
            for competitor in competitors
        ]
        logger.debug(
            "Loaded active competitors",
            extra={"count": len(entries)},
        )
        return entries
