"""Clients for external services."""

from crawl_orchestrator.integrations.scrape_provider import (
    ProviderJobStatus,
    ScrapeProviderClient,
    ScrapeProviderError,
    close_scrape_provider,
    get_scrape_provider,
    init_scrape_provider,
)

__all__ = [
    "ProviderJobStatus",
    "ScrapeProviderClient",
    "ScrapeProviderError",
    "close_scrape_provider",
    "get_scrape_provider",
    "init_scrape_provider",
]
