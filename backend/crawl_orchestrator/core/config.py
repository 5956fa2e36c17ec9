"""Application configuration loaded from environment variables.

All configuration is via environment variables (or a local .env file).
No hardcoded URLs, ports, or credentials.
"""

from functools import lru_cache

from pydantic import Field, PostgresDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Competitor Crawl Orchestrator")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    port: int = Field(default=8000, description="Port to bind to")
    host: str = Field(default="0.0.0.0", description="Host to bind to")
    frontend_url: str | None = Field(
        default=None,
        description="Dashboard origin allowed by CORS (all origins when unset)",
    )

    # Database
    database_url: PostgresDsn = Field(
        ...,
        description="PostgreSQL connection string",
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size")
    db_max_overflow: int = Field(default=10, description="Max overflow connections")
    db_pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    db_slow_query_threshold_ms: int = Field(
        default=100, description="Threshold for slow query warnings (ms)"
    )
    db_connect_timeout: int = Field(
        default=60, description="Connection timeout in seconds (cold-start)"
    )
    db_command_timeout: int = Field(
        default=60, description="Command timeout in seconds"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format: json or text")

    # Scrape provider
    scrape_provider_api_url: str | None = Field(
        default=None,
        description="Scrape provider API base URL (e.g., https://scraper.internal)",
    )
    scrape_provider_api_token: str | None = Field(
        default=None,
        description="Bearer token for the scrape provider",
    )
    scrape_provider_timeout: float = Field(
        default=30.0, description="Scrape provider request timeout in seconds"
    )
    scrape_provider_max_retries: int = Field(
        default=3, description="Maximum retry attempts for scrape provider requests"
    )
    scrape_provider_retry_delay: float = Field(
        default=1.0, description="Base delay between retries in seconds"
    )
    scrape_provider_circuit_failure_threshold: int = Field(
        default=5, description="Failures before circuit opens"
    )
    scrape_provider_circuit_recovery_timeout: float = Field(
        default=60.0, description="Seconds before attempting recovery"
    )

    # Batch dispatch
    dispatch_default_limit: int = Field(
        default=50, description="Products requested per competitor when unset"
    )
    dispatch_max_limit: int = Field(
        default=100, description="Upper clamp for products per competitor"
    )
    dispatch_pacing_delay_seconds: float = Field(
        default=0.5, description="Minimum spacing between scrape submissions"
    )
    dispatch_invoke_timeout_seconds: float = Field(
        default=30.0, description="Timeout for a single scrape submission"
    )

    # Scheduler
    scheduler_enabled: bool = Field(
        default=True, description="Run the scheduled competitor crawl"
    )
    scheduler_misfire_grace_time: int = Field(
        default=300, description="Seconds a missed run may still start late"
    )
    scheduler_job_coalesce: bool = Field(
        default=True, description="Collapse missed runs into one"
    )
    scheduler_job_default_max_instances: int = Field(
        default=1, description="Concurrent runs allowed per scheduled job"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
