"""Async database engine and session handling for the crawl tables.

Request handlers get a session from `get_session`; scheduled crawls, which
run outside any request, use `session_scope`. Both commit on success, roll
back on error and report slow or failed transactions through `db_logger`.
"""

import re
import time
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from crawl_orchestrator.core.config import get_settings
from crawl_orchestrator.core.logging import db_logger, get_logger

logger = get_logger(__name__)

_ASYNC_SCHEMES = ("postgres://", "postgresql://")
_TABLE_IN_ERROR = re.compile(
    r"\b(competitors|crawl_jobs|crawl_schedule|crawl_history)\b", re.IGNORECASE
)


class Base(DeclarativeBase):
    pass


def to_async_url(db_url: str) -> str:
    """Rewrite a plain postgres URL to use the asyncpg driver."""
    for scheme in _ASYNC_SCHEMES:
        if db_url.startswith(scheme):
            return "postgresql+asyncpg://" + db_url[len(scheme) :]
    return db_url


def table_from_error(error: Exception) -> str | None:
    """Name of the crawl table an error message mentions, if any."""
    match = _TABLE_IN_ERROR.search(str(error))
    return match.group(1).lower() if match else None


class DatabaseManager:
    """Owns the engine and session factory for the process."""

    def __init__(self) -> None:
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    def _require_init(self) -> None:
        if self._engine is None or self._session_factory is None:
            raise RuntimeError("DatabaseManager.init_db() has not been called")

    @property
    def engine(self) -> AsyncEngine:
        self._require_init()
        assert self._engine is not None
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        self._require_init()
        assert self._session_factory is not None
        return self._session_factory

    def init_db(self) -> None:
        """Create the engine from settings.

        Production connections require TLS; asyncpg spells this `ssl`
        rather than libpq's `sslmode`.
        """
        settings = get_settings()
        db_url = to_async_url(str(settings.database_url))
        connect_args: dict[str, object] = {
            "timeout": settings.db_connect_timeout,
            "command_timeout": settings.db_command_timeout,
        }
        if settings.environment == "production":
            connect_args["ssl"] = "require"

        try:
            engine = create_async_engine(
                db_url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_pre_ping=True,
                echo=settings.debug,
                connect_args=connect_args,
            )
        except Exception as e:
            db_logger.connection_error(e, db_url)
            raise

        self._engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine, expire_on_commit=False, autoflush=False
        )
        logger.info(
            "Crawl database engine ready",
            extra={"pool_size": settings.db_pool_size},
        )

    async def close(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("Crawl database engine disposed")

    async def check_connection(self) -> bool:
        """Run SELECT 1; False (and a logged error) if it fails."""
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            db_logger.connection_error(e, str(get_settings().database_url))
            return False
        return True


db_manager = DatabaseManager()


@asynccontextmanager
async def _transaction(context: str) -> AsyncIterator[AsyncSession]:
    threshold_ms = get_settings().db_slow_query_threshold_ms
    started = time.monotonic()
    async with db_manager.session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            db_logger.transaction_failure(
                e, table=table_from_error(e), context=f"{context} rolled back"
            )
            raise
        except Exception:
            await session.rollback()
            raise
        finally:
            elapsed_ms = (time.monotonic() - started) * 1000
            if elapsed_ms > threshold_ms:
                db_logger.slow_query(query=context, duration_ms=elapsed_ms)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one transaction per request."""
    async with _transaction("request session") as session:
        yield session


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Transaction for work outside a request, such as scheduled crawls."""
    async with _transaction("background session") as session:
        yield session
