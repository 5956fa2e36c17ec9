"""Alembic environment for the crawl tables.

The URL comes from DATABASE_URL (via Settings), not alembic.ini. Online
migrations run over asyncpg; each run is bracketed by db_logger
migration_start / migration_end entries.
"""

import asyncio
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from crawl_orchestrator.core.config import get_settings
from crawl_orchestrator.core.database import to_async_url
from crawl_orchestrator.core.logging import db_logger
from crawl_orchestrator.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _migrate(**configure_args: Any) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        **configure_args,
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_on_connection(connection: Connection) -> None:
    _migrate(connection=connection)


async def _run_online(url: str) -> None:
    settings = get_settings()
    target = str(context.get_head_revision() or "head")
    db_logger.migration_start(version=target, description=f"Upgrading to {target}")

    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = url
    engine = async_engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        connect_args={
            "timeout": settings.db_connect_timeout,
            "command_timeout": settings.db_command_timeout,
        },
    )

    succeeded = False
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_on_connection)
        succeeded = True
    finally:
        db_logger.migration_end(version=target, success=succeeded)
        await engine.dispose()


database_url = to_async_url(str(get_settings().database_url))

if context.is_offline_mode():
    # Emit SQL to the script output instead of executing it
    _migrate(
        url=database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
else:
    asyncio.run(_run_online(database_url))
