"""Alembic environment for the gateway schema.

Migrations run online through the asyncpg engine built by
llm_gateway.database.build_engine(), so the URL, pool and echo settings
come from the same Settings the application uses. Offline mode renders
SQL against the configured URL without connecting.

Override the URL for a single run with:
    alembic -x database_url=postgresql+asyncpg://... upgrade head
"""

from __future__ import annotations

import asyncio

import structlog
from alembic import context
from sqlalchemy.engine import Connection

import llm_gateway.models  # noqa: F401 - registers every table on Base.metadata
from llm_gateway.config import get_settings
from llm_gateway.database import Base, build_engine
from llm_gateway.telemetry.logging import configure_logging

log = structlog.get_logger("alembic.env")

config = context.config
target_metadata = Base.metadata

settings = get_settings()
configure_logging(json_logs=settings.log_json, log_level=settings.log_level)

url_override = context.get_x_argument(as_dictionary=True).get("database_url")
if url_override:
    settings = settings.model_copy(update={"database_url": url_override})


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL for the pending revisions without a database connection."""
    _configure(
        url=settings.database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = build_engine(settings, for_test=True)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_sync)
            await connection.commit()
    finally:
        await engine.dispose()
    log.info("alembic.migrations_applied", url=settings.database_url.split("@")[-1])


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
