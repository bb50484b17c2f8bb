"""SQL-backed source of per-project / per-tool Context Builder overrides."""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from llm_gateway.context.config import ContextConfigSource, OverrideKey
from llm_gateway.database import session_scope
from llm_gateway.exceptions import StoreError
from llm_gateway.models.context_config import ConfigScope, ContextConfigRecord

log = structlog.get_logger(__name__)


class SqlContextConfigSource(ContextConfigSource):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load_all(self) -> dict[OverrideKey, dict[str, Any]]:
        try:
            async with session_scope(self._session_factory) as session:
                result = await session.execute(select(ContextConfigRecord))
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to load context config: {exc}") from exc
        return {(row.scope, row.scope_key): dict(row.overrides) for row in rows}

    async def save(self, scope: ConfigScope, scope_key: str, overrides: dict[str, Any]) -> None:
        try:
            async with session_scope(self._session_factory) as session:
                record = await session.scalar(
                    select(ContextConfigRecord).where(
                        ContextConfigRecord.scope == scope,
                        ContextConfigRecord.scope_key == scope_key,
                    )
                )
                if record is None:
                    session.add(
                        ContextConfigRecord(scope=scope, scope_key=scope_key, overrides=overrides)
                    )
                else:
                    record.overrides = overrides
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to save context config: {exc}") from exc
        log.info("context_config_source.saved", scope=scope.value, scope_key=scope_key)
