"""Per-project and per-tool Context Builder overrides."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import DateTime, Enum, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from llm_gateway.database import Base


class ConfigScope(StrEnum):
    PROJECT = "project"
    TOOL = "tool"


class ContextConfigRecord(Base):
    __tablename__ = "chat_context_config"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    scope: Mapped[ConfigScope] = mapped_column(
        Enum(
            ConfigScope,
            name="context_config_scope",
            values_callable=lambda scopes: [s.value for s in scopes],
        ),
        nullable=False,
    )
    scope_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Project id or tool id the overrides apply to",
    )
    # Partial ContextConfig: only the keys present override the broader scope
    overrides: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (UniqueConstraint("scope", "scope_key", name="uq_context_config_scope"),)

    def __repr__(self) -> str:
        return f"<ContextConfigRecord {self.scope}:{self.scope_key}>"
