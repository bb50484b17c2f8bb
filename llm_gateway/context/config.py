"""Context Builder configuration and its resolution.

Resolution order, later wins:
    global defaults (Settings) -> project overrides -> tool overrides -> per-call overrides

Project and tool overrides live in a ContextConfigSource (the
chat_context_config table in production). The resolver keeps an immutable
in-memory snapshot of every override row so resolving a request never hits
the store; administrative updates write through and swap the snapshot.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from llm_gateway.config import ContextStrategy, Settings
from llm_gateway.models.context_config import ConfigScope

log = structlog.get_logger(__name__)

OverrideKey = tuple[ConfigScope, str]


class ContextConfig(BaseModel):
    """Resolved Context Builder configuration for one build call."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    strategy: ContextStrategy = ContextStrategy.SUMMARY_RECENT
    max_prompt_tokens: int = Field(default=4096, ge=1)
    recent_min_messages: int = Field(default=4, ge=0)
    recent_max_messages: int = Field(default=20, ge=1)
    span_top_k: int = Field(default=5, ge=1)
    span_radius: int = Field(default=2, ge=0)
    span_budget_ratio: float = Field(default=0.4, ge=0.0, le=1.0)
    span_min_similarity: float = Field(default=0.7, ge=-1.0, le=1.0)
    summarization_threshold: int = Field(default=2000, ge=1)
    system_prompt: str | None = None

    @model_validator(mode="after")
    def _check_window(self) -> ContextConfig:
        if self.recent_min_messages > self.recent_max_messages:
            raise ValueError("recent_min_messages must not exceed recent_max_messages")
        return self

    @classmethod
    def from_settings(cls, settings: Settings) -> ContextConfig:
        return cls(
            strategy=settings.context_strategy,
            max_prompt_tokens=settings.context_max_prompt_tokens,
            recent_min_messages=settings.context_recent_min_messages,
            recent_max_messages=settings.context_recent_max_messages,
            span_top_k=settings.context_span_top_k,
            span_radius=settings.context_span_radius,
            span_budget_ratio=settings.context_span_budget_ratio,
            span_min_similarity=settings.context_span_min_similarity,
            summarization_threshold=settings.context_summarization_threshold,
            system_prompt=settings.context_system_prompt,
        )

    def merged(self, overrides: Mapping[str, Any] | None) -> ContextConfig:
        """Return a copy with overrides applied and re-validated."""
        if not overrides:
            return self
        return ContextConfig.model_validate({**self.model_dump(), **overrides})


class ContextConfigSource(ABC):
    """Durable storage of per-project / per-tool overrides."""

    @abstractmethod
    async def load_all(self) -> dict[OverrideKey, dict[str, Any]]:
        """Return every override row keyed by (scope, scope_key)."""

    @abstractmethod
    async def save(self, scope: ConfigScope, scope_key: str, overrides: dict[str, Any]) -> None:
        """Insert or replace the overrides for one scope key."""


class InMemoryContextConfigSource(ContextConfigSource):
    def __init__(self, rows: Mapping[OverrideKey, dict[str, Any]] | None = None) -> None:
        self._rows: dict[OverrideKey, dict[str, Any]] = dict(rows or {})

    async def load_all(self) -> dict[OverrideKey, dict[str, Any]]:
        return {key: dict(value) for key, value in self._rows.items()}

    async def save(self, scope: ConfigScope, scope_key: str, overrides: dict[str, Any]) -> None:
        self._rows[(scope, scope_key)] = dict(overrides)


class ContextConfigResolver:
    def __init__(
        self,
        defaults: ContextConfig,
        source: ContextConfigSource | None = None,
    ) -> None:
        self._defaults = defaults
        self._source = source
        self._overrides: Mapping[OverrideKey, Mapping[str, Any]] = MappingProxyType({})
        self._write_lock = asyncio.Lock()

    @property
    def defaults(self) -> ContextConfig:
        return self._defaults

    async def refresh(self) -> None:
        """Reload the override snapshot from the source."""
        if self._source is None:
            return
        rows = await self._source.load_all()
        async with self._write_lock:
            self._overrides = MappingProxyType(
                {key: MappingProxyType(dict(value)) for key, value in rows.items()}
            )
        log.info("context_config.refreshed", override_count=len(rows))

    async def update(
        self,
        scope: ConfigScope,
        scope_key: str,
        overrides: dict[str, Any],
    ) -> None:
        """Validate, persist and publish overrides for one project or tool.

        Raises:
            pydantic.ValidationError: overrides do not form a valid configuration
        """
        self._defaults.merged(overrides)
        async with self._write_lock:
            if self._source is not None:
                await self._source.save(scope, scope_key, overrides)
            updated = dict(self._overrides)
            updated[(scope, scope_key)] = MappingProxyType(dict(overrides))
            self._overrides = MappingProxyType(updated)
        log.info(
            "context_config.updated",
            scope=scope.value,
            scope_key=scope_key,
            keys=sorted(overrides),
        )

    def resolve(
        self,
        *,
        project_id: str | None = None,
        tool_id: str | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> ContextConfig:
        """Layer stored project and tool overrides, then per-call overrides.

        Stored rows are validated one at a time on update, so a project row
        and a tool row can still conflict once layered. Such a stored
        combination never fails the request: the most specific stored layer
        is dropped (and logged) until the rest validate.

        Raises:
            pydantic.ValidationError: per-call overrides form an invalid configuration
        """
        snapshot = self._overrides
        layers: list[tuple[OverrideKey, Mapping[str, Any]]] = []
        for scope, scope_key in ((ConfigScope.PROJECT, project_id), (ConfigScope.TOOL, tool_id)):
            if scope_key is not None and (scope, scope_key) in snapshot:
                layers.append(((scope, scope_key), snapshot[(scope, scope_key)]))

        base = self._defaults
        while layers:
            layered: dict[str, Any] = {}
            for _, values in layers:
                layered.update(values)
            try:
                base = self._defaults.merged(layered)
                break
            except ValidationError as exc:
                (scope, scope_key), _ = layers.pop()
                log.warning(
                    "context_config.stored_layer_dropped",
                    scope=scope.value,
                    scope_key=scope_key,
                    error=str(exc),
                )
        return base.merged(overrides)
