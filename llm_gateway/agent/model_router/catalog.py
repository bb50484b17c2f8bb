"""Model catalog - immutable model descriptors grouped into cost tiers.

The catalog is read on every routed request and written only through the
administrative replace() path. Readers always see one complete snapshot:
replace() builds a new snapshot off to the side and swaps it in with a
single attribute assignment.

Default tier layout:
- L0: free/local models (Ollama) - no API cost
- L1: budget APIs - low cost per token
- L2: premium models - higher cost, better quality
- L3: elite models - highest cost, best quality
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

import structlog

from llm_gateway.config import TIERS_IN_ORDER, CatalogEntry, CostTier, Settings

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ModelCapabilities:
    general: bool = True
    code: bool = False
    reasoning: bool = False

    def supports(self, task_type: str) -> bool:
        """Return True if the model is suited to task_type.

        "code" and "reasoning" tasks need the matching flag; every other
        task type only needs general capability.
        """
        if task_type == "code":
            return self.code
        if task_type == "reasoning":
            return self.reasoning
        return self.general


@dataclass(frozen=True)
class ModelDescriptor:
    """One callable model.

    Attributes:
        model_id: LiteLLM model identifier (e.g., "openai/gpt-4o-mini")
        provider: Provider tag (e.g., "openai", "ollama")
        tier: Cost tier this model belongs to
        relative_cost: Relative cost score, lower is cheaper (USD per 1M tokens by convention)
        capabilities: Capability flags used for task matching
        context_window: Maximum prompt + completion tokens
        priority: Tie-breaker among equally priced models (0 = preferred)
    """

    model_id: str
    provider: str
    tier: CostTier
    relative_cost: float = 0.0
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)
    context_window: int = 8192
    priority: int = 50

    def __post_init__(self) -> None:
        if not self.model_id:
            raise ValueError("model_id must not be empty")
        if self.relative_cost < 0:
            raise ValueError("relative_cost cannot be negative")
        if self.context_window < 1:
            raise ValueError("context_window must be positive")

    @classmethod
    def from_entry(cls, entry: CatalogEntry) -> ModelDescriptor:
        return cls(
            model_id=entry.model_id,
            provider=entry.provider,
            tier=entry.tier,
            relative_cost=entry.relative_cost,
            capabilities=ModelCapabilities(
                general=entry.general,
                code=entry.code,
                reasoning=entry.reasoning,
            ),
            context_window=entry.context_window,
            priority=entry.priority,
        )


@dataclass(frozen=True)
class _CatalogSnapshot:
    by_tier: Mapping[CostTier, tuple[ModelDescriptor, ...]]
    by_id: Mapping[str, ModelDescriptor]


def _build_snapshot(descriptors: Iterable[ModelDescriptor]) -> _CatalogSnapshot:
    grouped: dict[CostTier, list[ModelDescriptor]] = {tier: [] for tier in TIERS_IN_ORDER}
    by_id: dict[str, ModelDescriptor] = {}
    for descriptor in descriptors:
        if descriptor.model_id in by_id:
            raise ValueError(f"Duplicate model_id in catalog: {descriptor.model_id}")
        grouped[descriptor.tier].append(descriptor)
        by_id[descriptor.model_id] = descriptor

    by_tier = {
        tier: tuple(sorted(models, key=lambda m: (m.relative_cost, m.priority, m.model_id)))
        for tier, models in grouped.items()
    }
    return _CatalogSnapshot(
        by_tier=MappingProxyType(by_tier),
        by_id=MappingProxyType(by_id),
    )


class ModelCatalog:
    """Read-mostly registry of ModelDescriptors, cheapest first within each tier."""

    def __init__(self, descriptors: Iterable[ModelDescriptor]) -> None:
        self._snapshot = _build_snapshot(descriptors)
        self._write_lock = asyncio.Lock()
        log.info(
            "model_catalog.initialized",
            models={tier.value: [m.model_id for m in ms] for tier, ms in self._snapshot.by_tier.items()},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelCatalog:
        return cls(ModelDescriptor.from_entry(entry) for entry in settings.model_catalog)

    def models_in_tier(self, tier: CostTier) -> tuple[ModelDescriptor, ...]:
        """Return the tier's models ordered by relative cost, then priority."""
        return self._snapshot.by_tier.get(tier, ())

    def get(self, model_id: str) -> ModelDescriptor | None:
        return self._snapshot.by_id.get(model_id)

    def all_models(self) -> list[ModelDescriptor]:
        """Every model, cheapest tier first."""
        snapshot = self._snapshot
        return [m for tier in TIERS_IN_ORDER for m in snapshot.by_tier.get(tier, ())]

    def get_tier_by_model_id(self, model_id: str) -> CostTier | None:
        descriptor = self.get(model_id)
        return descriptor.tier if descriptor else None

    async def replace(self, descriptors: Iterable[ModelDescriptor]) -> None:
        """Atomically swap in a new set of descriptors.

        Concurrent writers are serialised; in-flight readers keep the
        snapshot they already obtained.
        """
        snapshot = _build_snapshot(descriptors)
        async with self._write_lock:
            self._snapshot = snapshot
        log.info(
            "model_catalog.replaced",
            model_count=len(snapshot.by_id),
        )
