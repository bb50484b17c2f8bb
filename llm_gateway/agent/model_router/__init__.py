"""Cost-tiered model routing.

Selects a cost tier and model for each request, optionally cross-checks
the answer with a review model and an arbitrator, and escalates one tier
when the review flags a conflict.
"""

from __future__ import annotations

from llm_gateway.agent.model_router.catalog import (
    ModelCapabilities,
    ModelCatalog,
    ModelDescriptor,
)
from llm_gateway.agent.model_router.complexity import Complexity, ComplexityEstimator
from llm_gateway.agent.model_router.conflict import ConflictDetector, LexicalConflictDetector
from llm_gateway.agent.model_router.cross_check import CrossChecker, CrossCheckOutcome
from llm_gateway.agent.model_router.fallback import FallbackChain
from llm_gateway.agent.model_router.router import LayerRouter, Quality, RoutingContext

__all__ = [
    "Complexity",
    "ComplexityEstimator",
    "ConflictDetector",
    "CrossCheckOutcome",
    "CrossChecker",
    "FallbackChain",
    "LayerRouter",
    "LexicalConflictDetector",
    "ModelCapabilities",
    "ModelCatalog",
    "ModelDescriptor",
    "Quality",
    "RoutingContext",
]
