"""Layer router - cost-tier selection, cross-check and escalation.

The router decides which models answer a request and in what
configuration; the injected ModelCaller does the network I/O.

Initial tier:
1. Budget of exactly 0 pins the request to the free tier (L0), single model,
   no escalation
2. A preferred model known to the catalog is called directly
3. An explicit forced tier wins
4. "critical" quality starts at the second-highest tier (L2)
5. "high" complexity + "high" quality starts one tier above the default
6. Otherwise the default (cheapest) tier

Within a tier the cheapest capability-matching model answers. With
cross-check enabled a second model reviews the answer and a third
arbitrates on conflict. Conflicts may trigger exactly one escalation to the
next tier, never past MAX_ESCALATION_TIER.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from llm_gateway.agent.llm import LLMRequest, LLMResponse
from llm_gateway.agent.model_router.complexity import Complexity
from llm_gateway.agent.model_router.conflict import ConflictDetector, LexicalConflictDetector
from llm_gateway.agent.model_router.cross_check import CrossChecker, CrossCheckOutcome
from llm_gateway.agent.model_router.fallback import FallbackChain
from llm_gateway.config import TIERS_IN_ORDER, CostTier, Settings
from llm_gateway.exceptions import NoModelAvailableError

if TYPE_CHECKING:
    from llm_gateway.agent.llm import ModelCaller
    from llm_gateway.agent.model_router.catalog import ModelCatalog, ModelDescriptor

log = structlog.get_logger(__name__)

ESCALATION_PROMPT = """[ESCALATED FROM {current} TO {next}]

ORIGINAL REQUEST:
{request}

CONTEXT FROM {current}:
{consensus}

CONFLICTS DETECTED:
- {conflicts}

PLEASE PROVIDE:
- A more accurate and detailed response
- Clear resolution of the conflicts
- Higher quality output suitable for {next} tier"""


class Quality(StrEnum):
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class RoutingContext:
    """Per-request routing inputs. Never persisted.

    Attributes:
        task_type: "code", "reasoning" or anything else (general)
        complexity: Estimated task complexity
        quality: Desired answer quality
        forced_tier: Start at exactly this tier
        preferred_model: Call this catalog model directly, bypassing tier logic
        enable_cross_check: Per-request override of ENABLE_CROSS_CHECK
        enable_auto_escalate: Per-request override of ENABLE_AUTO_ESCALATE
        budget: Hard spend limit; 0 means "free tier only"
    """

    task_type: str = "general"
    complexity: Complexity = Complexity.MEDIUM
    quality: Quality = Quality.NORMAL
    forced_tier: CostTier | None = None
    preferred_model: str | None = None
    enable_cross_check: bool | None = None
    enable_auto_escalate: bool | None = None
    budget: float | None = None

    def __post_init__(self) -> None:
        if self.budget is not None and self.budget < 0:
            raise ValueError("budget cannot be negative")


class LayerRouter:
    """Routes prompts across cost tiers with optional cross-check and escalation."""

    def __init__(
        self,
        catalog: ModelCatalog,
        caller: ModelCaller,
        *,
        default_tier: CostTier = CostTier.L0,
        max_escalation_tier: CostTier = CostTier.L2,
        enable_cross_check: bool = False,
        enable_auto_escalate: bool = True,
        conflict_detector: ConflictDetector,
        timeout_seconds: float = 60.0,
    ) -> None:
        if max_escalation_tier.rank < default_tier.rank:
            raise ValueError("max_escalation_tier must not be below default_tier")
        self._catalog = catalog
        self._default_tier = default_tier
        self._max_tier = max_escalation_tier
        self._cross_check_default = enable_cross_check
        self._auto_escalate_default = enable_auto_escalate
        self._fallback = FallbackChain(caller, timeout_seconds=timeout_seconds)
        self._cross_checker = CrossChecker(self._fallback, conflict_detector)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        catalog: ModelCatalog,
        caller: ModelCaller,
        conflict_detector: ConflictDetector | None = None,
    ) -> LayerRouter:
        return cls(
            catalog,
            caller,
            default_tier=settings.default_tier,
            max_escalation_tier=settings.max_escalation_tier,
            enable_cross_check=settings.enable_cross_check,
            enable_auto_escalate=settings.enable_auto_escalate,
            conflict_detector=conflict_detector
            or LexicalConflictDetector(settings.conflict_terms),
            timeout_seconds=settings.model_call_timeout_seconds,
        )

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    @property
    def max_escalation_tier(self) -> CostTier:
        return self._max_tier

    # ------------------------------------------------------------------ #
    # Selection
    # ------------------------------------------------------------------ #

    def select_initial_tier(self, context: RoutingContext) -> CostTier:
        if context.forced_tier is not None:
            return context.forced_tier
        if context.quality == Quality.CRITICAL:
            return TIERS_IN_ORDER[-2]
        if context.complexity == Complexity.HIGH and context.quality == Quality.HIGH:
            return self._default_tier.next_tier() or self._default_tier
        return self._default_tier

    def _tier_models(self, tier: CostTier) -> tuple[ModelDescriptor, ...]:
        models = self._catalog.models_in_tier(tier)
        if not models:
            log.error("layer_router.empty_tier", tier=tier.value)
            raise NoModelAvailableError(tier.value)
        return models

    def eligible_models(self, tier: CostTier, task_type: str) -> list[ModelDescriptor]:
        """Return every model of the tier, capability matches first, each group cheapest first.

        Raises:
            NoModelAvailableError: The tier has no models
        """
        models = self._tier_models(tier)
        capable = [m for m in models if m.capabilities.supports(task_type)]
        return capable + [m for m in models if m not in capable]

    def pick_model(self, tier: CostTier, task_type: str) -> ModelDescriptor:
        """Return the cheapest capability-matching model, else the cheapest model of the tier.

        Raises:
            NoModelAvailableError: The tier has no models
        """
        models = self.eligible_models(tier, task_type)
        selected = models[0]
        if not selected.capabilities.supports(task_type):
            log.warning(
                "layer_router.no_capable_model",
                tier=tier.value,
                task_type=task_type,
                fallback_model=selected.model_id,
            )
        return selected

    def can_escalate(self, tier: CostTier) -> bool:
        next_tier = tier.next_tier()
        return next_tier is not None and next_tier.rank <= self._max_tier.rank

    # ------------------------------------------------------------------ #
    # Calling
    # ------------------------------------------------------------------ #

    async def complete(
        self,
        request: LLMRequest,
        *,
        model_id: str | None = None,
        task_type: str = "general",
    ) -> LLMResponse:
        """Single model call with same-tier fallback, no cross-check.

        Uses model_id when the catalog knows it, otherwise the cheapest
        capable model of the default tier.
        """
        model = self._catalog.get(model_id) if model_id else None
        if model is None:
            model = self.pick_model(self._default_tier, task_type)
        response, used = await self._fallback.execute_with_fallback(
            request, model, self._tier_models(model.tier)
        )
        response.tier = used.tier
        response.routing_summary = f"Single model: {used.model_id} (layer {used.tier.value})"
        return response

    async def _single(self, request: LLMRequest, tier: CostTier, task_type: str) -> LLMResponse:
        model = self.pick_model(tier, task_type)
        response, used = await self._fallback.execute_with_fallback(
            request, model, self._tier_models(tier)
        )
        response.tier = tier
        response.routing_summary = f"Single model: {used.model_id} (layer {tier.value})"
        return response

    async def _attempt(
        self, request: LLMRequest, tier: CostTier, task_type: str
    ) -> CrossCheckOutcome | LLMResponse:
        """Cross-check at tier, or a single-model call when the tier has fewer than two models."""
        models = self.eligible_models(tier, task_type)
        if len(models) < 2:
            log.info("layer_router.cross_check_skipped", tier=tier.value, model_count=len(models))
            return await self._single(request, tier, task_type)
        return await self._cross_checker.run(request, tier, models)

    # ------------------------------------------------------------------ #
    # Routing
    # ------------------------------------------------------------------ #

    async def route_request(self, request: LLMRequest, context: RoutingContext) -> LLMResponse:
        """Select tier and models for request, call them and reconcile the answers.

        Args:
            request: Prepared prompt
            context: Routing inputs for this request

        Returns:
            LLMResponse whose routing_summary names the tier and models used

        Raises:
            NoModelAvailableError: A tier the request needs has no models
            ModelCallError: Every model of a tier failed for one role
        """
        if context.budget == 0:
            model = self.pick_model(CostTier.L0, context.task_type)
            if model.relative_cost > 0:
                log.warning("layer_router.free_tier_not_free", model_id=model.model_id)
            response, used = await self._fallback.execute_with_fallback(
                request, model, self._tier_models(CostTier.L0)
            )
            response.tier = CostTier.L0
            response.routing_summary = (
                f"Budget enforcement: {used.model_id} (layer L0, free tier only)"
            )
            log.info("layer_router.budget_enforced", model_id=used.model_id)
            return response

        if context.preferred_model:
            model = self._catalog.get(context.preferred_model)
            if model is not None:
                response, _ = await self._fallback.execute_with_fallback(request, model, [model])
                response.tier = model.tier
                response.routing_summary = (
                    f"Direct model selection: {model.model_id} (layer {model.tier.value})"
                )
                return response
            log.warning(
                "layer_router.preferred_model_unknown",
                preferred_model=context.preferred_model,
            )

        tier = self.select_initial_tier(context)
        cross_check = (
            context.enable_cross_check
            if context.enable_cross_check is not None
            else self._cross_check_default
        )
        auto_escalate = (
            context.enable_auto_escalate
            if context.enable_auto_escalate is not None
            else self._auto_escalate_default
        )

        log.info(
            "layer_router.route_selected",
            task_type=context.task_type,
            complexity=context.complexity.value,
            quality=context.quality.value,
            tier=tier.value,
            cross_check=cross_check,
        )

        if not cross_check:
            return await self._single(request, tier, context.task_type)

        first = await self._attempt(request, tier, context.task_type)
        if isinstance(first, LLMResponse):
            return first

        if not first.conflicts:
            return _response_from_outcome(first, " (no conflicts)")

        log.warning(
            "layer_router.conflicts_detected",
            tier=tier.value,
            conflicts=first.conflicts,
        )

        next_tier = tier.next_tier()
        if next_tier is not None and self.can_escalate(tier):
            if auto_escalate:
                log.info("layer_router.escalated", from_tier=tier.value, to_tier=next_tier.value)
                second = await self._attempt(request, next_tier, context.task_type)
                return _escalated_response(first, second, tier)
            return _escalation_suggestion(request, first, next_tier)

        suffix = (
            " (conflicts resolved with arbitrator)"
            if first.arbitrated
            else " (conflicts detected)"
        )
        return _response_from_outcome(first, suffix)


# ---------------------------------------------------------------------- #
# Response assembly
# ---------------------------------------------------------------------- #


def _outcome_calls(outcome: CrossCheckOutcome) -> list[LLMResponse]:
    return [r for r in (outcome.primary, outcome.review, outcome.arbitrator) if r is not None]


def _response_from_outcome(outcome: CrossCheckOutcome, suffix: str) -> LLMResponse:
    """Fold a cross-check into one response carrying the consensus text.

    Token counts and cost cover every call the attempt made.
    """
    calls = _outcome_calls(outcome)
    return LLMResponse(
        content=outcome.consensus,
        model_id=outcome.primary.model_id,
        provider=outcome.primary.provider,
        input_tokens=sum(r.input_tokens for r in calls),
        output_tokens=sum(r.output_tokens for r in calls),
        cost=sum(r.cost for r in calls),
        tier=outcome.tier,
        routing_summary=outcome.routing_summary + suffix,
        conflicts=list(outcome.conflicts),
    )


def _escalated_response(
    first: CrossCheckOutcome,
    second: CrossCheckOutcome | LLMResponse,
    original_tier: CostTier,
) -> LLMResponse:
    if isinstance(second, CrossCheckOutcome):
        if not second.conflicts:
            suffix = " (no conflicts)"
        elif second.arbitrated:
            suffix = " (conflicts resolved with arbitrator)"
        else:
            suffix = " (conflicts detected)"
        response = _response_from_outcome(second, suffix)
    else:
        response = second

    earlier = _outcome_calls(first)
    response.input_tokens += sum(r.input_tokens for r in earlier)
    response.output_tokens += sum(r.output_tokens for r in earlier)
    response.cost += sum(r.cost for r in earlier)
    response.routing_summary += f" (escalated from {original_tier.value})"
    response.escalated_from = original_tier
    response.conflicts = list(first.conflicts) + response.conflicts
    return response


def _escalation_suggestion(
    request: LLMRequest,
    outcome: CrossCheckOutcome,
    next_tier: CostTier,
) -> LLMResponse:
    """Return the current consensus plus what escalating would look like."""
    response = _response_from_outcome(outcome, " (conflicts detected - escalation available)")
    response.requires_escalation_confirm = True
    response.suggested_tier = next_tier
    response.escalation_reason = (
        f"Conflicts detected in {outcome.tier.value} layer. Escalating to "
        f"{next_tier.value} may provide better results."
    )
    response.optimized_prompt = ESCALATION_PROMPT.format(
        current=outcome.tier.value,
        next=next_tier.value,
        request=request.prompt or "N/A",
        consensus=outcome.consensus,
        conflicts="\n- ".join(outcome.conflicts),
    )
    log.info(
        "layer_router.escalation_available",
        tier=outcome.tier.value,
        suggested_tier=next_tier.value,
    )
    return response
