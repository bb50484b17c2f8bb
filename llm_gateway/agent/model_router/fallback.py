"""Same-tier fallback for resilient model execution.

A failed or timed-out model call is retried against the other models of the
same cost tier, each at most once, before the failure surfaces. Moving to a
different tier is an escalation decision and stays with the LayerRouter.

Fallback strategy:
1. Try the preferred model
2. On failure, try the next model of the tier (cheapest first)
3. Continue until success or every model of the tier was tried once
4. If all fail, raise ModelCallError with the per-model failure list
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import structlog

from llm_gateway.exceptions import ModelCallError

if TYPE_CHECKING:
    from llm_gateway.agent.llm import LLMRequest, LLMResponse, ModelCaller
    from llm_gateway.agent.model_router.catalog import ModelDescriptor

log = structlog.get_logger(__name__)


class FallbackChain:
    """Executes one model call with bounded same-tier fallback."""

    def __init__(self, caller: ModelCaller, *, timeout_seconds: float) -> None:
        self._caller = caller
        self._timeout_seconds = timeout_seconds

    async def execute_with_fallback(
        self,
        request: LLMRequest,
        preferred: ModelDescriptor,
        tier_models: Sequence[ModelDescriptor],
    ) -> tuple[LLMResponse, ModelDescriptor]:
        """Call preferred, then each other model of the tier once, until one succeeds.

        Args:
            request: Prompt to send
            preferred: Model to try first
            tier_models: All models of the preferred model's tier

        Returns:
            Tuple of (response, model actually used)

        Raises:
            ModelCallError: Every model of the tier failed
        """
        execution_order = [preferred] + [
            m for m in tier_models if m.model_id != preferred.model_id
        ]
        failures: list[dict[str, Any]] = []

        for index, model in enumerate(execution_order):
            try:
                response = await asyncio.wait_for(
                    self._caller.call(request, model),
                    timeout=self._timeout_seconds,
                )
            except (ModelCallError, asyncio.TimeoutError) as exc:
                failures.append(
                    {
                        "model_id": model.model_id,
                        "error_type": type(exc).__name__,
                        "error_message": str(exc),
                    }
                )
                log.warning(
                    "fallback_chain.model_failed",
                    model_id=model.model_id,
                    tier=model.tier.value,
                    error_type=type(exc).__name__,
                    remaining_models=len(execution_order) - index - 1,
                )
                continue

            if model.model_id != preferred.model_id:
                log.info(
                    "fallback_chain.fallback_succeeded",
                    preferred_model=preferred.model_id,
                    model_id=model.model_id,
                    tier=model.tier.value,
                )
            return response, model

        log.error(
            "fallback_chain.all_models_failed",
            tier=preferred.tier.value,
            failures=failures,
        )
        raise ModelCallError(
            f"All {len(execution_order)} model(s) in tier {preferred.tier.value} failed. "
            f"Last error: {failures[-1]['error_message'] if failures else 'unknown'}"
        )
