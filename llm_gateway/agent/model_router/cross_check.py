"""Cross-model validation within one cost tier.

Process:
1. Primary model answers the task
2. Review model critiques the primary's answer against the original task
3. The ConflictDetector inspects the review
4. On conflict, a third model (when the tier has one) arbitrates and its
   answer becomes the consensus; otherwise the primary's answer stands

The review needs the primary's output, so the two calls run in sequence.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

import structlog

from llm_gateway.config import CostTier

if TYPE_CHECKING:
    from llm_gateway.agent.llm import LLMRequest, LLMResponse
    from llm_gateway.agent.model_router.catalog import ModelDescriptor
    from llm_gateway.agent.model_router.conflict import ConflictDetector
    from llm_gateway.agent.model_router.fallback import FallbackChain

log = structlog.get_logger(__name__)

REVIEW_PROMPT = """Review the following solution and identify any issues, bugs, or improvements:

SOLUTION TO REVIEW:
{primary}

ORIGINAL TASK:
{task}

Please provide:
1. Overall assessment (good/acceptable/needs-improvement)
2. Specific issues found (if any)
3. Suggestions for improvement (if any)"""

ARBITRATOR_PROMPT = """You are an arbitrator. Review these two solutions and decide which is better, or provide an improved solution.

SOLUTION A:
{primary}

REVIEW OF SOLUTION A:
{review}

ORIGINAL TASK:
{task}

Provide the best solution:"""


@dataclass
class CrossCheckOutcome:
    """Result of one cross-check attempt at one tier.

    Attributes:
        primary: The primary model's response
        review: The review model's critique
        arbitrator: The arbitrator's response, when arbitration ran
        consensus: Final text for this attempt
        conflicts: Conflict descriptors from the detector (empty = agreement)
        routing_summary: Human-readable account of which models ran where
        tier: Tier the attempt ran at
    """

    primary: LLMResponse
    review: LLMResponse | None
    arbitrator: LLMResponse | None
    consensus: str
    conflicts: list[str]
    routing_summary: str
    tier: CostTier
    model_ids: list[str] = field(default_factory=list)

    @property
    def arbitrated(self) -> bool:
        return self.arbitrator is not None


class CrossChecker:
    def __init__(self, fallback: FallbackChain, detector: ConflictDetector) -> None:
        self._fallback = fallback
        self._detector = detector

    async def run(
        self,
        request: LLMRequest,
        tier: CostTier,
        models: Sequence[ModelDescriptor],
    ) -> CrossCheckOutcome:
        """Run primary, review and (on conflict) arbitrator calls.

        Args:
            request: The original task
            tier: Tier being attempted
            models: At least two models of the tier, in preference order:
                models[0] answers, models[1] reviews, the first model not
                used by either arbitrates

        Raises:
            ValueError: Fewer than two models supplied
            ModelCallError: A role's model and all its same-tier alternatives failed
        """
        if len(models) < 2:
            raise ValueError("Cross-check needs at least two models")

        primary_model, review_model = models[0], models[1]

        primary, primary_used = await self._fallback.execute_with_fallback(
            request,
            primary_model,
            [m for m in models if m.model_id != review_model.model_id],
        )

        review_request = replace(
            request,
            prompt=REVIEW_PROMPT.format(primary=primary.content, task=request.prompt),
        )
        review, review_used = await self._fallback.execute_with_fallback(
            review_request,
            review_model,
            [m for m in models if m.model_id != primary_used.model_id],
        )

        conflicts = self._detector.detect(primary.content, review.content)
        consensus = primary.content
        arbitrator: LLMResponse | None = None
        used = [primary_used, review_used]

        taken = {primary_used.model_id, review_used.model_id}
        remaining = [m for m in models if m.model_id not in taken]

        if conflicts and remaining:
            log.info(
                "cross_check.arbitrating",
                tier=tier.value,
                arbitrator_model=remaining[0].model_id,
            )
            arbitrator_request = replace(
                request,
                prompt=ARBITRATOR_PROMPT.format(
                    primary=primary.content,
                    review=review.content,
                    task=request.prompt,
                ),
            )
            arbitrator, arbitrator_used = await self._fallback.execute_with_fallback(
                arbitrator_request,
                remaining[0],
                remaining,
            )
            consensus = arbitrator.content
            used.append(arbitrator_used)

        ids = [m.model_id for m in used]
        summary = f"Cross-check ({len(ids)} models): {', '.join(ids)} (layer {tier.value})"

        log.info(
            "cross_check.completed",
            tier=tier.value,
            models=ids,
            conflict_count=len(conflicts),
            arbitrated=arbitrator is not None,
        )

        return CrossCheckOutcome(
            primary=primary,
            review=review,
            arbitrator=arbitrator,
            consensus=consensus,
            conflicts=conflicts,
            routing_summary=summary,
            tier=tier,
            model_ids=ids,
        )
