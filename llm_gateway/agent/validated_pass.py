"""One model call whose output must validate against a pydantic schema.

Every structured Orchestrator pass goes through run_validated_pass(). The
model is asked for a JSON object; output that is not JSON, or JSON that does
not match the schema, is handed to the pass's fallback constructor as raw
text. A pass that times out is treated the same way, with empty raw text.
Model-call errors are not recovered here and propagate to the Orchestrator.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Generic, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from llm_gateway.agent.llm import LLMRequest, LLMResponse
from llm_gateway.agent.model_router.router import LayerRouter
from llm_gateway.config import CostTier
from llm_gateway.context.tokens import TokenEstimator

log = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

# ```json ... ``` wrappers some models add despite json mode
_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass
class PassResult(Generic[T]):
    """Outcome of one validated pass.

    Attributes:
        data: Validated schema instance, or the fallback's output
        tokens: Tokens the pass consumed (prompt plus completion)
        validated: False when the fallback produced `data`
        timed_out: The pass hit its timeout
        model_id: Model that answered, None on timeout
        tier: Cost tier the router answered from, None on timeout
        routing_summary: The router's description of how it answered
    """

    data: T
    tokens: int
    validated: bool
    timed_out: bool = False
    model_id: str | None = None
    tier: CostTier | None = None
    routing_summary: str = ""

    def describe(self) -> str:
        """Short label naming the model and tier, for pipeline summaries."""
        if self.timed_out:
            return "timed out"
        tier = self.tier.value if self.tier is not None else "unknown tier"
        return f"via {self.model_id} ({tier})"


def strip_code_fence(text: str) -> str:
    stripped = text.strip()
    match = _CODE_FENCE.match(stripped)
    return match.group(1) if match else stripped


def pass_tokens(
    request: LLMRequest, response: LLMResponse, estimator: TokenEstimator
) -> int:
    """Provider-reported usage when present, else the estimator's figure."""
    if response.input_tokens or response.output_tokens:
        return response.input_tokens + response.output_tokens
    return estimator.estimate_messages(request.to_messages()) + estimator.estimate(
        response.content
    )


async def run_validated_pass(
    router: LayerRouter,
    request: LLMRequest,
    schema: type[T],
    fallback: Callable[[str], T],
    *,
    pass_name: str,
    estimator: TokenEstimator,
    timeout_seconds: float,
    model_id: str | None = None,
) -> PassResult[T]:
    """Run one structured pass.

    Args:
        router: Layer Router used for the model call
        request: Prompt; json_mode is forced on
        schema: Pydantic model the output must validate against
        fallback: Builds a degraded value from the raw output text
        pass_name: Label for logs
        estimator: Token estimator for providers that report no usage
        timeout_seconds: Deadline for the model call
        model_id: Model hint for the router

    Raises:
        GatewayError: The model call failed on every eligible model
    """
    request = replace(request, json_mode=True)
    try:
        response = await asyncio.wait_for(
            router.complete(request, model_id=model_id), timeout=timeout_seconds
        )
    except asyncio.TimeoutError:
        log.warning(
            "validated_pass.timed_out",
            pass_name=pass_name,
            timeout_seconds=timeout_seconds,
        )
        return PassResult(data=fallback(""), tokens=0, validated=False, timed_out=True)

    tokens = pass_tokens(request, response, estimator)
    try:
        data = schema.model_validate_json(strip_code_fence(response.content))
    except ValidationError as exc:
        log.warning(
            "validated_pass.parse_failed",
            pass_name=pass_name,
            model_id=response.model_id,
            error_count=exc.error_count(),
        )
        return PassResult(
            data=fallback(response.content),
            tokens=tokens,
            validated=False,
            model_id=response.model_id,
            tier=response.tier,
            routing_summary=response.routing_summary,
        )

    log.debug(
        "validated_pass.completed",
        pass_name=pass_name,
        model_id=response.model_id,
        tokens=tokens,
    )
    return PassResult(
        data=data,
        tokens=tokens,
        validated=True,
        model_id=response.model_id,
        tier=response.tier,
        routing_summary=response.routing_summary,
    )
