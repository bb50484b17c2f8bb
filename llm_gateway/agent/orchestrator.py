"""Multi-pass response pipeline under one shared token budget.

    analysis (optional) -> retrieval (conditional) -> generation -> refinement (optional)

Passes run strictly in order. Token usage accumulates across passes and
gates the optional refinement pass:

- after analysis, usage above refinement_cutoff_ratio x max_total_tokens
  disables refinement for this run
- after generation, usage above max_total_tokens disables it
- refinement is also skipped when its prompt alone would not fit in what
  remains. Its completion is capped at the remainder and is never charged
  more than that

The pipeline summary names the model and cost tier every pass ran on.

handle() never raises. A disabled strategy, and any unexpected failure in
the pipeline, produce a single-pass generation; if that fails too the
result carries a static error string.
"""

from __future__ import annotations

import time

import structlog

from llm_gateway.agent.llm import LLMRequest
from llm_gateway.agent.model_router.router import LayerRouter
from llm_gateway.agent.schemas import (
    AnalysisResult,
    GenerationResult,
    OrchestratorRequest,
    OrchestratorResult,
    OrchestratorStrategy,
    PassName,
    RefinementResult,
    TokenUsage,
)
from llm_gateway.agent.validated_pass import PassResult, pass_tokens, run_validated_pass
from llm_gateway.context.builder import ContextBuilder
from llm_gateway.context.tokens import TokenEstimator
from llm_gateway.exceptions import GatewayError

log = structlog.get_logger(__name__)

ERROR_RESPONSE = "Error generating response. Please try again."

_ANALYSIS_MAX_TOKENS = 500
_GENERATION_MAX_TOKENS = 1000
_REFINEMENT_MAX_TOKENS = 1000
_SINGLE_PASS_MAX_TOKENS = 2000
_RETRIEVAL_MAX_PROMPT_TOKENS = 2000

_ANALYSIS_PROMPT = """You are an expert assistant that analyzes user requests to extract actionable insights.
For each request, determine:
1. The core intent
2. Key search terms that would help find relevant information
3. Whether external context/history is needed
4. The appropriate solving approach

Respond with valid JSON matching this structure:
{
  "intent": "string",
  "keywords": ["array", "of", "keywords"],
  "requires_retrieval": boolean,
  "requires_tools": false,
  "complexity_level": "simple|moderate|complex",
  "approach": "string describing the approach"
}"""

_GENERATION_PROMPT = """You are a helpful assistant. Generate a comprehensive and accurate response.
If context is provided, cite it using [C1], [C2], etc.
Respond with valid JSON matching this structure:
{
  "response": "string",
  "citations": [{"reference": "C1", "text": "cited text"}],
  "confidence": 0.95
}"""

_REFINEMENT_PROMPT = """You are an expert editor. Improve the provided draft response:
1. Enhance clarity and conciseness
2. Fix any errors or inconsistencies
3. Improve tone and readability
4. Ensure accuracy

Respond with valid JSON:
{
  "refined_response": "string",
  "improvements_made": ["list", "of", "improvements"],
  "quality_score": 85,
  "ready_to_send": true
}"""


class Orchestrator:
    def __init__(
        self,
        router: LayerRouter,
        estimator: TokenEstimator,
        *,
        context_builder: ContextBuilder | None = None,
        default_strategy: OrchestratorStrategy | None = None,
    ) -> None:
        self._router = router
        self._estimator = estimator
        self._context_builder = context_builder
        self._default_strategy = default_strategy or OrchestratorStrategy()

    @property
    def default_strategy(self) -> OrchestratorStrategy:
        return self._default_strategy

    async def handle(self, request: OrchestratorRequest) -> OrchestratorResult:
        """Answer one request. Never raises."""
        strategy = request.strategy or self._default_strategy
        if not strategy.enabled:
            return await self._single_pass(request, reason="orchestration disabled")

        try:
            return await self._run_pipeline(request, strategy)
        except Exception as exc:
            log.error(
                "orchestrator.pipeline_failed",
                conversation_id=request.conversation_id,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            return await self._single_pass(request, reason=f"pipeline error: {type(exc).__name__}")

    async def _run_pipeline(
        self, request: OrchestratorRequest, strategy: OrchestratorStrategy
    ) -> OrchestratorResult:
        started = time.monotonic()
        timeout_seconds = strategy.timeout_ms / 1000
        budget = strategy.max_total_tokens
        usage = TokenUsage()
        passes: list[PassName] = []
        routes: list[str] = []
        notes: list[str] = []
        refinement_allowed = strategy.passes == "three-pass" and strategy.include_refinement

        analysis: AnalysisResult | None = None
        if strategy.include_analysis:
            analysis_pass = await self._analysis_pass(request, timeout_seconds)
            analysis = analysis_pass.data
            usage.analysis_tokens = analysis_pass.tokens
            usage.total_tokens += analysis_pass.tokens
            passes.append("analysis")
            routes.append(f"analysis {analysis_pass.describe()}")
            if not analysis_pass.validated:
                notes.append("analysis degraded")

            cutoff = budget * strategy.refinement_cutoff_ratio
            if refinement_allowed and usage.total_tokens > cutoff:
                log.warning(
                    "orchestrator.refinement_disabled",
                    reason="cutoff_after_analysis",
                    total_tokens=usage.total_tokens,
                    cutoff=cutoff,
                    budget=budget,
                )
                refinement_allowed = False
                notes.append("refinement skipped: budget cutoff after analysis")

        context: list[dict[str, str]] = []
        if analysis is not None and analysis.requires_retrieval and request.conversation_id:
            context = await self._retrieve_context(request, analysis.keywords)

        generation_pass = await self._generation_pass(
            request, analysis, context, timeout_seconds
        )
        draft = generation_pass.data
        usage.generation_tokens = generation_pass.tokens
        usage.total_tokens += generation_pass.tokens
        passes.append("generation")
        routes.append(f"generation {generation_pass.describe()}")
        if not generation_pass.validated:
            notes.append("generation degraded")

        if refinement_allowed and usage.total_tokens > budget:
            log.warning(
                "orchestrator.refinement_disabled",
                reason="budget_exceeded",
                total_tokens=usage.total_tokens,
                budget=budget,
            )
            refinement_allowed = False
            notes.append("refinement skipped: budget exceeded")

        refined: RefinementResult | None = None
        if refinement_allowed and draft.response:
            refinement_request = self._refinement_request(draft)
            remaining = budget - usage.total_tokens
            prompt_tokens = self._estimator.estimate_messages(refinement_request.to_messages())
            if prompt_tokens >= remaining:
                log.info(
                    "orchestrator.refinement_disabled",
                    reason="insufficient_remaining_budget",
                    prompt_tokens=prompt_tokens,
                    remaining=remaining,
                )
                notes.append("refinement skipped: insufficient budget")
            else:
                refinement_request.max_tokens = min(
                    _REFINEMENT_MAX_TOKENS, remaining - prompt_tokens
                )
                refinement_pass = await run_validated_pass(
                    self._router,
                    refinement_request,
                    RefinementResult,
                    lambda raw: RefinementResult(
                        refined_response=draft.response,
                        improvements_made=[],
                        quality_score=50,
                        ready_to_send=True,
                    ),
                    pass_name="refinement",
                    estimator=self._estimator,
                    timeout_seconds=timeout_seconds,
                    model_id=request.model,
                )
                refined = refinement_pass.data
                # Reported usage can run past the estimate the pass was admitted on;
                # the completion was capped at the remainder, so charge at most that
                refinement_tokens = min(refinement_pass.tokens, remaining)
                if refinement_tokens < refinement_pass.tokens:
                    log.warning(
                        "orchestrator.refinement_usage_clamped",
                        reported_tokens=refinement_pass.tokens,
                        charged_tokens=refinement_tokens,
                        remaining=remaining,
                    )
                usage.refinement_tokens = refinement_tokens
                usage.total_tokens += refinement_tokens
                passes.append("refinement")
                routes.append(f"refinement {refinement_pass.describe()}")
                if not refinement_pass.validated:
                    notes.append("refinement degraded")

        if refined is not None and refined.refined_response:
            final_response = refined.refined_response
        elif draft.response:
            final_response = draft.response
        else:
            final_response = ERROR_RESPONSE

        duration_ms = int((time.monotonic() - started) * 1000)
        summary = f"Pipeline: {' -> '.join(passes)} ({usage.total_tokens}/{budget} tokens)"
        if context:
            summary += f", retrieved {len(context)} context messages"
        if routes:
            summary += "; " + "; ".join(routes)
        if notes:
            summary += "; " + "; ".join(notes)

        log.info(
            "orchestrator.completed",
            conversation_id=request.conversation_id,
            passes_completed=passes,
            total_tokens=usage.total_tokens,
            budget=budget,
            duration_ms=duration_ms,
        )
        return OrchestratorResult(
            final_response=final_response,
            analysis=analysis,
            draft=draft,
            refined=refined,
            token_usage=usage,
            duration_ms=duration_ms,
            passes_completed=passes,
            pipeline_summary=summary,
        )

    # ------------------------------------------------------------------ #
    # Passes
    # ------------------------------------------------------------------ #

    async def _analysis_pass(
        self, request: OrchestratorRequest, timeout_seconds: float
    ) -> PassResult[AnalysisResult]:
        user_message = request.user_message
        return await run_validated_pass(
            self._router,
            LLMRequest(
                prompt=user_message,
                system_prompt=_ANALYSIS_PROMPT,
                max_tokens=_ANALYSIS_MAX_TOKENS,
                temperature=0.3,
            ),
            AnalysisResult,
            lambda raw: AnalysisResult(
                intent=user_message[:100],
                keywords=[],
                requires_retrieval=False,
                complexity_level="simple",
                approach="Direct response",
            ),
            pass_name="analysis",
            estimator=self._estimator,
            timeout_seconds=timeout_seconds,
            model_id=request.model,
        )

    async def _retrieve_context(
        self, request: OrchestratorRequest, keywords: list[str]
    ) -> list[dict[str, str]]:
        """Span-retrieve earlier conversation context, keyed on the analysis keywords."""
        if self._context_builder is None or not request.conversation_id:
            return []
        query = " ".join(keywords) or request.user_message
        try:
            result = await self._context_builder.build_context(
                request.conversation_id,
                query,
                model_id=request.model,
                project_id=request.project_id,
                tool_id=request.tool_id,
                config_overrides={
                    "strategy": "span-retrieval",
                    "max_prompt_tokens": _RETRIEVAL_MAX_PROMPT_TOKENS,
                },
            )
        except (GatewayError, ValueError) as exc:
            log.warning(
                "orchestrator.retrieval_failed",
                conversation_id=request.conversation_id,
                error=str(exc),
            )
            return []
        # The last message is the query itself
        return result.messages[:-1]

    async def _generation_pass(
        self,
        request: OrchestratorRequest,
        analysis: AnalysisResult | None,
        context: list[dict[str, str]],
        timeout_seconds: float,
    ) -> PassResult[GenerationResult]:
        prompt = request.user_message
        if context:
            prompt += "\n\nRelevant context:\n" + "\n".join(
                f"{m['role']}: {m['content']}" for m in context
            )
        if analysis is not None and analysis.approach:
            prompt += f"\n\nSuggested approach: {analysis.approach}"

        return await run_validated_pass(
            self._router,
            LLMRequest(
                prompt=prompt,
                system_prompt=_GENERATION_PROMPT,
                max_tokens=_GENERATION_MAX_TOKENS,
                temperature=0.7,
            ),
            GenerationResult,
            lambda raw: GenerationResult(response=raw, confidence=0.5),
            pass_name="generation",
            estimator=self._estimator,
            timeout_seconds=timeout_seconds,
            model_id=request.model,
        )

    @staticmethod
    def _refinement_request(draft: GenerationResult) -> LLMRequest:
        return LLMRequest(
            prompt=f"Draft response to improve:\n\n{draft.response}",
            system_prompt=_REFINEMENT_PROMPT,
            max_tokens=_REFINEMENT_MAX_TOKENS,
            temperature=0.5,
        )

    async def _single_pass(self, request: OrchestratorRequest, *, reason: str) -> OrchestratorResult:
        started = time.monotonic()
        llm_request = LLMRequest(
            prompt="",
            messages=list(request.messages),
            max_tokens=_SINGLE_PASS_MAX_TOKENS,
            temperature=0.7,
        )
        try:
            response = await self._router.complete(llm_request, model_id=request.model)
        except Exception as exc:
            log.error(
                "orchestrator.single_pass_failed",
                conversation_id=request.conversation_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return OrchestratorResult(
                final_response=ERROR_RESPONSE,
                duration_ms=int((time.monotonic() - started) * 1000),
                passes_completed=[],
                pipeline_summary=f"Single-pass generation failed ({reason})",
            )

        tokens = pass_tokens(llm_request, response, self._estimator)
        tier = response.tier.value if response.tier is not None else "unknown"
        return OrchestratorResult(
            final_response=response.content,
            token_usage=TokenUsage(generation_tokens=tokens, total_tokens=tokens),
            duration_ms=int((time.monotonic() - started) * 1000),
            passes_completed=["single-pass"],
            pipeline_summary=(
                f"Single-pass generation via {response.model_id} (layer {tier}, {reason})"
            ),
        )
