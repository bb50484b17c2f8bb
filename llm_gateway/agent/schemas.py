"""Pydantic schemas for the multi-pass Orchestrator.

The pass schemas (analysis, generation, refinement) double as the JSON
contracts the model is asked to follow; model output that does not
validate against them falls back to a degraded value built from the raw
text.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from llm_gateway.config import Settings

PassName = Literal["analysis", "generation", "refinement", "single-pass"]


# --------------------------------------------------------------------------- #
# Pass outputs
# --------------------------------------------------------------------------- #


class AnalysisResult(BaseModel):
    """Structured judgement about the request, produced before generation."""

    intent: str
    keywords: list[str] = Field(default_factory=list)
    requires_retrieval: bool = False
    requires_tools: bool = False
    complexity_level: Literal["simple", "moderate", "complex"] = "simple"
    approach: str = "Direct response"
    clarifications: list[str] = Field(default_factory=list)


class Citation(BaseModel):
    reference: str
    text: str


class GenerationResult(BaseModel):
    response: str
    citations: list[Citation] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    requires_follow_up: bool = False


class RefinementResult(BaseModel):
    refined_response: str
    improvements_made: list[str] = Field(default_factory=list)
    quality_score: float = Field(default=50, ge=0, le=100)
    ready_to_send: bool = True


# --------------------------------------------------------------------------- #
# Strategy, request, result
# --------------------------------------------------------------------------- #


class OrchestratorStrategy(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    passes: Literal["two-pass", "three-pass"] = "two-pass"
    include_analysis: bool = True
    include_refinement: bool = False
    max_total_tokens: int = Field(default=8000, ge=1)
    timeout_ms: int = Field(default=30000, ge=1)
    refinement_cutoff_ratio: float = Field(default=0.7, gt=0.0, le=1.0)

    @classmethod
    def from_settings(cls, settings: Settings) -> OrchestratorStrategy:
        return cls(
            enabled=settings.orchestrator_enabled,
            passes=settings.orchestrator_passes,
            include_analysis=settings.orchestrator_include_analysis,
            include_refinement=settings.orchestrator_include_refinement,
            max_total_tokens=settings.orchestrator_max_total_tokens,
            timeout_ms=settings.orchestrator_timeout_ms,
            refinement_cutoff_ratio=settings.orchestrator_refinement_cutoff_ratio,
        )


class OrchestratorRequest(BaseModel):
    """Inbound request from the host.

    Attributes:
        messages: Chat history in OpenAI format; the last one is the question
        conversation_id: Stored conversation, enables retrieval
        model: Model id hint, passed to the Layer Router
        project_id: Project whose context overrides apply during retrieval
        tool_id: Tool whose context overrides apply during retrieval
        strategy: Per-request strategy, replacing the configured default
    """

    messages: list[dict[str, str]]
    conversation_id: str | None = None
    model: str | None = None
    project_id: str | None = None
    tool_id: str | None = None
    strategy: OrchestratorStrategy | None = None

    @property
    def user_message(self) -> str:
        return self.messages[-1].get("content", "") if self.messages else ""


class TokenUsage(BaseModel):
    analysis_tokens: int = 0
    generation_tokens: int = 0
    refinement_tokens: int = 0
    total_tokens: int = 0


class OrchestratorResult(BaseModel):
    final_response: str
    analysis: AnalysisResult | None = None
    draft: GenerationResult | None = None
    refined: RefinementResult | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    duration_ms: int = 0
    passes_completed: list[PassName] = Field(default_factory=list)
    pipeline_summary: str = ""
