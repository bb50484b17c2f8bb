"""Task complexity detection for tier selection.

Classifies a user message as low / medium / high complexity. Two
detectors are available:

- Heuristic (always available): word count, code markers and a
  vocabulary of analysis-heavy verbs.
- Model-assisted (opt-in): asks the cheapest model in the free tier for a
  one-word classification and falls back to the heuristic when the tier is
  empty, the call fails, or the answer is not one of the three labels.

Heuristic rules:
- low:    <= 5 words, no code markers, no complex vocabulary
- high:   code markers, complex vocabulary, or > 50 words
- medium: everything else
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from llm_gateway.agent.llm import LLMRequest
from llm_gateway.config import CostTier
from llm_gateway.exceptions import GatewayError

if TYPE_CHECKING:
    from llm_gateway.agent.llm import ModelCaller
    from llm_gateway.agent.model_router.catalog import ModelCatalog

log = structlog.get_logger(__name__)


class Complexity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_CODE_MARKERS = re.compile(r"```|\bfunction\b|\bclass\b|\bimport\b|\bconst\b|\blet\b|\bvar\b")
_COMPLEX_WORDS = re.compile(
    r"\b(explain|analy[sz]e|compare|evaluate|implement|design|architecture|algorithm)",
    re.IGNORECASE,
)

_CLASSIFY_PROMPT = """Analyze this user message and classify its complexity level.

USER MESSAGE: "{message}"

Classify as:
- "low": Simple greetings, short questions (<=5 words), casual chat
- "medium": General questions, explanations, standard requests
- "high": Complex analysis, code tasks, multi-step reasoning, technical deep-dives

Respond with ONLY ONE WORD: low, medium, or high"""


def estimate_complexity_heuristic(message: str) -> Complexity:
    word_count = len(message.split())
    has_code = bool(_CODE_MARKERS.search(message))
    has_complex_words = bool(_COMPLEX_WORDS.search(message))

    if word_count <= 5 and not has_code and not has_complex_words:
        return Complexity.LOW
    if has_code or has_complex_words or word_count > 50:
        return Complexity.HIGH
    return Complexity.MEDIUM


class ComplexityEstimator:
    """Classifies request complexity, optionally with help from a free-tier model."""

    def __init__(
        self,
        catalog: ModelCatalog,
        caller: ModelCaller,
        *,
        use_model: bool = False,
    ) -> None:
        self._catalog = catalog
        self._caller = caller
        self._use_model = use_model

    async def estimate(self, message: str) -> Complexity:
        if not self._use_model:
            return estimate_complexity_heuristic(message)

        models = self._catalog.models_in_tier(CostTier.L0)
        if not models:
            log.warning("complexity_estimator.no_free_model", fallback="heuristic")
            return estimate_complexity_heuristic(message)

        model = models[0]
        request = LLMRequest(
            prompt=_CLASSIFY_PROMPT.format(message=message),
            max_tokens=10,
            temperature=0.0,
        )
        try:
            response = await self._caller.call(request, model)
        except GatewayError as exc:
            log.warning(
                "complexity_estimator.model_failed",
                model_id=model.model_id,
                error=str(exc),
            )
            return estimate_complexity_heuristic(message)

        label = response.content.strip().lower()
        try:
            complexity = Complexity(label)
        except ValueError:
            log.warning("complexity_estimator.invalid_label", label=label[:20])
            return estimate_complexity_heuristic(message)

        log.info(
            "complexity_estimator.estimated",
            complexity=complexity.value,
            model_id=model.model_id,
        )
        return complexity
