"""Tests for schema-validated model passes."""

from __future__ import annotations

import json

import pytest

from llm_gateway.agent.llm import LLMRequest, LLMResponse
from llm_gateway.agent.schemas import AnalysisResult
from llm_gateway.agent.validated_pass import pass_tokens, run_validated_pass, strip_code_fence
from llm_gateway.config import CostTier
from llm_gateway.exceptions import ModelCallError

_ANALYSIS = {
    "intent": "deploy the service",
    "keywords": ["helm", "deploy"],
    "requires_retrieval": True,
    "complexity_level": "moderate",
    "approach": "Step by step",
}


def _fallback(raw: str) -> AnalysisResult:
    return AnalysisResult(intent=f"fallback:{raw[:20]}")


async def _run(router, estimator, request=None, timeout_seconds=1.0):
    return await run_validated_pass(
        router,
        request or LLMRequest(prompt="How do I deploy?"),
        AnalysisResult,
        _fallback,
        pass_name="analysis",
        estimator=estimator,
        timeout_seconds=timeout_seconds,
    )


class TestStripCodeFence:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ('{"a": 1}', '{"a": 1}'),
            ('```json\n{"a": 1}\n```', '{"a": 1}'),
            ('```\n{"a": 1}\n```', '{"a": 1}'),
            ('  {"a": 1}  ', '{"a": 1}'),
        ],
    )
    def test_strip(self, text, expected):
        assert strip_code_fence(text) == expected


class TestRunValidatedPass:
    async def test_valid_json(self, router, caller, estimator):
        caller.script("budget/a", json.dumps(_ANALYSIS))

        result = await _run(router, estimator)

        assert result.validated is True
        assert result.data.keywords == ["helm", "deploy"]
        assert result.model_id == "budget/a"
        assert result.tokens > 0

    async def test_router_tier_carried(self, router, caller, estimator):
        caller.script("budget/a", json.dumps(_ANALYSIS))

        result = await _run(router, estimator)

        assert result.tier == CostTier.L1
        assert result.routing_summary == "Single model: budget/a (layer L1)"
        assert result.describe() == "via budget/a (L1)"

    async def test_fallback_keeps_tier(self, router, caller, estimator):
        caller.script("budget/a", "not json")

        result = await _run(router, estimator)

        assert result.validated is False
        assert result.tier == CostTier.L1

    async def test_fenced_json(self, router, caller, estimator):
        caller.script("budget/a", f"```json\n{json.dumps(_ANALYSIS)}\n```")

        result = await _run(router, estimator)

        assert result.validated is True
        assert result.data.intent == "deploy the service"

    async def test_not_json_uses_fallback(self, router, caller, estimator):
        caller.script("budget/a", "Sure! Here is my analysis.")

        result = await _run(router, estimator)

        assert result.validated is False
        assert result.data.intent == "fallback:Sure! Here is my ana"
        assert result.tokens > 0

    async def test_schema_mismatch_uses_fallback(self, router, caller, estimator):
        caller.script("budget/a", json.dumps({"keywords": ["no intent"]}))

        result = await _run(router, estimator)

        assert result.validated is False
        assert result.data.intent.startswith("fallback:")

    async def test_json_mode_forced_without_mutating_request(self, router, caller, estimator):
        request = LLMRequest(prompt="How do I deploy?")
        caller.script("budget/a", json.dumps(_ANALYSIS))

        await _run(router, estimator, request)

        assert caller.calls[0].request.json_mode is True
        assert request.json_mode is False

    async def test_timeout_uses_fallback_with_empty_text(self, router, caller, estimator):
        caller.delay("budget/a", 0.5)

        result = await _run(router, estimator, timeout_seconds=0.05)

        assert result.timed_out is True
        assert result.validated is False
        assert result.tokens == 0
        assert result.data.intent == "fallback:"
        assert result.tier is None
        assert result.describe() == "timed out"

    async def test_model_errors_propagate(self, router, caller, estimator):
        for model_id in ("budget/a", "budget/b", "budget/c"):
            caller.script(model_id, ModelCallError("down"))

        with pytest.raises(ModelCallError):
            await _run(router, estimator)


class TestPassTokens:
    def test_reported_usage_wins(self, estimator):
        request = LLMRequest(prompt="x" * 400)
        response = LLMResponse(content="ok", model_id="m", provider="p", input_tokens=7, output_tokens=3)
        assert pass_tokens(request, response, estimator) == 10

    def test_estimate_when_provider_reports_nothing(self, estimator):
        request = LLMRequest(prompt="abcd")
        response = LLMResponse(content="abcdefgh", model_id="m", provider="p")
        # 3 conversation + (1 + 4) user message + 2 completion
        assert pass_tokens(request, response, estimator) == 10
