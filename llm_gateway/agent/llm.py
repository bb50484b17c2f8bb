"""LiteLLM wrapper for model-agnostic LLM calls.

LiteLLM provides a unified interface for 100+ LLM providers. We proxy
all calls through a LiteLLM proxy server to:
1. Keep API keys out of the application code
2. Enable provider fallbacks and cost tracking at the proxy level
3. Support swapping models without code changes (just config)

This module:
- Defines the provider-agnostic LLMRequest / LLMResponse types
- Defines the ModelCaller and EmbeddingProvider interfaces the routing
  and context layers depend on
- Wraps litellm.acompletion() and litellm.aembedding() in LLMClient,
  retrying transient failures with exponential backoff via tenacity
- Normalizes errors to our domain exceptions
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import litellm
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from llm_gateway.config import CostTier, Settings
from llm_gateway.exceptions import (
    EmbeddingError,
    ModelCallError,
    ModelRateLimitError,
    ModelUnavailableError,
)

if TYPE_CHECKING:
    from llm_gateway.agent.model_router.catalog import ModelDescriptor

log = structlog.get_logger(__name__)

# Domain errors worth retrying against the same model
_RETRYABLE = (ModelRateLimitError, ModelUnavailableError)


@dataclass
class LLMRequest:
    """A single prompt to send to one model.

    Attributes:
        prompt: The user-turn text. Appended after `messages` when non-empty.
        system_prompt: Optional system message placed first
        messages: Prior chat messages in OpenAI format (role/content dicts)
        max_tokens: Maximum output tokens
        temperature: Sampling temperature (0.0 = deterministic)
        json_mode: Ask the provider for a JSON object response
    """

    prompt: str
    system_prompt: str | None = None
    messages: list[dict[str, str]] = field(default_factory=list)
    max_tokens: int = 2048
    temperature: float = 0.7
    json_mode: bool = False

    def to_messages(self) -> list[dict[str, str]]:
        out: list[dict[str, str]] = []
        if self.system_prompt:
            out.append({"role": "system", "content": self.system_prompt})
        out.extend(self.messages)
        if self.prompt:
            out.append({"role": "user", "content": self.prompt})
        return out


@dataclass
class LLMResponse:
    """Result of a model call, annotated by the router with how it was produced."""

    content: str
    model_id: str
    provider: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    tier: CostTier | None = None
    routing_summary: str = ""
    conflicts: list[str] = field(default_factory=list)
    escalated_from: CostTier | None = None
    requires_escalation_confirm: bool = False
    suggested_tier: CostTier | None = None
    escalation_reason: str | None = None
    optimized_prompt: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ModelCaller(ABC):
    """Provider-agnostic model-calling capability."""

    @abstractmethod
    async def call(self, request: LLMRequest, model: ModelDescriptor) -> LLMResponse:
        """Send request to model and return its response.

        Raises:
            ModelCallError: The call failed
        """


class EmbeddingProvider(ABC):
    """Text embedding capability."""

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per input text, in order.

        Raises:
            EmbeddingError: Embedding failed
        """


class LLMClient(ModelCaller, EmbeddingProvider):
    """Thin wrapper around LiteLLM with retry logic and structured logging."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        # Route every call through the LiteLLM proxy
        litellm.api_base = settings.litellm_base_url
        litellm.api_key = settings.litellm_api_key.get_secret_value()

    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def complete(
        self,
        *,
        messages: list[dict[str, str]],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        **kwargs: Any,
    ) -> litellm.ModelResponse:
        """Send a chat completion request via LiteLLM.

        Args:
            messages: List of role/content dicts (OpenAI format)
            model: Model identifier (LiteLLM format)
            temperature: Sampling temperature (0.0 = deterministic)
            max_tokens: Maximum output tokens
            **kwargs: Additional kwargs passed to litellm.acompletion()

        Returns:
            LiteLLM ModelResponse object

        Raises:
            ModelRateLimitError: Upstream rate limit after retries
            ModelUnavailableError: Service unavailable or timed out after retries
            ModelCallError: Any other LLM failure
        """
        log.debug(
            "llm.completion_request",
            model=model,
            message_count=len(messages),
            max_tokens=max_tokens,
        )

        try:
            response: litellm.ModelResponse = await litellm.acompletion(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs,
            )
        except litellm.exceptions.RateLimitError as exc:
            raise ModelRateLimitError(f"Rate limit from upstream LLM: {exc}") from exc
        except (litellm.exceptions.ServiceUnavailableError, litellm.exceptions.Timeout) as exc:
            raise ModelUnavailableError(f"LLM service unavailable: {exc}") from exc
        except ConnectionError as exc:
            raise ModelUnavailableError(f"LLM connection failed: {exc}") from exc
        except Exception as exc:
            raise ModelCallError(f"LLM completion failed: {exc}") from exc

        usage = response.usage
        if usage:
            log.info(
                "llm.completion_done",
                model=model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
            )

        return response

    async def call(self, request: LLMRequest, model: ModelDescriptor) -> LLMResponse:
        kwargs: dict[str, Any] = {}
        if request.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self.complete(
            messages=request.to_messages(),
            model=model.model_id,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            **kwargs,
        )

        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0
        return LLMResponse(
            content=self.extract_text(response),
            model_id=model.model_id,
            provider=model.provider,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=model.relative_cost * (input_tokens + output_tokens) / 1_000_000,
            tier=model.tier,
        )

    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Create embeddings for a list of texts.

        Returns:
            List of embedding vectors (one per input text)

        Raises:
            EmbeddingError: If embedding fails
        """
        if not texts:
            return []

        model = self._settings.litellm_embedding_model
        try:
            response = await litellm.aembedding(model=model, input=texts)
        except litellm.exceptions.RateLimitError as exc:
            raise ModelRateLimitError(f"Embedding rate limited: {exc}") from exc
        except Exception as exc:
            raise EmbeddingError(f"Embedding failed: {exc}") from exc

        embeddings = [item["embedding"] for item in response.data]
        log.debug(
            "llm.embedding_done",
            model=model,
            text_count=len(texts),
            dimensions=len(embeddings[0]) if embeddings else 0,
        )
        return embeddings

    @staticmethod
    def extract_text(response: litellm.ModelResponse) -> str:
        """Extract the assistant text content from a completion response."""
        try:
            return response.choices[0].message.content or ""
        except (AttributeError, IndexError, KeyError):
            return ""
