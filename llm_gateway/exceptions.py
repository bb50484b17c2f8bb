"""Domain exceptions shared across the gateway services.

Only ConfigurationError (and its NoModelAvailableError subclass) is meant to
reach callers of the LayerRouter. Everything else is recovered locally by
the degraded-fallback paths of the component that hit it.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base exception for all gateway failures."""


class ConfigurationError(GatewayError):
    """Deployment configuration cannot satisfy the request. Never retried."""


class NoModelAvailableError(ConfigurationError):
    """A required cost tier has no models configured."""

    def __init__(self, tier: str) -> None:
        super().__init__(f"No model available for tier {tier}")
        self.tier = tier


class ModelCallError(GatewayError):
    """A model call failed after client-level retries."""


class ModelRateLimitError(ModelCallError):
    """Upstream LLM rate limit exceeded."""


class ModelUnavailableError(ModelCallError):
    """LLM service is unavailable."""


class StoreError(GatewayError):
    """The conversation store could not serve a read or write."""


class EmbeddingError(GatewayError):
    """Embedding generation failed."""
