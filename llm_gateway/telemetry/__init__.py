"""Structured logging setup."""

from llm_gateway.telemetry.logging import (
    bind_request_context,
    clear_context,
    configure_logging,
)

__all__ = ["bind_request_context", "clear_context", "configure_logging"]
