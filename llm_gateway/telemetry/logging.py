"""Structured logging configuration.

Configures structlog with JSON output for production and a readable console
renderer for development. Request-scoped identifiers (request_id,
conversation_id) are carried through structlog contextvars so every log
line emitted while handling a request can be correlated.

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "logger": "llm_gateway.agent.model_router.router",
        "event": "layer_router.route_selected",
        "request_id": "req_789...",
        "conversation_id": "conv_uuid",
        "tier": "L1",
        "model_id": "openai/gpt-4o-mini"
    }
"""

from __future__ import annotations

import logging
import sys
import uuid

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the process.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_request_context(
    request_id: str | None = None,
    conversation_id: str | uuid.UUID | None = None,
) -> str:
    """Bind request-scoped identifiers to the log context.

    Returns:
        The request id that was bound (generated when not supplied)
    """
    rid = request_id or f"req_{uuid.uuid4().hex[:16]}"
    structlog.contextvars.bind_contextvars(request_id=rid)
    if conversation_id is not None:
        structlog.contextvars.bind_contextvars(conversation_id=str(conversation_id))
    return rid


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
