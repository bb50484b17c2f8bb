"""Persistence services."""

from llm_gateway.services.conversation import (
    ConversationStore,
    ConversationSummary,
    SqlConversationStore,
    StoredMessage,
)

__all__ = [
    "ConversationStore",
    "ConversationSummary",
    "SqlConversationStore",
    "StoredMessage",
]
