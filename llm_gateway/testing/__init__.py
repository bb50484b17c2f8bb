"""Offline collaborators for tests and local development."""

from llm_gateway.testing.memory_store import InMemoryConversationStore
from llm_gateway.testing.mock_llm import (
    ANY_MODEL,
    ScriptedEmbeddingProvider,
    ScriptedModelCaller,
)

__all__ = [
    "ANY_MODEL",
    "InMemoryConversationStore",
    "ScriptedEmbeddingProvider",
    "ScriptedModelCaller",
]
