"""Context Builder: prompt history selection under a token budget."""

from llm_gateway.context.builder import ContextBuilder, ContextBuildMetadata, ContextBuildResult
from llm_gateway.context.config import (
    ContextConfig,
    ContextConfigResolver,
    ContextConfigSource,
    InMemoryContextConfigSource,
)
from llm_gateway.context.embeddings import EmbeddingService
from llm_gateway.context.spans import SpanRetrievalResult, SpanRetrievalUnavailable, SpanRetriever
from llm_gateway.context.summarizer import ConversationSummarizer, extractive_summary
from llm_gateway.context.tokens import TokenEstimator, estimate_tokens

__all__ = [
    "ContextBuildMetadata",
    "ContextBuildResult",
    "ContextBuilder",
    "ContextConfig",
    "ContextConfigResolver",
    "ContextConfigSource",
    "ConversationSummarizer",
    "EmbeddingService",
    "InMemoryContextConfigSource",
    "SpanRetrievalResult",
    "SpanRetrievalUnavailable",
    "SpanRetriever",
    "TokenEstimator",
    "estimate_tokens",
    "extractive_summary",
]
