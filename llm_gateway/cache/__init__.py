"""Caching layer.

Public API:
    CacheBackend          - Abstract base for all backends
    RedisCacheBackend     - Redis-backed production cache
    InMemoryCacheBackend  - Dict-backed cache for dev/testing
    get_cache_backend     - Factory: selects backend from settings

    EmbeddingCache        - Content-hash-keyed embedding cache
"""

from llm_gateway.cache.backend import (
    CacheBackend,
    InMemoryCacheBackend,
    RedisCacheBackend,
    get_cache_backend,
)
from llm_gateway.cache.embedding_cache import EmbeddingCache

__all__ = [
    "CacheBackend",
    "EmbeddingCache",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
    "get_cache_backend",
]
