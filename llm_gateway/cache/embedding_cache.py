"""Embedding cache - avoid re-computing embeddings for identical text.

Embeddings are expensive (LLM API call) and entirely deterministic for
a given (text, model) pair. The key is the SHA-256 hash of model + text so
raw message content never appears in Redis and a model change naturally
invalidates old vectors.
"""

from __future__ import annotations

import hashlib

import structlog

from llm_gateway.cache.backend import CacheBackend

log = structlog.get_logger(__name__)

_EMBEDDING_NS = "emb"
_DEFAULT_EMBEDDING_TTL = 86400  # 24 hours


class EmbeddingCache:
    """Cache for dense vector embeddings keyed on content hash."""

    def __init__(self, backend: CacheBackend, *, ttl: int = _DEFAULT_EMBEDDING_TTL) -> None:
        self._backend = backend
        self._ttl = ttl

    @staticmethod
    def hash_text(text: str, model: str = "") -> str:
        """Return the canonical hash for a piece of text embedded by model."""
        return hashlib.sha256(f"{model}\x00{text}".encode()).hexdigest()

    @staticmethod
    def _key(text_hash: str) -> str:
        return f"{_EMBEDDING_NS}:{text_hash}"

    async def get_embedding(self, text_hash: str) -> list[float] | None:
        """Return cached embedding for text_hash, or None on miss."""
        result = await self._backend.get(self._key(text_hash))
        if result is None:
            log.debug("cache.embedding.miss", text_hash=text_hash[:16])
            return None
        log.debug("cache.embedding.hit", text_hash=text_hash[:16])
        return [float(x) for x in result]

    async def cache_embedding(self, text_hash: str, embedding: list[float]) -> None:
        await self._backend.set(self._key(text_hash), embedding, self._ttl)
        log.debug(
            "cache.embedding.stored",
            text_hash=text_hash[:16],
            dims=len(embedding),
            ttl=self._ttl,
        )

    async def flush(self) -> int:
        """Remove all cached embeddings. Returns the number of keys deleted."""
        deleted = await self._backend.delete_pattern(f"{_EMBEDDING_NS}:*")
        log.info("cache.embedding.flushed", keys_deleted=deleted)
        return deleted
