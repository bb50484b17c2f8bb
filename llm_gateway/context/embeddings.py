"""Embedding service for span retrieval and background backfill.

Wraps an EmbeddingProvider with the content-hash EmbeddingCache, so the
same message text is only ever sent to the embedding model once per cache
TTL. Provider failures surface as EmbeddingError for the caller to degrade.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from llm_gateway.agent.llm import EmbeddingProvider
from llm_gateway.cache.embedding_cache import EmbeddingCache
from llm_gateway.exceptions import EmbeddingError, GatewayError

log = structlog.get_logger(__name__)


class EmbeddingService:
    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache,
        *,
        model_name: str = "",
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._model_name = model_name

    async def embed_text(self, text: str) -> list[float]:
        """Embed one text, consulting the cache first.

        Raises:
            EmbeddingError: Provider failed or returned nothing
        """
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts in order; only cache misses reach the provider.

        Raises:
            EmbeddingError: Provider failed or returned the wrong number of vectors
        """
        if not texts:
            return []

        hashes = [EmbeddingCache.hash_text(t, self._model_name) for t in texts]
        results: list[list[float] | None] = []
        for text_hash in hashes:
            results.append(await self._cache.get_embedding(text_hash))

        missing = [i for i, vec in enumerate(results) if vec is None]
        if missing:
            try:
                fresh = await self._provider.embed([texts[i] for i in missing])
            except GatewayError as exc:
                raise EmbeddingError(f"Embedding provider failed: {exc}") from exc
            if len(fresh) != len(missing):
                raise EmbeddingError(
                    f"Embedding provider returned {len(fresh)} vectors for {len(missing)} texts"
                )
            for i, vector in zip(missing, fresh):
                results[i] = list(vector)
                await self._cache.cache_embedding(hashes[i], results[i])

        log.debug(
            "embedding_service.embedded",
            text_count=len(texts),
            cache_hits=len(texts) - len(missing),
        )
        return [vec for vec in results if vec is not None]
