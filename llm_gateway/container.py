"""Service container: builds every gateway service once and hands out references.

There are no module-level singletons. A host process (HTTP app, CLI,
worker) calls ServiceContainer.build() at startup and aclose() at
shutdown, the way a FastAPI lifespan would:

    settings = get_settings()
    configure_logging(json_logs=settings.log_json, log_level=settings.log_level)
    container = await ServiceContainer.build(settings)
    try:
        result = await container.orchestrator.handle(request)
    finally:
        await container.aclose()

Collaborators can be injected for tests and offline development; anything
not injected is built from settings (LiteLLM client, SQL store, Redis or
in-memory cache).
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from llm_gateway.agent.llm import EmbeddingProvider, LLMClient, ModelCaller
from llm_gateway.agent.model_router.catalog import ModelCatalog
from llm_gateway.agent.model_router.complexity import ComplexityEstimator
from llm_gateway.agent.model_router.router import LayerRouter
from llm_gateway.agent.orchestrator import Orchestrator
from llm_gateway.agent.schemas import OrchestratorStrategy
from llm_gateway.cache.backend import CacheBackend, get_cache_backend
from llm_gateway.cache.embedding_cache import EmbeddingCache
from llm_gateway.config import Settings
from llm_gateway.context.builder import ContextBuilder
from llm_gateway.context.config import (
    ContextConfig,
    ContextConfigResolver,
    ContextConfigSource,
)
from llm_gateway.context.embeddings import EmbeddingService
from llm_gateway.context.summarizer import ConversationSummarizer
from llm_gateway.context.tokens import TokenEstimator
from llm_gateway.database import build_engine, build_session_factory
from llm_gateway.services.context_config import SqlContextConfigSource
from llm_gateway.services.conversation import ConversationStore, SqlConversationStore

log = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    catalog: ModelCatalog
    router: LayerRouter
    complexity: ComplexityEstimator
    estimator: TokenEstimator
    cache: CacheBackend
    store: ConversationStore
    context_resolver: ContextConfigResolver
    summarizer: ConversationSummarizer
    context_builder: ContextBuilder
    orchestrator: Orchestrator
    engine: AsyncEngine | None = None

    @classmethod
    async def build(
        cls,
        settings: Settings,
        *,
        caller: ModelCaller | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        store: ConversationStore | None = None,
        config_source: ContextConfigSource | None = None,
        cache: CacheBackend | None = None,
    ) -> ServiceContainer:
        """Wire the gateway from settings plus any injected collaborators.

        A SQL engine is created only when no store is injected; the
        context config source then defaults to the same database.
        """
        engine: AsyncEngine | None = None
        if store is None:
            engine = build_engine(settings)
            session_factory = build_session_factory(engine)
            store = SqlConversationStore(session_factory)
            if config_source is None:
                config_source = SqlContextConfigSource(session_factory)

        if caller is None or embedding_provider is None:
            client = LLMClient(settings)
            caller = caller or client
            embedding_provider = embedding_provider or client

        cache = cache or get_cache_backend(settings)
        estimator = TokenEstimator(settings.token_estimator_method)
        catalog = ModelCatalog.from_settings(settings)
        router = LayerRouter.from_settings(settings, catalog, caller)
        complexity = ComplexityEstimator(
            catalog, caller, use_model=settings.llm_complexity_detection
        )

        resolver = ContextConfigResolver(ContextConfig.from_settings(settings), config_source)
        await resolver.refresh()

        embeddings = EmbeddingService(
            embedding_provider,
            EmbeddingCache(cache, ttl=settings.embedding_cache_ttl_seconds),
            model_name=settings.litellm_embedding_model,
        )
        summarizer = ConversationSummarizer(store, estimator, router=router)
        context_builder = ContextBuilder(
            store,
            estimator,
            resolver,
            embeddings=embeddings,
            summarizer=summarizer,
            catalog=catalog,
        )
        orchestrator = Orchestrator(
            router,
            estimator,
            context_builder=context_builder,
            default_strategy=OrchestratorStrategy.from_settings(settings),
        )

        log.info(
            "container.built",
            environment=settings.environment,
            models=len(catalog.all_models()),
            database=engine is not None,
            estimator=estimator.method,
        )
        return cls(
            settings=settings,
            catalog=catalog,
            router=router,
            complexity=complexity,
            estimator=estimator,
            cache=cache,
            store=store,
            context_resolver=resolver,
            summarizer=summarizer,
            context_builder=context_builder,
            orchestrator=orchestrator,
            engine=engine,
        )

    async def aclose(self) -> None:
        """Drain background summaries, then release the cache and database."""
        await self.summarizer.aclose()
        await self.cache.close()
        if self.engine is not None:
            await self.engine.dispose()
        log.info("container.closed")
