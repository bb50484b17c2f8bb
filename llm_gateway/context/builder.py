"""Context Builder: decides which conversation history a model call sees.

build_context() resolves the effective configuration, runs one of four
strategies and returns the chat messages to send:

    [system prompt] [summary] [retrieved spans] [recent history...] [current message]

History budget = max_prompt_tokens - (system prompt + current message).
The system prompt and the current message are always included; only
history is trimmed. Every candidate is costed with the shared
TokenEstimator before admission, so total_tokens equals
estimator.estimate_messages(messages).

Failure policy:
    span-retrieval  -> last-n  (no embeddings, embedding or store failure)
    summary+recent  -> last-n  (summary lookup failure)
    anything else   -> system prompt + current message
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from llm_gateway.agent.model_router.catalog import ModelCatalog
from llm_gateway.config import ContextStrategy
from llm_gateway.context.config import ContextConfig, ContextConfigResolver
from llm_gateway.context.embeddings import EmbeddingService
from llm_gateway.context.spans import (
    RetrievedMessage,
    SpanRetrievalUnavailable,
    SpanRetriever,
)
from llm_gateway.context.summarizer import ConversationSummarizer
from llm_gateway.context.tokens import TokenEstimator
from llm_gateway.exceptions import EmbeddingError, StoreError
from llm_gateway.services.conversation import ConversationStore, StoredMessage

log = structlog.get_logger(__name__)

SUMMARY_HEADER = "[Previous conversation summary]"
SPANS_HEADER = "[Relevant context from earlier in conversation]"
SPAN_SEPARATOR = "\n---\n"


@dataclass
class ContextBuildMetadata:
    recent_messages_included: int = 0
    spans_retrieved: int = 0
    summary_included: bool = False
    token_budget: int = 0
    token_used: int = 0
    degraded_from: ContextStrategy | None = None
    message_ids: list[str] = field(default_factory=list)


@dataclass
class ContextBuildResult:
    """Messages to send plus how they were chosen.

    Attributes:
        messages: Chat messages in send order (role/content dicts)
        total_tokens: Estimated prompt tokens of `messages`
        strategy_used: Strategy that produced the history (after degradation)
        summarization_triggered: A background summary regeneration was scheduled
        metadata: Admission details
    """

    messages: list[dict[str, str]]
    total_tokens: int
    strategy_used: ContextStrategy
    summarization_triggered: bool = False
    metadata: ContextBuildMetadata = field(default_factory=ContextBuildMetadata)


class _Degrade(Exception):
    """Internal signal: fall back from a strategy to last-n."""


@dataclass
class _History:
    """History chosen by a strategy, between the system prompt and current message."""

    messages: list[dict[str, str]] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)
    recent_included: int = 0
    spans_retrieved: int = 0
    summary_included: bool = False
    summarization_triggered: bool = False


class ContextBuilder:
    def __init__(
        self,
        store: ConversationStore,
        estimator: TokenEstimator,
        resolver: ContextConfigResolver,
        *,
        embeddings: EmbeddingService | None = None,
        summarizer: ConversationSummarizer | None = None,
        catalog: ModelCatalog | None = None,
    ) -> None:
        self._store = store
        self._estimator = estimator
        self._resolver = resolver
        self._embeddings = embeddings
        self._summarizer = summarizer
        self._catalog = catalog
        self._spans = (
            SpanRetriever(store, embeddings, estimator) if embeddings is not None else None
        )

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def build_context(
        self,
        conversation_id: str,
        current_user_message: str,
        *,
        model_id: str | None = None,
        config_overrides: Mapping[str, Any] | None = None,
        project_id: str | None = None,
        tool_id: str | None = None,
    ) -> ContextBuildResult:
        """Build the prompt messages for one model call.

        Args:
            conversation_id: Conversation whose history to draw from
            current_user_message: The message being answered; always included
            model_id: Target model; caps the budget at its context window
            config_overrides: Per-call configuration, highest precedence
            project_id: Project whose stored overrides apply
            tool_id: Tool whose stored overrides apply

        Raises:
            pydantic.ValidationError: config_overrides form an invalid configuration
        """
        config = self._resolver.resolve(
            project_id=project_id, tool_id=tool_id, overrides=config_overrides
        )
        budget = self._budget_for(config, model_id)

        head: list[dict[str, str]] = []
        if config.system_prompt:
            head.append({"role": "system", "content": config.system_prompt})
        current = {"role": "user", "content": current_user_message}
        fixed_tokens = self._estimator.estimate_messages([*head, current])
        history_budget = max(0, budget - fixed_tokens)

        strategy = config.strategy
        degraded_from: ContextStrategy | None = None
        try:
            try:
                history = await self._run_strategy(
                    strategy, conversation_id, current_user_message, config, history_budget
                )
            except _Degrade as exc:
                log.warning(
                    "context_builder.degraded",
                    conversation_id=conversation_id,
                    strategy=strategy.value,
                    fallback=ContextStrategy.LAST_N.value,
                    reason=str(exc),
                )
                degraded_from = strategy
                strategy = ContextStrategy.LAST_N
                history = await self._last_n(conversation_id, config, history_budget)
        except Exception as exc:
            log.error(
                "context_builder.failed",
                conversation_id=conversation_id,
                strategy=strategy.value,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            degraded_from = degraded_from or strategy
            history = _History()

        messages = [*head, *history.messages, current]
        total_tokens = self._estimator.estimate_messages(messages)
        metadata = ContextBuildMetadata(
            recent_messages_included=history.recent_included,
            spans_retrieved=history.spans_retrieved,
            summary_included=history.summary_included,
            token_budget=budget,
            token_used=total_tokens,
            degraded_from=degraded_from,
            message_ids=history.message_ids,
        )
        log.info(
            "context_builder.built",
            conversation_id=conversation_id,
            strategy=strategy.value,
            degraded_from=degraded_from.value if degraded_from else None,
            messages=len(messages),
            total_tokens=total_tokens,
            token_budget=budget,
            summarization_triggered=history.summarization_triggered,
        )
        return ContextBuildResult(
            messages=messages,
            total_tokens=total_tokens,
            strategy_used=strategy,
            summarization_triggered=history.summarization_triggered,
            metadata=metadata,
        )

    async def generate_message_embedding(self, message_id: str, content: str) -> bool:
        """Embed one stored message and persist the vector.

        Returns False when no embedding service is configured or the call failed.
        """
        if self._embeddings is None:
            return False
        try:
            vector = await self._embeddings.embed_text(content)
            await self._store.store_embedding(message_id, vector)
        except (EmbeddingError, StoreError) as exc:
            log.warning("context_builder.embedding_failed", message_id=message_id, error=str(exc))
            return False
        return True

    async def backfill_embeddings(self, conversation_id: str, batch_size: int = 10) -> int:
        """Embed up to batch_size of the oldest messages still missing a vector.

        Returns the number of messages embedded.
        """
        if self._embeddings is None:
            return 0
        processed = 0
        try:
            pending = await self._store.load_messages_without_embedding(
                conversation_id, batch_size
            )
            if not pending:
                return 0
            vectors = await self._embeddings.embed_many([m.content for m in pending])
            for message, vector in zip(pending, vectors):
                await self._store.store_embedding(message.id, vector)
                processed += 1
        except (EmbeddingError, StoreError) as exc:
            log.error(
                "context_builder.backfill_failed",
                conversation_id=conversation_id,
                processed=processed,
                error=str(exc),
            )
            return processed

        log.info(
            "context_builder.backfilled",
            conversation_id=conversation_id,
            processed=processed,
            total=len(pending),
        )
        return processed

    # ------------------------------------------------------------------ #
    # Strategies
    # ------------------------------------------------------------------ #

    def _budget_for(self, config: ContextConfig, model_id: str | None) -> int:
        budget = config.max_prompt_tokens
        if model_id and self._catalog is not None:
            model = self._catalog.get(model_id)
            if model is not None and model.context_window < budget:
                budget = model.context_window
        return budget

    async def _run_strategy(
        self,
        strategy: ContextStrategy,
        conversation_id: str,
        current_user_message: str,
        config: ContextConfig,
        history_budget: int,
    ) -> _History:
        if strategy == ContextStrategy.FULL:
            return await self._full(conversation_id, history_budget)
        if strategy == ContextStrategy.LAST_N:
            return await self._last_n(conversation_id, config, history_budget)
        if strategy == ContextStrategy.SUMMARY_RECENT:
            return await self._summary_recent(conversation_id, config, history_budget)
        return await self._span_retrieval(
            conversation_id, current_user_message, config, history_budget
        )

    async def _full(self, conversation_id: str, history_budget: int) -> _History:
        messages = await self._store.load_all_messages(conversation_id)
        admitted = self._admit_newest(messages, history_budget, floor=0)
        return self._history_from(admitted)

    async def _last_n(
        self, conversation_id: str, config: ContextConfig, history_budget: int
    ) -> _History:
        recent = await self._store.load_recent_messages(
            conversation_id, config.recent_max_messages
        )
        admitted = self._admit_newest(recent, history_budget, floor=config.recent_min_messages)
        return self._history_from(admitted)

    async def _summary_recent(
        self, conversation_id: str, config: ContextConfig, history_budget: int
    ) -> _History:
        try:
            summary = await self._store.get_summary(conversation_id)
        except StoreError as exc:
            raise _Degrade(f"summary lookup failed: {exc}") from exc

        recent = await self._store.load_recent_messages(
            conversation_id, config.recent_max_messages
        )
        history = _History()
        remaining = history_budget
        if summary is not None and summary.text:
            summary_message = {"role": "system", "content": f"{SUMMARY_HEADER}\n{summary.text}"}
            cost = self._estimator.estimate_message(summary_message)
            if cost <= remaining:
                history.messages.append(summary_message)
                history.summary_included = True
                remaining -= cost
            else:
                log.debug(
                    "context_builder.summary_skipped",
                    conversation_id=conversation_id,
                    summary_tokens=cost,
                    remaining=remaining,
                )

        admitted = self._admit_newest(recent, remaining, floor=config.recent_min_messages)
        self._append_recent(history, admitted)
        history.summarization_triggered = await self._maybe_summarize(
            conversation_id, recent, config
        )
        return history

    async def _span_retrieval(
        self,
        conversation_id: str,
        current_user_message: str,
        config: ContextConfig,
        history_budget: int,
    ) -> _History:
        if self._spans is None:
            raise _Degrade("no embedding service configured")

        recent = await self._store.load_recent_messages(
            conversation_id, config.recent_max_messages
        )
        before_turn = recent[0].turn_index if recent else None
        span_budget = int(history_budget * config.span_budget_ratio)
        header_cost = self._estimator.estimate_message(
            {"role": "system", "content": SPANS_HEADER}
        )

        retrieved: list[RetrievedMessage] = []
        if span_budget > header_cost:
            try:
                result = await self._spans.retrieve(
                    conversation_id,
                    query_text=current_user_message,
                    before_turn=before_turn,
                    top_k=config.span_top_k,
                    radius=config.span_radius,
                    min_similarity=config.span_min_similarity,
                    token_budget=span_budget - header_cost,
                )
            except (SpanRetrievalUnavailable, EmbeddingError, StoreError) as exc:
                raise _Degrade(f"span retrieval failed: {exc}") from exc
            retrieved = result.messages

        history = _History()
        remaining = history_budget
        span_message = self._fit_span_block(retrieved, span_budget)
        if span_message is not None:
            block, included = span_message
            history.messages.append(block)
            history.message_ids.extend(m.message.id for m in included)
            history.spans_retrieved = len(included)
            remaining -= self._estimator.estimate_message(block)

        admitted = self._admit_newest(recent, remaining, floor=0)
        self._append_recent(history, admitted)
        history.summarization_triggered = await self._maybe_summarize(
            conversation_id, recent, config
        )
        return history

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _fit_span_block(
        self, retrieved: Sequence[RetrievedMessage], span_budget: int
    ) -> tuple[dict[str, str], list[RetrievedMessage]] | None:
        """Format retrieved messages as one system message within span_budget.

        Drops the least similar non-anchor messages first if the formatted
        block costs more than the per-message estimates added up to.
        """
        included = list(retrieved)
        while included:
            content = SPANS_HEADER + "\n" + SPAN_SEPARATOR.join(m.format() for m in included)
            block = {"role": "system", "content": content}
            if self._estimator.estimate_message(block) <= span_budget:
                return block, included
            victim = next(
                (m for m in reversed(included) if not m.is_anchor),
                included[-1],
            )
            included.remove(victim)
        return None

    def _cost(self, message: StoredMessage) -> int:
        return self._estimator.estimate_message(message.to_chat())

    def _admit_newest(
        self, messages: Sequence[StoredMessage], budget: int, *, floor: int
    ) -> list[StoredMessage]:
        """Admit messages newest first while they fit; return them oldest first.

        The newest `floor` messages are admitted even when they exceed the budget.
        """
        admitted: list[StoredMessage] = []
        used = 0
        for message in reversed(messages):
            cost = self._cost(message)
            if used + cost > budget and len(admitted) >= floor:
                break
            admitted.append(message)
            used += cost
        admitted.reverse()
        return admitted

    @staticmethod
    def _append_recent(history: _History, admitted: Sequence[StoredMessage]) -> None:
        history.messages.extend(m.to_chat() for m in admitted)
        history.message_ids.extend(m.id for m in admitted)
        history.recent_included = len(admitted)

    def _history_from(self, admitted: Sequence[StoredMessage]) -> _History:
        history = _History()
        self._append_recent(history, admitted)
        return history

    async def _maybe_summarize(
        self,
        conversation_id: str,
        recent: Sequence[StoredMessage],
        config: ContextConfig,
    ) -> bool:
        """Schedule a summary regeneration once the backlog crosses the threshold."""
        if self._summarizer is None or not recent:
            return False
        before_turn = recent[0].turn_index
        if before_turn == 0:
            return False
        try:
            backlog = await self._store.load_unsummarized_before(conversation_id, before_turn)
        except StoreError as exc:
            log.warning(
                "context_builder.backlog_lookup_failed",
                conversation_id=conversation_id,
                error=str(exc),
            )
            return False

        backlog_tokens = sum(
            m.token_estimate if m.token_estimate is not None else self._estimator.estimate(m.content)
            for m in backlog
        )
        if backlog_tokens <= config.summarization_threshold:
            return False

        log.info(
            "context_builder.summarization_triggered",
            conversation_id=conversation_id,
            backlog_messages=len(backlog),
            backlog_tokens=backlog_tokens,
            threshold=config.summarization_threshold,
        )
        return self._summarizer.schedule(conversation_id, before_turn)

