"""Background regeneration of the rolling conversation summary.

When the unsummarized backlog older than the recent window grows past the
summarization threshold, the Context Builder schedules a regeneration and
returns without waiting. Regeneration rebuilds the summary wholesale from
every message older than the recent window, stores it with a bumped
version, and flags the backlog as summarized.

Regenerations of one conversation are serialized by a per-conversation
lock, and a schedule request for a conversation that already has one in
flight is dropped. A failed regeneration is logged and leaves the previous
summary untouched; it never reaches the request that triggered it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine, Sequence
from typing import Any

import structlog

from llm_gateway.agent.llm import LLMRequest
from llm_gateway.agent.model_router.router import LayerRouter
from llm_gateway.context.tokens import TokenEstimator
from llm_gateway.exceptions import GatewayError
from llm_gateway.services.conversation import (
    ConversationStore,
    ConversationSummary,
    StoredMessage,
)

log = structlog.get_logger(__name__)

_SUMMARY_PROMPT = """\
Please provide a concise summary of the following conversation, capturing the \
key points, decisions made, and important context that would be helpful for \
continuing the conversation. Keep the summary under 500 words.

Conversation:
{transcript}

Summary:"""

_SUMMARY_MAX_TOKENS = 700
# Transcript tokens sent to the summary model; older turns are dropped first
_TRANSCRIPT_TOKEN_CAP = 6000


def extractive_summary(messages: Sequence[StoredMessage]) -> str:
    """Summary built from the opening, middle and latest turns.

    Used when no summary model is configured or the model call fails.
    """
    if not messages:
        return ""
    parts = [f"Initial topic: {messages[0].content[:200]}..."]
    if len(messages) > 4:
        mid = messages[len(messages) // 2]
        parts.append(f"Mid-conversation: {mid.content[:150]}...")
    if len(messages) > 1:
        parts.append(f"Recent context: {messages[-1].content[:200]}...")
    parts.append(f"Total exchanges: {len(messages)} messages")
    return "\n\n".join(parts)


class ConversationSummarizer:
    def __init__(
        self,
        store: ConversationStore,
        estimator: TokenEstimator,
        *,
        router: LayerRouter | None = None,
    ) -> None:
        self._store = store
        self._estimator = estimator
        self._router = router
        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: dict[str, asyncio.Task[Any]] = {}

    @property
    def pending(self) -> int:
        return len(self._in_flight)

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    def _safe_background_task(self, coro: Coroutine[Any, Any, Any], conversation_id: str) -> None:
        async def _wrapper() -> None:
            try:
                await coro
            except Exception as exc:
                log.error(
                    "background_task.summary_regeneration.failed",
                    conversation_id=conversation_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
            finally:
                self._in_flight.pop(conversation_id, None)
                lock = self._locks.get(conversation_id)
                if lock is not None and not lock.locked():
                    self._locks.pop(conversation_id, None)

        self._in_flight[conversation_id] = asyncio.create_task(_wrapper())

    def schedule(self, conversation_id: str, before_turn: int) -> bool:
        """Start a regeneration in the background without waiting for it.

        Returns False when one is already running for the conversation.
        """
        if conversation_id in self._in_flight:
            log.debug("summarizer.already_scheduled", conversation_id=conversation_id)
            return False
        self._safe_background_task(self.regenerate(conversation_id, before_turn), conversation_id)
        log.info(
            "summarizer.scheduled",
            conversation_id=conversation_id,
            before_turn=before_turn,
        )
        return True

    async def regenerate(
        self, conversation_id: str, before_turn: int
    ) -> ConversationSummary | None:
        """Rebuild the summary from every message older than before_turn.

        Returns the stored summary, or None when there is nothing to summarize.

        Raises:
            StoreError: Reading history or saving the summary failed
        """
        async with self._lock_for(conversation_id):
            history = [
                m
                for m in await self._store.load_all_messages(conversation_id)
                if m.turn_index < before_turn
            ]
            if not history:
                return None
            backlog_ids = [m.id for m in history if not m.is_summarized]

            text = await self._generate(history)
            summary = await self._store.save_summary(
                conversation_id,
                text=text,
                token_estimate=self._estimator.estimate(text),
            )
            marked = await self._store.mark_summarized(conversation_id, backlog_ids)

        log.info(
            "summarizer.regenerated",
            conversation_id=conversation_id,
            version=summary.version,
            summary_tokens=summary.token_estimate,
            messages_marked=marked,
        )
        return summary

    async def _generate(self, history: Sequence[StoredMessage]) -> str:
        if self._router is None:
            return extractive_summary(history)

        lines = [f"{m.role.upper()}: {m.content}" for m in history]
        used = 0
        kept: list[str] = []
        for line in reversed(lines):
            cost = self._estimator.estimate(line)
            if used + cost > _TRANSCRIPT_TOKEN_CAP:
                break
            kept.append(line)
            used += cost
        transcript = "\n\n".join(reversed(kept))

        request = LLMRequest(
            prompt=_SUMMARY_PROMPT.format(transcript=transcript),
            max_tokens=_SUMMARY_MAX_TOKENS,
            temperature=0.3,
        )
        try:
            response = await self._router.complete(request)
        except GatewayError as exc:
            log.warning("summarizer.model_failed", error=str(exc))
            return extractive_summary(history)

        text = response.content.strip()
        return text or extractive_summary(history)

    async def aclose(self) -> None:
        """Wait for every in-flight regeneration to finish."""
        tasks = list(self._in_flight.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
