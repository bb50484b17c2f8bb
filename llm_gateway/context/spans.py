"""Span retrieval: relevant earlier windows of a conversation.

Messages most similar to the query become anchors. Each anchor expands to
a window of +/- radius turns, overlapping or adjacent windows merge, and
the merged spans are admitted greedily, most anchors first, until the
token budget is spent. A span that does not fit whole is admitted
partially, growing outward from its anchors; one whose anchors alone do
not fit is skipped.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from llm_gateway.context.embeddings import EmbeddingService
from llm_gateway.context.tokens import TokenEstimator
from llm_gateway.exceptions import GatewayError
from llm_gateway.services.conversation import ConversationStore, StoredMessage

log = structlog.get_logger(__name__)

# Cost of the "\n---\n" separator between span items in the prompt
SEPARATOR_TOKENS = 2


class SpanRetrievalUnavailable(GatewayError):
    """No stored embeddings (or no query embedding) to retrieve against."""


@dataclass(frozen=True)
class RetrievedMessage:
    message: StoredMessage
    tokens: int
    is_anchor: bool = False
    similarity: float | None = None

    @property
    def turn_index(self) -> int:
        return self.message.turn_index

    def format(self) -> str:
        return f"[{self.message.role}]: {self.message.content}"


@dataclass
class MessageSpan:
    """A contiguous run of turns around one or more anchors."""

    start_turn: int
    end_turn: int
    anchor_turns: list[int] = field(default_factory=list)
    similarity_sum: float = 0.0
    messages: list[RetrievedMessage] = field(default_factory=list)

    @property
    def tokens(self) -> int:
        return sum(m.tokens for m in self.messages)

    @property
    def anchor_count(self) -> int:
        return len(self.anchor_turns)


@dataclass
class SpanRetrievalResult:
    spans: list[MessageSpan]
    anchor_count: int
    total_tokens: int
    skipped_spans: int = 0

    @property
    def messages(self) -> list[RetrievedMessage]:
        """Every admitted message in chronological order."""
        out = [m for span in self.spans for m in span.messages]
        out.sort(key=lambda m: m.turn_index)
        return out


def _merge_windows(anchors: list[tuple[StoredMessage, float]], radius: int) -> list[MessageSpan]:
    windows = sorted(
        (max(0, msg.turn_index - radius), msg.turn_index + radius, msg.turn_index, score)
        for msg, score in anchors
    )
    spans: list[MessageSpan] = []
    for start, end, anchor_turn, score in windows:
        if spans and start <= spans[-1].end_turn + 1:
            last = spans[-1]
            last.end_turn = max(last.end_turn, end)
            last.anchor_turns.append(anchor_turn)
            last.similarity_sum += score
        else:
            spans.append(
                MessageSpan(
                    start_turn=start,
                    end_turn=end,
                    anchor_turns=[anchor_turn],
                    similarity_sum=score,
                )
            )
    return spans


def _fit_partial(span: MessageSpan, budget: int) -> list[RetrievedMessage] | None:
    """Grow a span outward from its anchors until the budget is spent.

    Every anchor gets one message per side per round, nearest first, and a
    side stops growing at the first message that does not fit, so the
    result stays contiguous around each anchor. Returns None when the
    anchors themselves do not fit.
    """
    messages = span.messages
    anchor_positions = [i for i, m in enumerate(messages) if m.is_anchor]
    used = sum(messages[i].tokens for i in anchor_positions)
    if not anchor_positions or used > budget:
        return None

    admitted = set(anchor_positions)
    # position -> [next lower position, next higher position], None once blocked
    frontiers: dict[int, list[int | None]] = {i: [i - 1, i + 1] for i in anchor_positions}
    while any(side is not None for sides in frontiers.values() for side in sides):
        for sides in frontiers.values():
            for direction, step in ((0, -1), (1, 1)):
                pos = sides[direction]
                while pos is not None and 0 <= pos < len(messages) and pos in admitted:
                    pos += step
                if pos is None or not 0 <= pos < len(messages):
                    sides[direction] = None
                    continue
                if used + messages[pos].tokens > budget:
                    sides[direction] = None
                    continue
                admitted.add(pos)
                used += messages[pos].tokens
                sides[direction] = pos + step

    return [m for i, m in enumerate(messages) if i in admitted]


class SpanRetriever:
    def __init__(
        self,
        store: ConversationStore,
        embeddings: EmbeddingService,
        estimator: TokenEstimator,
        *,
        include_system: bool = False,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self._estimator = estimator
        self._include_system = include_system

    def _cost(self, message: StoredMessage) -> int:
        text = f"[{message.role}]: {message.content}"
        return self._estimator.estimate(text) + SEPARATOR_TOKENS

    async def retrieve(
        self,
        conversation_id: str,
        *,
        query_text: str | None = None,
        query_embedding: list[float] | None = None,
        before_turn: int | None = None,
        top_k: int = 5,
        radius: int = 2,
        min_similarity: float = 0.7,
        token_budget: int = 1000,
    ) -> SpanRetrievalResult:
        """Retrieve the most relevant earlier spans within token_budget.

        Args:
            conversation_id: Conversation to search
            query_text: Text to embed as the query (ignored if query_embedding given)
            query_embedding: Precomputed query vector
            before_turn: Only consider messages older than this turn
            top_k: Maximum number of anchors
            radius: Turns to include on each side of an anchor
            min_similarity: Anchors must score at least this cosine similarity
            token_budget: Total tokens the admitted spans may cost

        Raises:
            SpanRetrievalUnavailable: No embedded messages or no query vector
            EmbeddingError: Embedding the query failed
            StoreError: The conversation store failed
        """
        embedded = await self._store.count_embedded_messages(
            conversation_id, before_turn=before_turn, include_system=self._include_system
        )
        if not embedded:
            raise SpanRetrievalUnavailable(
                f"No embedded messages for conversation {conversation_id}"
            )

        if query_embedding is None:
            if not query_text:
                raise SpanRetrievalUnavailable("No query text or embedding supplied")
            query_embedding = await self._embeddings.embed_text(query_text)

        anchors = await self._store.search_similar_messages(
            conversation_id,
            query_embedding,
            before_turn=before_turn,
            top_k=top_k,
            min_similarity=min_similarity,
            include_system=self._include_system,
        )
        if not anchors:
            log.debug("span_retriever.no_anchors", conversation_id=conversation_id)
            return SpanRetrievalResult(spans=[], anchor_count=0, total_tokens=0)

        anchor_scores = {msg.turn_index: score for msg, score in anchors}
        spans = _merge_windows(anchors, radius)
        upper = before_turn - 1 if before_turn is not None else None
        for span in spans:
            end = span.end_turn if upper is None else min(span.end_turn, upper)
            rows = await self._store.load_messages_in_range(conversation_id, span.start_turn, end)
            span.messages = [
                RetrievedMessage(
                    message=row,
                    tokens=self._cost(row),
                    is_anchor=row.turn_index in anchor_scores,
                    similarity=anchor_scores.get(row.turn_index),
                )
                for row in rows
                if self._include_system or row.role != "system"
            ]

        spans.sort(key=lambda s: (-s.anchor_count, -s.similarity_sum, s.start_turn))

        admitted: list[MessageSpan] = []
        used = 0
        skipped = 0
        for span in spans:
            remaining = token_budget - used
            if span.tokens <= remaining:
                admitted.append(span)
                used += span.tokens
                continue
            partial = _fit_partial(span, remaining)
            if partial is None:
                skipped += 1
                continue
            span.messages = partial
            admitted.append(span)
            used += span.tokens

        admitted.sort(key=lambda s: s.start_turn)
        log.info(
            "span_retriever.retrieved",
            conversation_id=conversation_id,
            anchors=len(anchors),
            spans=len(admitted),
            skipped=skipped,
            tokens=used,
            budget=token_budget,
        )
        return SpanRetrievalResult(
            spans=admitted,
            anchor_count=len(anchors),
            total_tokens=used,
            skipped_spans=skipped,
        )
