"""Tests for span retrieval: anchors, window merging, ranking and partial admission."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from llm_gateway.context.spans import (
    SpanRetrievalUnavailable,
    SpanRetriever,
    _merge_windows,
)
from llm_gateway.services.conversation import StoredMessage

from tests.conftest import CONVERSATION_ID

RELEVANT = [1.0, 0.0, 0.0, 0.0]
CLOSE = [0.8, 0.6, 0.0, 0.0]  # cosine 0.8 against RELEVANT
UNRELATED = [0.0, 1.0, 0.0, 0.0]


def _contents(n: int) -> list[str]:
    # Fixed width so every user message costs 7 tokens and every assistant message 8
    return [f"message {i:02d}" for i in range(n)]


def _vectors(n: int, **anchors: list[float]) -> list[list[float]]:
    vectors = [UNRELATED] * n
    for key, vector in anchors.items():
        vectors[int(key.removeprefix("t"))] = vector
    return list(vectors)


@pytest.fixture
def retriever(store, embedding_service, estimator):
    return SpanRetriever(store, embedding_service, estimator)


class TestMergeWindows:
    def _msg(self, turn: int) -> StoredMessage:
        return StoredMessage(id=str(turn), role="user", content="x", turn_index=turn)

    def test_adjacent_windows_merge(self):
        spans = _merge_windows([(self._msg(2), 0.9), (self._msg(5), 0.8)], radius=1)

        assert len(spans) == 1
        assert (spans[0].start_turn, spans[0].end_turn) == (1, 6)
        assert spans[0].anchor_turns == [2, 5]
        assert spans[0].similarity_sum == pytest.approx(1.7)

    def test_distant_windows_stay_apart(self):
        spans = _merge_windows([(self._msg(10), 0.9), (self._msg(2), 0.8)], radius=1)
        assert [(s.start_turn, s.end_turn) for s in spans] == [(1, 3), (9, 11)]

    def test_window_clamped_at_first_turn(self):
        spans = _merge_windows([(self._msg(0), 0.9)], radius=3)
        assert spans[0].start_turn == 0


class TestSpanRetriever:
    async def test_anchors_expand_and_merge(self, retriever, seed_conversation, embedder):
        await seed_conversation(_contents(12), embeddings=_vectors(12, t2=RELEVANT, t5=RELEVANT))

        result = await retriever.retrieve(
            CONVERSATION_ID, query_embedding=RELEVANT, radius=1, token_budget=1000
        )

        assert result.anchor_count == 2
        assert len(result.spans) == 1
        assert [m.turn_index for m in result.messages] == [1, 2, 3, 4, 5, 6]
        assert [m.turn_index for m in result.messages if m.is_anchor] == [2, 5]
        assert embedder.requests == []

    async def test_only_messages_before_turn_considered(self, retriever, seed_conversation):
        await seed_conversation(_contents(12), embeddings=_vectors(12, t2=RELEVANT, t7=RELEVANT))

        result = await retriever.retrieve(
            CONVERSATION_ID, query_embedding=RELEVANT, radius=1, before_turn=6
        )

        assert result.anchor_count == 1
        assert max(m.turn_index for m in result.messages) < 6

    async def test_window_capped_at_before_turn(self, retriever, seed_conversation):
        await seed_conversation(_contents(12), embeddings=_vectors(12, t4=RELEVANT))

        result = await retriever.retrieve(
            CONVERSATION_ID, query_embedding=RELEVANT, radius=2, before_turn=5
        )
        assert [m.turn_index for m in result.messages] == [2, 3, 4]

    async def test_top_k_limits_anchors(self, retriever, seed_conversation):
        await seed_conversation(
            _contents(20), embeddings=_vectors(20, t2=RELEVANT, t9=CLOSE, t16=RELEVANT)
        )

        result = await retriever.retrieve(
            CONVERSATION_ID, query_embedding=RELEVANT, top_k=2, radius=0
        )

        assert result.anchor_count == 2
        assert [m.turn_index for m in result.messages] == [2, 16]

    async def test_higher_similarity_admitted_first(self, retriever, seed_conversation):
        await seed_conversation(_contents(12), embeddings=_vectors(12, t2=CLOSE, t9=RELEVANT))

        # Span around turn 9 costs 22 tokens; the anchor at turn 2 alone costs 7
        result = await retriever.retrieve(
            CONVERSATION_ID, query_embedding=RELEVANT, radius=1, token_budget=25
        )

        assert [s.start_turn for s in result.spans] == [8]
        assert result.skipped_spans == 1
        assert result.total_tokens == 22
        assert result.total_tokens <= 25

    async def test_more_anchors_beat_higher_similarity(self, retriever, seed_conversation):
        await seed_conversation(
            _contents(16), embeddings=_vectors(16, t2=CLOSE, t3=CLOSE, t12=RELEVANT)
        )

        result = await retriever.retrieve(
            CONVERSATION_ID, query_embedding=RELEVANT, radius=0, token_budget=15
        )

        assert [m.turn_index for m in result.messages] == [2, 3]

    async def test_oversized_span_admitted_partially_around_anchor(
        self, retriever, seed_conversation
    ):
        await seed_conversation(_contents(10), embeddings=_vectors(10, t4=RELEVANT))

        # Turns 2..6 cost 37; within 22 the anchor grows to turns 2..4
        result = await retriever.retrieve(
            CONVERSATION_ID, query_embedding=RELEVANT, radius=2, token_budget=22
        )

        assert [m.turn_index for m in result.messages] == [2, 3, 4]
        assert result.total_tokens == 22

    async def test_anchor_that_does_not_fit_is_skipped(self, retriever, seed_conversation):
        await seed_conversation(_contents(10), embeddings=_vectors(10, t4=RELEVANT))

        result = await retriever.retrieve(
            CONVERSATION_ID, query_embedding=RELEVANT, radius=2, token_budget=5
        )

        assert result.spans == []
        assert result.skipped_spans == 1
        assert result.total_tokens == 0

    async def test_no_anchor_above_threshold_is_empty_not_error(
        self, retriever, seed_conversation
    ):
        await seed_conversation(_contents(6), embeddings=_vectors(6))

        result = await retriever.retrieve(CONVERSATION_ID, query_embedding=RELEVANT)

        assert result.spans == []
        assert result.anchor_count == 0

    async def test_query_text_is_embedded(self, retriever, seed_conversation, embedder):
        await seed_conversation(_contents(6), embeddings=_vectors(6, t3=RELEVANT))
        embedder.register("where was the config?", RELEVANT)

        result = await retriever.retrieve(
            CONVERSATION_ID, query_text="where was the config?", radius=0
        )

        assert [m.turn_index for m in result.messages] == [3]
        assert embedder.requests == [["where was the config?"]]

    async def test_no_embeddings_is_unavailable(self, retriever, seed_conversation):
        await seed_conversation(_contents(6))

        with pytest.raises(SpanRetrievalUnavailable):
            await retriever.retrieve(CONVERSATION_ID, query_embedding=RELEVANT)

    async def test_no_query_is_unavailable(self, retriever, seed_conversation):
        await seed_conversation(_contents(6), embeddings=_vectors(6, t3=RELEVANT))

        with pytest.raises(SpanRetrievalUnavailable):
            await retriever.retrieve(CONVERSATION_ID)

    async def test_formatted_message(self, retriever, seed_conversation):
        await seed_conversation(_contents(4), embeddings=_vectors(4, t1=RELEVANT))

        result = await retriever.retrieve(CONVERSATION_ID, query_embedding=RELEVANT, radius=0)

        assert result.messages[0].format() == "[assistant]: message 01"

    async def test_ranking_delegated_to_store(self, embedding_service, estimator):
        anchor = StoredMessage(id="m3", role="user", content="message 03", turn_index=3)
        store = MagicMock()
        store.count_embedded_messages = AsyncMock(return_value=10)
        store.search_similar_messages = AsyncMock(return_value=[(anchor, 0.9)])
        store.load_messages_in_range = AsyncMock(return_value=[anchor])
        retriever = SpanRetriever(store, embedding_service, estimator)

        result = await retriever.retrieve(
            CONVERSATION_ID,
            query_embedding=RELEVANT,
            before_turn=8,
            top_k=4,
            radius=0,
            min_similarity=0.75,
        )

        store.search_similar_messages.assert_awaited_once_with(
            CONVERSATION_ID,
            RELEVANT,
            before_turn=8,
            top_k=4,
            min_similarity=0.75,
            include_system=False,
        )
        store.load_messages_in_range.assert_awaited_once_with(CONVERSATION_ID, 3, 3)
        assert [m.similarity for m in result.messages] == [0.9]
