"""Tests for the in-memory conversation store used by unit tests."""

from __future__ import annotations

import pytest

from llm_gateway.exceptions import StoreError
from llm_gateway.testing.memory_store import cosine_similarity
from tests.conftest import CONVERSATION_ID


class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_mismatched_or_zero_vectors(self):
        assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([], []) == 0.0


class TestSimilaritySearch:
    async def test_ordered_by_similarity_then_turn(self, store, seed_conversation):
        await seed_conversation(
            ["a", "b", "c", "d"],
            embeddings=[[0.0, 1.0], [0.8, 0.6], [1.0, 0.0], [1.0, 0.0]],
        )

        hits = await store.search_similar_messages(
            CONVERSATION_ID, [1.0, 0.0], top_k=3, min_similarity=0.5
        )

        assert [(m.turn_index, round(score, 6)) for m, score in hits] == [
            (2, 1.0),
            (3, 1.0),
            (1, 0.8),
        ]

    async def test_system_messages_excluded_by_default(self, store):
        system = await store.append_message(CONVERSATION_ID, role="system", content="rules")
        user = await store.append_message(CONVERSATION_ID, role="user", content="hi")
        await store.store_embedding(system.id, [1.0, 0.0])
        await store.store_embedding(user.id, [1.0, 0.0])

        assert await store.count_embedded_messages(CONVERSATION_ID) == 1
        assert await store.count_embedded_messages(CONVERSATION_ID, include_system=True) == 2
        hits = await store.search_similar_messages(CONVERSATION_ID, [1.0, 0.0])
        assert [m.role for m, _ in hits] == ["user"]

    async def test_count_before_turn(self, store, seed_conversation):
        await seed_conversation(["a", "b", "c"], embeddings=[[1.0], [1.0], None])

        assert await store.count_embedded_messages(CONVERSATION_ID) == 2
        assert await store.count_embedded_messages(CONVERSATION_ID, before_turn=1) == 1

    async def test_fail_on(self, store):
        store.fail_on = {"search_similar_messages"}
        with pytest.raises(StoreError):
            await store.search_similar_messages(CONVERSATION_ID, [1.0])
