"""Integration tests for the SQL conversation store and context config source.

Run with:
    pytest -m integration tests/integration/test_sql_store.py
"""

from __future__ import annotations

import uuid

import pytest

from llm_gateway.exceptions import StoreError
from llm_gateway.models.context_config import ConfigScope
from llm_gateway.models.conversation import EMBEDDING_DIMENSIONS
from llm_gateway.services.context_config import SqlContextConfigSource
from llm_gateway.services.conversation import SqlConversationStore

pytestmark = pytest.mark.integration


@pytest.fixture
def store(session_factory) -> SqlConversationStore:
    return SqlConversationStore(session_factory)


@pytest.fixture
def conversation_id() -> str:
    return str(uuid.uuid4())


def _vector(*head: float) -> list[float]:
    """Zero-padded vector matching the messages.embedding column width."""
    return [*head, *([0.0] * (EMBEDDING_DIMENSIONS - len(head)))]


async def _seed(store: SqlConversationStore, conversation_id: str, count: int):
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        await store.append_message(conversation_id, role=role, content=f"message {i}")
    return await store.load_all_messages(conversation_id)


class TestMessages:
    async def test_append_assigns_increasing_turns(self, store, conversation_id):
        messages = await _seed(store, conversation_id, 4)

        assert [m.turn_index for m in messages] == [0, 1, 2, 3]
        assert [m.role for m in messages] == ["user", "assistant", "user", "assistant"]

    async def test_recent_messages_in_chronological_order(self, store, conversation_id):
        await _seed(store, conversation_id, 6)

        recent = await store.load_recent_messages(conversation_id, 3)

        assert [m.content for m in recent] == ["message 3", "message 4", "message 5"]

    async def test_range_is_inclusive(self, store, conversation_id):
        await _seed(store, conversation_id, 6)

        window = await store.load_messages_in_range(conversation_id, 1, 3)

        assert [m.turn_index for m in window] == [1, 2, 3]

    async def test_conversations_are_isolated(self, store, conversation_id):
        await _seed(store, conversation_id, 2)
        other = str(uuid.uuid4())
        await _seed(store, other, 1)

        assert len(await store.load_all_messages(conversation_id)) == 2
        assert len(await store.load_all_messages(other)) == 1

    async def test_invalid_conversation_id(self, store):
        with pytest.raises(StoreError):
            await store.load_all_messages("not-a-uuid")


class TestEmbeddings:
    async def test_store_and_count_embedded(self, store, conversation_id):
        messages = await _seed(store, conversation_id, 4)
        await store.store_embedding(messages[1].id, _vector(0.1, 0.2, 0.3))

        [stored] = [m for m in await store.load_all_messages(conversation_id) if m.embedding]
        missing = await store.load_messages_without_embedding(conversation_id, limit=10)

        assert stored.turn_index == 1
        assert len(stored.embedding) == EMBEDDING_DIMENSIONS
        assert stored.embedding[:3] == pytest.approx((0.1, 0.2, 0.3))
        assert await store.count_embedded_messages(conversation_id) == 1
        assert [m.turn_index for m in missing] == [0, 2, 3]

    async def test_count_before_turn(self, store, conversation_id):
        messages = await _seed(store, conversation_id, 4)
        for message in messages:
            await store.store_embedding(message.id, _vector(1.0))

        assert await store.count_embedded_messages(conversation_id, before_turn=2) == 2

    async def test_invalid_message_id(self, store):
        with pytest.raises(StoreError):
            await store.store_embedding("not-a-uuid", _vector(1.0))


class TestSimilaritySearch:
    async def test_ranked_in_database(self, store, conversation_id):
        messages = await _seed(store, conversation_id, 6)
        vectors = [_vector(0.0, 1.0), _vector(1.0), _vector(0.8, 0.6), _vector(0.0, 1.0),
                   _vector(1.0), _vector(0.6, 0.8)]
        for message, vector in zip(messages, vectors):
            await store.store_embedding(message.id, vector)

        hits = await store.search_similar_messages(
            conversation_id, _vector(1.0), top_k=3, min_similarity=0.5
        )

        assert [m.turn_index for m, _ in hits] == [1, 4, 2]
        assert [score for _, score in hits] == pytest.approx([1.0, 1.0, 0.8])

    async def test_threshold_and_before_turn(self, store, conversation_id):
        messages = await _seed(store, conversation_id, 6)
        for message in messages:
            await store.store_embedding(message.id, _vector(1.0))
        await store.store_embedding(messages[0].id, _vector(0.0, 1.0))

        hits = await store.search_similar_messages(
            conversation_id, _vector(1.0), before_turn=3, top_k=10, min_similarity=0.7
        )

        assert [m.turn_index for m, _ in hits] == [1, 2]

    async def test_other_conversations_excluded(self, store, conversation_id):
        [message] = await _seed(store, conversation_id, 1)
        other = str(uuid.uuid4())
        [foreign] = await _seed(store, other, 1)
        await store.store_embedding(message.id, _vector(1.0))
        await store.store_embedding(foreign.id, _vector(1.0))

        hits = await store.search_similar_messages(conversation_id, _vector(1.0))

        assert [m.id for m, _ in hits] == [message.id]


class TestSummary:
    async def test_no_summary_initially(self, store, conversation_id):
        await _seed(store, conversation_id, 1)
        assert await store.get_summary(conversation_id) is None

    async def test_save_increments_version(self, store, conversation_id):
        await _seed(store, conversation_id, 2)

        first = await store.save_summary(conversation_id, text="first", token_estimate=2)
        second = await store.save_summary(conversation_id, text="second", token_estimate=3)

        assert (first.version, second.version) == (1, 2)
        loaded = await store.get_summary(conversation_id)
        assert loaded.text == "second"
        assert loaded.version == 2

    async def test_save_for_unknown_conversation(self, store):
        with pytest.raises(StoreError):
            await store.save_summary(str(uuid.uuid4()), text="x", token_estimate=1)

    async def test_mark_summarized(self, store, conversation_id):
        messages = await _seed(store, conversation_id, 4)

        count = await store.mark_summarized(conversation_id, [m.id for m in messages[:2]])

        assert count == 2
        unsummarized = await store.load_unsummarized_before(conversation_id, before_turn=4)
        assert [m.turn_index for m in unsummarized] == [2, 3]

    async def test_clear_conversation(self, store, conversation_id):
        await _seed(store, conversation_id, 3)
        await store.save_summary(conversation_id, text="summary", token_estimate=1)

        await store.clear_conversation(conversation_id)

        assert await store.load_all_messages(conversation_id) == []
        assert await store.get_summary(conversation_id) is None


class TestContextConfigSource:
    async def test_save_and_load(self, session_factory):
        source = SqlContextConfigSource(session_factory)

        await source.save(ConfigScope.PROJECT, "proj-1", {"strategy": "last-n"})
        await source.save(ConfigScope.PROJECT, "proj-1", {"strategy": "full"})
        await source.save(ConfigScope.TOOL, "tool-1", {"recent_max_messages": 8})

        assert await source.load_all() == {
            (ConfigScope.PROJECT, "proj-1"): {"strategy": "full"},
            (ConfigScope.TOOL, "tool-1"): {"recent_max_messages": 8},
        }
