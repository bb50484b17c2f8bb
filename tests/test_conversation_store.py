"""Unit tests for SqlConversationStore argument handling.

Queries themselves run against PostgreSQL in tests/integration; these cases
fail before a session is opened.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from llm_gateway.context.builder import ContextBuilder
from llm_gateway.context.config import ContextConfig, ContextConfigResolver
from llm_gateway.exceptions import StoreError
from llm_gateway.services.conversation import SqlConversationStore
from tests.conftest import CONVERSATION_ID


@pytest.fixture
def session_factory():
    return MagicMock()


@pytest.fixture
def sql_store(session_factory):
    return SqlConversationStore(session_factory)


class TestMessageIds:
    async def test_store_embedding_rejects_malformed_id(self, sql_store, session_factory):
        with pytest.raises(StoreError, match="Invalid message id"):
            await sql_store.store_embedding("not-a-uuid", [0.1, 0.2])
        session_factory.assert_not_called()

    async def test_mark_summarized_rejects_malformed_id(self, sql_store, session_factory):
        with pytest.raises(StoreError, match="Invalid message id"):
            await sql_store.mark_summarized(CONVERSATION_ID, ["not-a-uuid"])
        session_factory.assert_not_called()

    async def test_mark_summarized_without_ids(self, sql_store, session_factory):
        assert await sql_store.mark_summarized(CONVERSATION_ID, []) == 0
        session_factory.assert_not_called()

    async def test_embedding_for_malformed_id_degrades(
        self, sql_store, estimator, embedding_service
    ):
        builder = ContextBuilder(
            sql_store,
            estimator,
            ContextConfigResolver(ContextConfig()),
            embeddings=embedding_service,
        )

        assert await builder.generate_message_embedding("not-a-uuid", "short 0") is False
