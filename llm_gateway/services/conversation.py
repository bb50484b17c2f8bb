"""Conversation store - the persistence contract the Context Builder relies on.

The builder reads messages, the rolling summary and stored embeddings, and
writes only three things: a regenerated summary (single-row update keyed by
conversation), the is_summarized flag, and backfilled embeddings. Message
content is never modified.

SqlConversationStore implements the contract on SQLAlchemy 2.0 async. Each
method runs in its own session_scope(), so store calls made from background
summary or embedding tasks never share a session with the request.
Similarity search runs in PostgreSQL with pgvector's cosine distance
operator (<=>), served by the ivfflat index on messages.embedding.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from llm_gateway.database import session_scope
from llm_gateway.exceptions import StoreError
from llm_gateway.models.conversation import Conversation, Message, MessageRole

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StoredMessage:
    """Read-only view of one conversation message."""

    id: str
    role: str
    content: str
    turn_index: int
    token_estimate: int | None = None
    is_summarized: bool = False
    embedding: tuple[float, ...] | None = None

    def to_chat(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ConversationSummary:
    conversation_id: str
    text: str
    token_estimate: int
    version: int
    updated_at: datetime | None = None


class ConversationStore(ABC):
    """Narrow persistence interface for conversation history."""

    @abstractmethod
    async def append_message(
        self,
        conversation_id: str,
        *,
        role: str,
        content: str,
        token_estimate: int | None = None,
        model_used: str | None = None,
    ) -> StoredMessage:
        """Append a message with the next turn index, creating the conversation if needed."""

    @abstractmethod
    async def load_all_messages(self, conversation_id: str) -> list[StoredMessage]:
        """Return every message in turn order."""

    @abstractmethod
    async def load_recent_messages(self, conversation_id: str, limit: int) -> list[StoredMessage]:
        """Return the last `limit` messages in turn order."""

    @abstractmethod
    async def load_messages_in_range(
        self, conversation_id: str, start_turn: int, end_turn: int
    ) -> list[StoredMessage]:
        """Return messages with start_turn <= turn_index <= end_turn in turn order."""

    @abstractmethod
    async def load_unsummarized_before(
        self, conversation_id: str, before_turn: int
    ) -> list[StoredMessage]:
        """Return messages older than before_turn not yet folded into the summary."""

    @abstractmethod
    async def count_embedded_messages(
        self,
        conversation_id: str,
        *,
        before_turn: int | None = None,
        include_system: bool = False,
    ) -> int:
        """Count messages that have an embedding, optionally only those before before_turn."""

    @abstractmethod
    async def search_similar_messages(
        self,
        conversation_id: str,
        query_embedding: Sequence[float],
        *,
        before_turn: int | None = None,
        top_k: int = 5,
        min_similarity: float = 0.0,
        include_system: bool = False,
    ) -> list[tuple[StoredMessage, float]]:
        """Return up to top_k embedded messages with cosine similarity >= min_similarity.

        Pairs are (message, similarity), most similar first; ties go to the
        earlier turn.
        """

    @abstractmethod
    async def load_messages_without_embedding(
        self, conversation_id: str, limit: int
    ) -> list[StoredMessage]:
        """Return up to `limit` of the oldest messages still missing an embedding."""

    @abstractmethod
    async def store_embedding(self, message_id: str, embedding: Sequence[float]) -> None:
        ...

    @abstractmethod
    async def get_summary(self, conversation_id: str) -> ConversationSummary | None:
        ...

    @abstractmethod
    async def save_summary(
        self, conversation_id: str, *, text: str, token_estimate: int
    ) -> ConversationSummary:
        """Replace the summary wholesale and bump its version."""

    @abstractmethod
    async def mark_summarized(self, conversation_id: str, message_ids: Sequence[str]) -> int:
        """Flag messages as folded into the summary. Returns the number updated."""

    @abstractmethod
    async def clear_conversation(self, conversation_id: str) -> None:
        """Delete every message and the summary of a conversation."""


def _to_stored(row: Message) -> StoredMessage:
    return StoredMessage(
        id=str(row.id),
        role=row.role.value,
        content=row.content,
        turn_index=row.turn_index,
        token_estimate=row.token_estimate,
        is_summarized=row.is_summarized,
        # pgvector hands back a numpy array
        embedding=tuple(float(x) for x in row.embedding) if row.embedding is not None else None,
    )


def _conv_uuid(conversation_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(conversation_id))
    except ValueError as exc:
        raise StoreError(f"Invalid conversation id: {conversation_id!r}") from exc


def _message_uuid(message_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(message_id))
    except ValueError as exc:
        raise StoreError(f"Invalid message id: {message_id!r}") from exc


def _embedded_filter(conversation_id: str, before_turn: int | None, include_system: bool) -> list:
    clauses = [
        Message.conversation_id == _conv_uuid(conversation_id),
        Message.embedding.is_not(None),
    ]
    if before_turn is not None:
        clauses.append(Message.turn_index < before_turn)
    if not include_system:
        clauses.append(Message.role != MessageRole.SYSTEM)
    return clauses


class SqlConversationStore(ConversationStore):
    """ConversationStore backed by the conversations / messages tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _fetch(self, stmt) -> list[StoredMessage]:
        try:
            async with session_scope(self._session_factory) as session:
                result = await session.execute(stmt)
                return [_to_stored(row) for row in result.scalars().all()]
        except SQLAlchemyError as exc:
            log.warning("conversation_store.read_failed", error=str(exc))
            raise StoreError(f"Conversation store read failed: {exc}") from exc

    async def append_message(
        self,
        conversation_id: str,
        *,
        role: str,
        content: str,
        token_estimate: int | None = None,
        model_used: str | None = None,
    ) -> StoredMessage:
        conv_id = _conv_uuid(conversation_id)
        try:
            async with session_scope(self._session_factory) as session:
                conversation = await session.get(Conversation, conv_id, with_for_update=True)
                if conversation is None:
                    conversation = Conversation(id=conv_id)
                    session.add(conversation)
                    await session.flush()

                next_turn = await session.scalar(
                    select(func.coalesce(func.max(Message.turn_index), -1) + 1).where(
                        Message.conversation_id == conv_id
                    )
                )
                message = Message(
                    conversation_id=conv_id,
                    role=MessageRole(role),
                    content=content,
                    turn_index=next_turn,
                    token_estimate=token_estimate,
                    model_used=model_used,
                )
                session.add(message)
                await session.flush()
                stored = _to_stored(message)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to append message: {exc}") from exc

        log.debug(
            "conversation_store.message_appended",
            conversation_id=str(conv_id),
            turn_index=stored.turn_index,
            role=role,
        )
        return stored

    async def load_all_messages(self, conversation_id: str) -> list[StoredMessage]:
        stmt = (
            select(Message)
            .where(Message.conversation_id == _conv_uuid(conversation_id))
            .order_by(Message.turn_index)
        )
        return await self._fetch(stmt)

    async def load_recent_messages(self, conversation_id: str, limit: int) -> list[StoredMessage]:
        if limit <= 0:
            return []
        stmt = (
            select(Message)
            .where(Message.conversation_id == _conv_uuid(conversation_id))
            .order_by(Message.turn_index.desc())
            .limit(limit)
        )
        rows = await self._fetch(stmt)
        return list(reversed(rows))

    async def load_messages_in_range(
        self, conversation_id: str, start_turn: int, end_turn: int
    ) -> list[StoredMessage]:
        stmt = (
            select(Message)
            .where(
                Message.conversation_id == _conv_uuid(conversation_id),
                Message.turn_index >= start_turn,
                Message.turn_index <= end_turn,
            )
            .order_by(Message.turn_index)
        )
        return await self._fetch(stmt)

    async def load_unsummarized_before(
        self, conversation_id: str, before_turn: int
    ) -> list[StoredMessage]:
        stmt = (
            select(Message)
            .where(
                Message.conversation_id == _conv_uuid(conversation_id),
                Message.turn_index < before_turn,
                Message.is_summarized.is_(False),
            )
            .order_by(Message.turn_index)
        )
        return await self._fetch(stmt)

    async def count_embedded_messages(
        self,
        conversation_id: str,
        *,
        before_turn: int | None = None,
        include_system: bool = False,
    ) -> int:
        stmt = select(func.count(Message.id)).where(
            *_embedded_filter(conversation_id, before_turn, include_system)
        )
        try:
            async with session_scope(self._session_factory) as session:
                return int(await session.scalar(stmt) or 0)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to count embedded messages: {exc}") from exc

    async def search_similar_messages(
        self,
        conversation_id: str,
        query_embedding: Sequence[float],
        *,
        before_turn: int | None = None,
        top_k: int = 5,
        min_similarity: float = 0.0,
        include_system: bool = False,
    ) -> list[tuple[StoredMessage, float]]:
        distance = Message.embedding.cosine_distance(list(query_embedding))
        similarity = (1 - distance).label("similarity")
        stmt = (
            select(Message, similarity)
            .where(
                *_embedded_filter(conversation_id, before_turn, include_system),
                (1 - distance) >= min_similarity,
            )
            .order_by(distance, Message.turn_index)
            .limit(top_k)
        )
        try:
            async with session_scope(self._session_factory) as session:
                result = await session.execute(stmt)
                rows = result.all()
        except SQLAlchemyError as exc:
            log.warning("conversation_store.search_failed", error=str(exc))
            raise StoreError(f"Similarity search failed: {exc}") from exc
        return [(_to_stored(message), float(score)) for message, score in rows]

    async def load_messages_without_embedding(
        self, conversation_id: str, limit: int
    ) -> list[StoredMessage]:
        stmt = (
            select(Message)
            .where(
                Message.conversation_id == _conv_uuid(conversation_id),
                Message.embedding.is_(None),
            )
            .order_by(Message.turn_index)
            .limit(limit)
        )
        return await self._fetch(stmt)

    async def store_embedding(self, message_id: str, embedding: Sequence[float]) -> None:
        message_uuid = _message_uuid(message_id)
        try:
            async with session_scope(self._session_factory) as session:
                await session.execute(
                    update(Message)
                    .where(Message.id == message_uuid)
                    .values(embedding=list(embedding))
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to store embedding: {exc}") from exc

    async def get_summary(self, conversation_id: str) -> ConversationSummary | None:
        conv_id = _conv_uuid(conversation_id)
        try:
            async with session_scope(self._session_factory) as session:
                conversation = await session.get(Conversation, conv_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to load summary: {exc}") from exc

        if conversation is None or not conversation.summary:
            return None
        return ConversationSummary(
            conversation_id=str(conv_id),
            text=conversation.summary,
            token_estimate=conversation.summary_token_estimate,
            version=conversation.summary_version,
            updated_at=conversation.last_summarized_at,
        )

    async def save_summary(
        self, conversation_id: str, *, text: str, token_estimate: int
    ) -> ConversationSummary:
        conv_id = _conv_uuid(conversation_id)
        now = datetime.now(UTC)
        try:
            async with session_scope(self._session_factory) as session:
                conversation = await session.get(Conversation, conv_id, with_for_update=True)
                if conversation is None:
                    raise StoreError(f"Conversation {conv_id} not found")
                conversation.summary = text
                conversation.summary_token_estimate = token_estimate
                conversation.summary_version += 1
                conversation.last_summarized_at = now
                version = conversation.summary_version
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to save summary: {exc}") from exc

        log.info(
            "conversation_store.summary_saved",
            conversation_id=str(conv_id),
            version=version,
            token_estimate=token_estimate,
        )
        return ConversationSummary(
            conversation_id=str(conv_id),
            text=text,
            token_estimate=token_estimate,
            version=version,
            updated_at=now,
        )

    async def mark_summarized(self, conversation_id: str, message_ids: Sequence[str]) -> int:
        if not message_ids:
            return 0
        message_uuids = [_message_uuid(m) for m in message_ids]
        try:
            async with session_scope(self._session_factory) as session:
                result = await session.execute(
                    update(Message)
                    .where(
                        Message.conversation_id == _conv_uuid(conversation_id),
                        Message.id.in_(message_uuids),
                    )
                    .values(is_summarized=True)
                )
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to mark messages summarized: {exc}") from exc

    async def clear_conversation(self, conversation_id: str) -> None:
        conv_id = _conv_uuid(conversation_id)
        try:
            async with session_scope(self._session_factory) as session:
                await session.execute(delete(Message).where(Message.conversation_id == conv_id))
                await session.execute(
                    update(Conversation)
                    .where(Conversation.id == conv_id)
                    .values(summary=None, summary_token_estimate=0, last_summarized_at=None)
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to clear conversation: {exc}") from exc
        log.info("conversation_store.cleared", conversation_id=str(conv_id))
