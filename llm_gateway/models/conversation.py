"""Conversation and Message models.

A Conversation is a thread of messages between a user and the gateway. It
also carries the rolling summary the Context Builder maintains: summary text,
its token estimate and a version stamp bumped on every regeneration.

Messages are append-only. The only column ever updated after insert is
is_summarized (set once the message has been folded into the summary) and
the embedding (backfilled asynchronously).
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from llm_gateway.database import Base

# Must match the embedding model output (1536 for text-embedding-3-small).
# Changing it requires a migration that recreates the column and its index.
EMBEDDING_DIMENSIONS = 1536


class MessageRole(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    tool_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)

    summary: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Rolling summary of messages folded out of the recent window",
    )
    summary_token_estimate: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    summary_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="Incremented on every wholesale regeneration",
    )
    last_summarized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    messages: Mapped[list[Message]] = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.turn_index",
    )

    def __repr__(self) -> str:
        return f"<Conversation id={self.id} summary_version={self.summary_version}>"


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[MessageRole] = mapped_column(
        Enum(
            MessageRole,
            name="message_role",
            values_callable=lambda roles: [r.value for r in roles],
        ),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    # Monotonically increasing position within the conversation
    turn_index: Mapped[int] = mapped_column(Integer, nullable=False)
    token_estimate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_summarized: Mapped[bool] = mapped_column(
        nullable=False,
        default=False,
        server_default="false",
    )
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(EMBEDDING_DIMENSIONS),
        nullable=True,
        comment="Cosine-searched via pgvector <=>; backfilled asynchronously",
    )
    model_used: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    conversation: Mapped[Conversation] = relationship(
        "Conversation", back_populates="messages"
    )

    __table_args__ = (
        Index("ix_messages_conversation_turn", "conversation_id", "turn_index", unique=True),
        Index("ix_messages_unsummarized", "conversation_id", "is_summarized"),
    )

    def __repr__(self) -> str:
        return f"<Message id={self.id} role={self.role} turn={self.turn_index}>"
