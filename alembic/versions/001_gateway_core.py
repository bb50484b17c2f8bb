"""Create conversations, messages and chat_context_config tables.

Requires the pgvector extension: messages.embedding is vector(1536) with an
ivfflat cosine index for span retrieval.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_EMBEDDING_DIM = 1536

message_role = postgresql.ENUM(
    'system', 'user', 'assistant', 'tool', name='message_role', create_type=False
)
context_config_scope = postgresql.ENUM(
    'project', 'tool', name='context_config_scope', create_type=False
)


def upgrade() -> None:
    """Create the gateway tables and their enum types."""
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    message_role.create(op.get_bind(), checkfirst=True)
    context_config_scope.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'conversations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('project_id', sa.Text, nullable=True),
        sa.Column('tool_id', sa.Text, nullable=True),
        sa.Column('title', sa.Text, nullable=True),
        sa.Column('summary', sa.Text, nullable=True,
                  comment='Rolling summary of messages folded out of the recent window'),
        sa.Column('summary_token_estimate', sa.Integer, nullable=False, server_default='0'),
        sa.Column('summary_version', sa.Integer, nullable=False, server_default='0',
                  comment='Incremented on every wholesale regeneration'),
        sa.Column('last_summarized_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_conversations_project_id', 'conversations', ['project_id'])

    op.create_table(
        'messages',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('role', message_role, nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('turn_index', sa.Integer, nullable=False),
        sa.Column('token_estimate', sa.Integer, nullable=True),
        sa.Column('is_summarized', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('embedding', Vector(_EMBEDDING_DIM), nullable=True,
                  comment='Cosine-searched via pgvector <=>; backfilled asynchronously'),
        sa.Column('model_used', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'])
    op.create_index(
        'ix_messages_conversation_turn', 'messages', ['conversation_id', 'turn_index'], unique=True
    )
    op.create_index('ix_messages_unsummarized', 'messages', ['conversation_id', 'is_summarized'])

    # Approximate nearest neighbour search for span retrieval
    op.execute(
        """
        CREATE INDEX ix_messages_embedding
        ON messages
        USING ivfflat (embedding vector_cosine_ops)
        WITH (lists = 100)
        """
    )

    op.create_table(
        'chat_context_config',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('scope', context_config_scope, nullable=False),
        sa.Column('scope_key', sa.Text, nullable=False,
                  comment='Project id or tool id the overrides apply to'),
        sa.Column('overrides', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('scope', 'scope_key', name='uq_context_config_scope'),
    )


def downgrade() -> None:
    """Drop the gateway tables and enum types."""
    op.drop_table('chat_context_config')
    op.drop_index('ix_messages_embedding', table_name='messages')
    op.drop_index('ix_messages_unsummarized', table_name='messages')
    op.drop_index('ix_messages_conversation_turn', table_name='messages')
    op.drop_index('ix_messages_conversation_id', table_name='messages')
    op.drop_table('messages')
    op.drop_index('ix_conversations_project_id', table_name='conversations')
    op.drop_table('conversations')
    context_config_scope.drop(op.get_bind(), checkfirst=True)
    message_role.drop(op.get_bind(), checkfirst=True)
