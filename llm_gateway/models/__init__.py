"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate.
"""

from llm_gateway.models.context_config import ConfigScope, ContextConfigRecord
from llm_gateway.models.conversation import Conversation, Message, MessageRole

__all__ = [
    "ConfigScope",
    "ContextConfigRecord",
    "Conversation",
    "Message",
    "MessageRole",
]
