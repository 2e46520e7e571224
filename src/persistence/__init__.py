"""Conversation persistence.

An append-only message log per conversation, tool execution audit and
loop state checkpoints, in memory or in a relational database.
"""

from persistence.base import ConversationStore
from persistence.memory import InMemoryConversationStore
from persistence.sql import SqlConversationStore

__all__ = [
    "ConversationStore",
    "InMemoryConversationStore",
    "SqlConversationStore",
]
