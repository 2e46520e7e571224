"""In-memory conversation store.

Keeps everything in process memory. Used by tests and for throwaway
sessions where nothing should touch disk.
"""

import asyncio
from typing import Any, Optional

from persistence.base import ConversationStore
from shared.errors import ConversationNotFoundError
from shared.logging import get_logger
from shared.models import Conversation, Message, ToolExecutionRecord, utc_now

logger = get_logger(__name__)


class InMemoryConversationStore(ConversationStore):
    """
    Conversation store backed by dictionaries.

    Messages are stored in append order; ``load_recent`` slices the tail.
    """

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._executions: dict[str, list[ToolExecutionRecord]] = {}
        self._checkpoints: dict[str, list[tuple[dict[str, Any], int]]] = {}
        self._lock = asyncio.Lock()

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def create_conversation(
        self,
        user_id: str,
        title: Optional[str] = None
    ) -> Conversation:
        conversation = Conversation(user_id=user_id)
        if title:
            conversation.title = title

        async with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
            self._executions[conversation.id] = []
            self._checkpoints[conversation.id] = []

        logger.info("Conversation created", conversation_id=conversation.id, user=user_id)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    async def append(self, conversation_id: str, message: Message) -> None:
        async with self._lock:
            conversation = self._require(conversation_id)
            self._messages[conversation_id].append(message)
            conversation.updated_at = utc_now()

    async def load_recent(self, conversation_id: str, limit: int) -> list[Message]:
        self._require(conversation_id)
        if limit <= 0:
            return []
        return list(self._messages[conversation_id][-limit:])

    async def load_all(self, conversation_id: str) -> list[Message]:
        self._require(conversation_id)
        return list(self._messages[conversation_id])

    async def record_tool_execution(
        self,
        conversation_id: str,
        record: ToolExecutionRecord
    ) -> None:
        async with self._lock:
            self._require(conversation_id)
            self._executions[conversation_id].append(record)

    async def list_tool_executions(self, conversation_id: str) -> list[ToolExecutionRecord]:
        self._require(conversation_id)
        return list(self._executions[conversation_id])

    async def checkpoint(
        self,
        conversation_id: str,
        state: dict[str, Any],
        step: int
    ) -> None:
        async with self._lock:
            conversation = self._require(conversation_id)
            conversation.state = dict(state)
            conversation.updated_at = utc_now()
            self._checkpoints[conversation_id].append((dict(state), step))

    async def latest_checkpoint(
        self,
        conversation_id: str
    ) -> Optional[tuple[dict[str, Any], int]]:
        self._require(conversation_id)
        checkpoints = self._checkpoints[conversation_id]
        return checkpoints[-1] if checkpoints else None
