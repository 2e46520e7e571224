"""Conversation store interface.

The orchestration loop only depends on this contract. Implementations must
keep messages in append order and make each ``append`` durable before it
returns.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from shared.models import Conversation, Message, ToolExecutionRecord


class ConversationStore(ABC):
    """Persists conversations, their message log, tool audit and checkpoints."""

    @abstractmethod
    async def create_conversation(
        self,
        user_id: str,
        title: Optional[str] = None
    ) -> Conversation:
        """Create and persist a new conversation."""
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Get a conversation header, or None if it does not exist."""
        pass

    @abstractmethod
    async def append(self, conversation_id: str, message: Message) -> None:
        """
        Append one message to the conversation log.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
        """
        pass

    @abstractmethod
    async def load_recent(self, conversation_id: str, limit: int) -> list[Message]:
        """
        Load the most recent ``limit`` messages in chronological order.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
        """
        pass

    @abstractmethod
    async def load_all(self, conversation_id: str) -> list[Message]:
        """Load the full message log in chronological order."""
        pass

    @abstractmethod
    async def record_tool_execution(
        self,
        conversation_id: str,
        record: ToolExecutionRecord
    ) -> None:
        """Record one capability execution for audit."""
        pass

    @abstractmethod
    async def list_tool_executions(self, conversation_id: str) -> list[ToolExecutionRecord]:
        """List recorded executions in the order they were recorded."""
        pass

    @abstractmethod
    async def checkpoint(
        self,
        conversation_id: str,
        state: dict[str, Any],
        step: int
    ) -> None:
        """Store the latest loop state on the conversation and append a checkpoint."""
        pass

    @abstractmethod
    async def latest_checkpoint(
        self,
        conversation_id: str
    ) -> Optional[tuple[dict[str, Any], int]]:
        """Most recent ``(state, step)``, or None if none was recorded."""
        pass

    async def close(self) -> None:
        """Release resources held by the store."""
        return None
