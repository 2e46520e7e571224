"""Exception hierarchy for the assistant.

Turn-fatal failures are raised as exceptions. Failures of a single capability
call are never raised; they travel as ``CapabilityCallResult`` values.
"""

from typing import Optional


class AssistantError(Exception):
    """Base exception for all assistant errors."""
    pass


class TurnError(AssistantError):
    """A turn could not be completed."""

    def __init__(self, message: str, conversation_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.conversation_id = conversation_id


class GenerationError(TurnError):
    """The response generator failed or returned an unparseable outcome."""
    pass


class IterationLimitError(TurnError):
    """The turn exceeded the configured number of generation steps."""

    def __init__(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        iterations: int = 0
    ) -> None:
        super().__init__(message, conversation_id)
        self.iterations = iterations


class PersistenceError(AssistantError):
    """The conversation store failed."""
    pass


class ConversationNotFoundError(PersistenceError):
    """The conversation does not exist."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class MCPClientError(AssistantError):
    """Base exception for MCP client errors."""
    pass


class MCPConnectionError(MCPClientError):
    """Connection to an MCP server failed."""
    pass


class ProviderNotConnectedError(MCPClientError):
    """The provider has no live session."""

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Server {provider_id} not connected")
        self.provider_id = provider_id
