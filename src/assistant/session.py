"""Interactive session: one conversation, one user, one turn at a time."""

from enum import Enum
from typing import Optional, Sequence

from assistant.commands import Command, parse_command
from assistant.interface import ConsoleIO
from orchestrator.loop import OrchestrationLoop
from shared.errors import AssistantError
from shared.logging import bind_context, clear_context, get_logger
from shared.models import CapabilityDescriptor

logger = get_logger(__name__)

NO_RESPONSE_TEXT = "I processed your request but have no response to show."


class SessionAction(str, Enum):
    CONTINUE = "continue"
    EXIT = "exit"


class AssistantSession:
    """
    Routes user input either to a shell command or to a loop turn.

    Commands never reach the generator. Turn-level failures are shown to the
    user and the session stays usable.
    """

    def __init__(
        self,
        io: ConsoleIO,
        loop: OrchestrationLoop,
        conversation_id: str,
        capabilities: Optional[Sequence[CapabilityDescriptor]] = None
    ) -> None:
        self.io = io
        self.loop = loop
        self.conversation_id = conversation_id
        self.capabilities = list(capabilities or [])

    async def handle_input(self, text: str) -> SessionAction:
        text = text.strip()
        if not text:
            return SessionAction.CONTINUE

        command = parse_command(text)
        if command == Command.EXIT:
            self.io.display_info("Goodbye! 👋")
            return SessionAction.EXIT
        if command == Command.HELP:
            self.io.display_help()
            return SessionAction.CONTINUE
        if command == Command.TOOLS:
            self.io.display_tools(self.capabilities)
            return SessionAction.CONTINUE

        bind_context(conversation_id=self.conversation_id)
        try:
            with self.io.thinking():
                result = await self.loop.run_user_turn(
                    self.conversation_id, text, self.capabilities
                )
        except AssistantError as e:
            logger.error("Turn failed", error=str(e))
            self.io.display_error(f"An error occurred: {e}")
            return SessionAction.CONTINUE
        finally:
            clear_context()

        self.io.display_response(result.final_text or NO_RESPONSE_TEXT)
        return SessionAction.CONTINUE
