"""Interactive terminal shell around the orchestration loop."""

from assistant.commands import Command, parse_command
from assistant.interface import ConsoleIO
from assistant.session import AssistantSession, SessionAction

__all__ = [
    "AssistantSession",
    "Command",
    "ConsoleIO",
    "SessionAction",
    "parse_command",
]
