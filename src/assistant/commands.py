"""Slash commands handled by the shell without reaching the generator."""

from enum import Enum
from typing import Optional


class Command(str, Enum):
    EXIT = "exit"
    HELP = "help"
    TOOLS = "tools"


COMMANDS: dict[str, Command] = {
    "/exit": Command.EXIT,
    "/quit": Command.EXIT,
    "/help": Command.HELP,
    "/tools": Command.TOOLS,
}

HELP_ENTRIES: list[tuple[str, str]] = [
    ("/help", "Show this help message"),
    ("/tools", "List available tools"),
    ("/exit", "Exit the assistant"),
]


def parse_command(text: str) -> Optional[Command]:
    """Return the command for ``text``, or None if it is ordinary input."""
    return COMMANDS.get(text.strip().lower())
