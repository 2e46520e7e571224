"""Terminal input and rendering.

Uses rich for output and prompt_toolkit for line editing and history.
"""

from contextlib import contextmanager
from itertools import groupby
from typing import Iterator, Optional, Sequence

from prompt_toolkit import PromptSession
from prompt_toolkit.styles import Style as PromptStyle
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from assistant.commands import HELP_ENTRIES
from mcp_client.gateway import ProviderStatus
from shared.models import CapabilityDescriptor

ACCENT = "#CD6F47"


class ConsoleIO:
    """Reads user input and renders assistant output in the terminal."""

    def __init__(
        self,
        console: Optional[Console] = None,
        prompt_session: Optional[PromptSession] = None
    ) -> None:
        self.console = console or Console()
        self._prompt_session = prompt_session

    @property
    def prompt_session(self) -> PromptSession:
        if self._prompt_session is None:
            self._prompt_session = PromptSession(
                style=PromptStyle.from_dict({"prompt": f"{ACCENT} bold"})
            )
        return self._prompt_session

    async def prompt_user(self) -> str:
        """Read one line. Raises EOFError or KeyboardInterrupt on Ctrl-D / Ctrl-C."""
        return await self.prompt_session.prompt_async([("class:prompt", "> ")])

    def display_welcome(self) -> None:
        self.console.print(Panel.fit(
            f"[bold {ACCENT}]MCP Code Assistant[/]\n"
            "[dim]Type /help for commands, /exit to quit.[/]",
            border_style=ACCENT,
        ))

    def display_help(self) -> None:
        table = Table(title="Commands", show_header=False, border_style="dim")
        table.add_column("Command", style=f"bold {ACCENT}")
        table.add_column("Description")
        for command, description in HELP_ENTRIES:
            table.add_row(command, description)
        self.console.print(table)

    def display_tools(self, capabilities: Sequence[CapabilityDescriptor]) -> None:
        if not capabilities:
            self.console.print("[yellow]No tools available.[/]")
            return

        table = Table(title=f"Available tools ({len(capabilities)})", border_style="dim")
        table.add_column("Server", style="dim")
        table.add_column("Tool", style=f"bold {ACCENT}")
        table.add_column("Description")

        ordered = sorted(capabilities, key=lambda c: c.provider_id)
        for provider_id, group in groupby(ordered, key=lambda c: c.provider_id):
            for index, capability in enumerate(group):
                description = capability.description.strip().splitlines()
                table.add_row(
                    provider_id if index == 0 else "",
                    capability.name,
                    description[0] if description else "",
                )
        self.console.print(table)

    def display_provider_status(self, status: ProviderStatus) -> None:
        if status.connected:
            self.console.print(
                f"[{ACCENT}]✓[/] [dim]{status.name} server ({status.tool_count} tools)[/]"
            )
        else:
            reason = f" ({status.reason})" if status.reason else ""
            self.console.print(f"[yellow]✗[/] [dim]{status.name} server{reason}[/]")

    def display_success(self, text: str) -> None:
        self.console.print(f"[{ACCENT}]✓[/] [dim]{text}[/]")

    def display_response(self, text: str) -> None:
        self.console.print(Panel(Markdown(text), border_style=ACCENT, title="Assistant"))

    def display_info(self, text: str) -> None:
        self.console.print(f"[dim]{text}[/]")

    def display_error(self, text: str) -> None:
        self.console.print(f"[bold red]Error:[/] {text}")

    @contextmanager
    def thinking(self, text: str = "Thinking...") -> Iterator[None]:
        with self.console.status(f"[dim]{text}[/]", spinner="dots"):
            yield
