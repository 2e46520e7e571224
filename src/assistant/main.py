"""Assistant - terminal application.

Bootstraps the pieces and runs the read-eval-print loop:
- Conversation database
- MCP tool providers
- Response generator
- Orchestration loop
"""

import asyncio
import signal
import sys

from dotenv import load_dotenv

from assistant.interface import ConsoleIO
from assistant.session import AssistantSession, SessionAction
from mcp_client.gateway import ToolGateway
from orchestrator.llm import create_response_generator
from orchestrator.loop import OrchestrationLoop
from persistence.sql import SqlConversationStore
from shared.config import Settings, get_settings
from shared.errors import AssistantError
from shared.logging import get_logger, setup_logging

logger = get_logger(__name__)


async def repl(io: ConsoleIO, session: AssistantSession) -> None:
    """Prompt until the user exits or closes the input."""
    while True:
        try:
            text = await io.prompt_user()
        except (EOFError, KeyboardInterrupt):
            io.display_info("Goodbye! 👋")
            return

        try:
            action = await session.handle_input(text)
        except Exception as e:
            logger.error("Unexpected error while handling input", error=str(e), exc_info=True)
            io.display_error(f"An error occurred: {e}")
            continue

        if action == SessionAction.EXIT:
            return


def _install_signal_handlers() -> None:
    """Cancel the main task on SIGTERM so cleanup runs."""
    task = asyncio.current_task()
    if task is None:
        return
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, task.cancel)
    except NotImplementedError:
        logger.debug("Signal handlers not supported on this platform")


async def run(settings: Settings, io: ConsoleIO) -> int:
    """Run the assistant. Returns the process exit code."""
    _install_signal_handlers()
    io.display_info("Starting MCP Code Assistant...")
    io.display_welcome()

    try:
        store = await SqlConversationStore.from_url(
            settings.database.url, echo=settings.database.echo
        )
    except AssistantError as e:
        io.display_error(f"Fatal error: {e}")
        return 1
    io.display_success("Database connected")

    gateway = ToolGateway(tool_timeout_seconds=settings.assistant.tool_timeout_seconds)
    try:
        io.display_info("Connecting to MCP servers...")
        for status in await gateway.connect_all(settings.providers):
            io.display_provider_status(status)

        capabilities = await gateway.list_all_capabilities()
        io.display_info(
            f"\nReady with {len(capabilities)} tools from "
            f"{len(gateway.connected_providers())} servers\n"
        )

        generator = create_response_generator(
            settings.llm, system_prompt=settings.assistant.system_prompt
        )
        loop = OrchestrationLoop(
            generator=generator,
            gateway=gateway,
            store=store,
            max_iterations=settings.assistant.max_iterations,
            parallel_tool_calls=settings.assistant.parallel_tool_calls,
            history_limit=settings.assistant.history_limit,
        )

        conversation = await store.create_conversation(settings.assistant.user_id)
        logger.info("Session started", conversation_id=conversation.id)

        session = AssistantSession(io, loop, conversation.id, capabilities)
        await repl(io, session)
        return 0

    except asyncio.CancelledError:
        io.display_info("\nShutting down gracefully...")
        return 0
    except (AssistantError, ValueError) as e:
        io.display_error(f"Fatal error: {e}")
        return 1
    finally:
        io.display_info("Cleaning up...")
        await gateway.disconnect_all()
        await store.close()
        io.display_info("Disconnected from all MCP servers")


def main() -> None:
    """Console entry point."""
    load_dotenv()

    settings = get_settings()
    setup_logging(
        "DEBUG" if settings.debug else settings.log_level,
        json_output=settings.environment == "production"
    )

    io = ConsoleIO()
    try:
        exit_code = asyncio.run(run(settings, io))
    except KeyboardInterrupt:
        io.display_info("\nInterrupted, shutting down.")
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
