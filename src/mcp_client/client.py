"""MCP Client for a single tool provider.

Starts an MCP server as a child process and speaks to it over stdio.
Handles connection, tool listing, tool calls and teardown.
"""

import asyncio
import os
from contextlib import AsyncExitStack
from typing import Any, Optional, TextIO

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import CallToolResult, Implementation
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.config import ProviderSettings
from shared.errors import MCPConnectionError, ProviderNotConnectedError
from shared.logging import get_logger
from shared.models import CapabilityDescriptor

logger = get_logger(__name__)

CLIENT_VERSION = "0.1.0"


class MCPClient:
    """
    Client for one MCP server process.

    Provides methods for:
    - Connecting over stdio
    - Discovering the server's tools
    - Executing tool calls
    - Closing the session and the process
    """

    def __init__(
        self,
        provider: ProviderSettings,
        close_timeout: float = 1.0,
        errlog: Optional[TextIO] = None
    ) -> None:
        """
        Initialize MCP Client.

        Args:
            provider: Provider command line and environment
            close_timeout: Seconds to wait for a graceful shutdown
            errlog: Where the server's stderr goes; discarded when None
        """
        self.provider = provider
        self.close_timeout = close_timeout
        self._errlog = errlog
        self._stack: Optional[AsyncExitStack] = None
        self._session: Optional[ClientSession] = None

    @property
    def name(self) -> str:
        return self.provider.name

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    def _server_parameters(self) -> StdioServerParameters:
        return StdioServerParameters(
            command=self.provider.command,
            args=self.provider.resolved_args(),
            env=self.provider.resolved_env(),
        )

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(MCPConnectionError),
        reraise=True
    )
    async def connect(self) -> None:
        """
        Start the server process and initialize the MCP session.

        Raises:
            MCPConnectionError: If the process cannot be started or the
                handshake fails
        """
        if self._session is not None:
            return

        stack = AsyncExitStack()
        try:
            errlog = self._errlog or stack.enter_context(open(os.devnull, "w"))
            read_stream, write_stream = await stack.enter_async_context(
                stdio_client(self._server_parameters(), errlog=errlog)
            )
            session = await stack.enter_async_context(
                ClientSession(
                    read_stream,
                    write_stream,
                    client_info=Implementation(
                        name=f"mcp-assistant-{self.name}",
                        version=CLIENT_VERSION
                    )
                )
            )
            await session.initialize()
        except Exception as e:
            await stack.aclose()
            raise MCPConnectionError(f"Cannot connect to MCP server {self.name}: {e}") from e

        self._stack = stack
        self._session = session
        logger.info("MCP server connected", provider=self.name, command=self.provider.command)

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ProviderNotConnectedError(self.name)
        return self._session

    async def list_tools(self) -> list[CapabilityDescriptor]:
        """
        List the tools the server exposes, following pagination.

        Raises:
            ProviderNotConnectedError: If the client is not connected
        """
        session = self._require_session()
        descriptors: list[CapabilityDescriptor] = []
        cursor: Optional[str] = None

        while True:
            result = await session.list_tools(cursor=cursor)
            for tool in result.tools:
                descriptors.append(CapabilityDescriptor(
                    name=tool.name,
                    provider_id=self.name,
                    description=tool.description or "",
                    input_schema=dict(tool.inputSchema or {}),
                ))
            cursor = result.nextCursor
            if not cursor:
                break

        logger.debug("Tools listed", provider=self.name, tool_count=len(descriptors))
        return descriptors

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        """
        Call a tool on the server.

        Raises:
            ProviderNotConnectedError: If the client is not connected
        """
        session = self._require_session()
        return await session.call_tool(name, arguments=arguments)

    async def close(self) -> None:
        """Close the session and stop the server process."""
        stack = self._stack
        self._stack = None
        self._session = None
        if stack is None:
            return

        try:
            async with asyncio.timeout(self.close_timeout):
                await stack.aclose()
        except TimeoutError:
            logger.warning("MCP server did not close in time", provider=self.name)
        except (OSError, RuntimeError) as e:
            # Broken pipes are expected when the server already exited
            logger.debug("MCP server close raised", provider=self.name, error=str(e))

    async def __aenter__(self) -> "MCPClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def convert_call_result(result: CallToolResult) -> tuple[bool, Any]:
    """
    Flatten an MCP tool result into ``(ok, payload)``.

    Structured content wins when the server provides it; otherwise text
    blocks are joined and other blocks are described by type.
    """
    structured = getattr(result, "structuredContent", None)
    if structured is not None and not result.isError:
        return True, structured

    parts: list[str] = []
    for block in result.content:
        text = getattr(block, "text", None)
        if text is not None:
            parts.append(text)
        else:
            parts.append(f"[{block.type} content]")

    payload = "\n".join(parts)
    return not result.isError, payload
