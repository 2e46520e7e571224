"""MCP Client - Tool discovery and execution.

The MCP Client starts tool providers over stdio, discovers their tools
and executes tool calls. The gateway routes calls across providers.
"""

from mcp_client.client import MCPClient
from mcp_client.gateway import ProviderStatus, ToolGateway

__all__ = [
    "MCPClient",
    "ProviderStatus",
    "ToolGateway",
]
