"""Tool Gateway over all connected MCP providers.

Owns one ``MCPClient`` per provider, caches each provider's capabilities,
routes capability names to providers and turns every call-level failure
into a ``CapabilityCallResult`` instead of an exception.
"""

import asyncio
import time
from typing import Any, Callable, Iterable, Optional

import anyio
from mcp.shared.exceptions import McpError
from pydantic import BaseModel

from mcp_client.client import MCPClient, convert_call_result
from shared.config import ProviderSettings
from shared.errors import MCPClientError, ProviderNotConnectedError
from shared.logging import get_logger
from shared.models import CallStatus, CapabilityCallResult, CapabilityDescriptor, new_id
from shared.schema import validate_schema

logger = get_logger(__name__)


class ProviderStatus(BaseModel):
    """Outcome of connecting one provider at startup."""
    name: str
    connected: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    tool_count: int = 0


ClientFactory = Callable[[ProviderSettings], MCPClient]

# Raised by the SDK streams when the server process dies mid-request
TRANSPORT_ERRORS = (anyio.ClosedResourceError, anyio.BrokenResourceError, OSError)


class ToolGateway:
    """
    Gateway to every configured tool provider.

    Responsibilities:
    - Start and stop provider processes
    - List capabilities per provider and in total
    - Route a capability name to the provider that exposes it
    - Execute calls and report failures as results
    """

    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        tool_timeout_seconds: float = 120.0
    ) -> None:
        """
        Initialize the gateway.

        Args:
            client_factory: Builds a client for a provider; ``MCPClient`` by default
            tool_timeout_seconds: Upper bound for a single tool call
        """
        self._client_factory = client_factory or MCPClient
        self.tool_timeout = tool_timeout_seconds

        self._clients: dict[str, MCPClient] = {}
        self._capabilities: dict[str, list[CapabilityDescriptor]] = {}
        self._routes: dict[str, str] = {}

    async def connect(self, provider: ProviderSettings) -> ProviderStatus:
        """
        Connect one provider and cache its capabilities.

        Missing required environment and connection errors are reported in
        the returned status; they are not raised.
        """
        if not provider.enabled:
            return ProviderStatus(name=provider.name, skipped=True, reason="disabled")

        missing = provider.missing_env()
        if missing:
            logger.info("Provider skipped", provider=provider.name, missing_env=missing)
            return ProviderStatus(
                name=provider.name,
                skipped=True,
                reason=f"missing {', '.join(missing)}"
            )

        client = self._client_factory(provider)
        try:
            await client.connect()
            self._clients[provider.name] = client
            capabilities = await self.list_capabilities(provider.name, refresh=True)
        except (MCPClientError, McpError, *TRANSPORT_ERRORS) as e:
            logger.warning("Provider connection failed", provider=provider.name, error=str(e))
            await self.disconnect(provider.name)
            return ProviderStatus(name=provider.name, reason=str(e) or type(e).__name__)

        return ProviderStatus(
            name=provider.name,
            connected=True,
            tool_count=len(capabilities)
        )

    async def connect_all(self, providers: Iterable[ProviderSettings]) -> list[ProviderStatus]:
        """Connect providers in order; one failure does not stop the others."""
        statuses = []
        for provider in providers:
            statuses.append(await self.connect(provider))
        return statuses

    def is_available(self, provider_id: str) -> bool:
        """Check if a provider is connected."""
        client = self._clients.get(provider_id)
        return client is not None and client.is_connected

    def connected_providers(self) -> list[str]:
        """Names of all connected providers."""
        return [name for name in self._clients if self.is_available(name)]

    async def list_capabilities(
        self,
        provider_id: str,
        refresh: bool = False
    ) -> list[CapabilityDescriptor]:
        """
        List capabilities of one provider.

        Args:
            provider_id: Provider name
            refresh: Ask the provider instead of using the cache

        Raises:
            ProviderNotConnectedError: If the provider is not connected
        """
        if not self.is_available(provider_id):
            raise ProviderNotConnectedError(provider_id)

        if refresh or provider_id not in self._capabilities:
            capabilities = await self._clients[provider_id].list_tools()
            self._capabilities[provider_id] = capabilities
            self._rebuild_routes()

        return list(self._capabilities[provider_id])

    async def list_all_capabilities(self) -> list[CapabilityDescriptor]:
        """List capabilities of every connected provider, in connection order."""
        all_capabilities: list[CapabilityDescriptor] = []
        for provider_id in self.connected_providers():
            try:
                all_capabilities.extend(await self.list_capabilities(provider_id))
            except (MCPClientError, McpError, *TRANSPORT_ERRORS) as e:
                logger.warning("Listing capabilities failed", provider=provider_id, error=str(e))
        return all_capabilities

    def _rebuild_routes(self) -> None:
        routes: dict[str, str] = {}
        for provider_id, capabilities in self._capabilities.items():
            for capability in capabilities:
                if capability.name in routes:
                    logger.warning(
                        "Capability name collision",
                        capability=capability.name,
                        kept=routes[capability.name],
                        ignored=provider_id
                    )
                    continue
                routes[capability.name] = provider_id
        self._routes = routes

    def provider_for(self, capability_name: str) -> Optional[str]:
        """Name of the provider that serves a capability, if any."""
        return self._routes.get(capability_name)

    def _descriptor(self, provider_id: str, capability_name: str) -> Optional[CapabilityDescriptor]:
        for capability in self._capabilities.get(provider_id, []):
            if capability.name == capability_name:
                return capability
        return None

    async def execute(
        self,
        provider_id: str,
        capability_name: str,
        arguments: dict[str, Any],
        call_id: Optional[str] = None
    ) -> CapabilityCallResult:
        """
        Execute a capability on a provider.

        Never raises for a failed call; the failure is in the result status.

        Args:
            provider_id: Provider name
            capability_name: Tool name as the provider exposes it
            arguments: Tool arguments, passed through unmodified
            call_id: Correlation id of the call

        Returns:
            Call result with output or failure reason and duration
        """
        call_id = call_id or new_id()

        def failure(status: CallStatus, error: str, started: Optional[float] = None) -> CapabilityCallResult:
            duration = (time.perf_counter() - started) * 1000 if started else 0
            return CapabilityCallResult(
                call_id=call_id,
                capability_name=capability_name,
                provider_id=provider_id,
                status=status,
                error=error,
                duration_ms=duration
            )

        if not self.is_available(provider_id):
            return failure(CallStatus.UNAVAILABLE, f"Server {provider_id} not connected")

        descriptor = self._descriptor(provider_id, capability_name)
        if descriptor is None:
            return failure(
                CallStatus.NOT_FOUND,
                f"Tool {capability_name} not found on server {provider_id}"
            )

        is_valid, errors = validate_schema(arguments, descriptor.input_schema)
        if not is_valid:
            return failure(CallStatus.VALIDATION_ERROR, "; ".join(errors))

        logger.info("Executing tool", tool=capability_name, provider=provider_id, call_id=call_id)
        started = time.perf_counter()

        try:
            async with asyncio.timeout(self.tool_timeout):
                raw = await self._clients[provider_id].call_tool(capability_name, arguments)
        except TimeoutError:
            return failure(
                CallStatus.TIMEOUT,
                f"Tool {capability_name} timed out after {self.tool_timeout}s",
                started
            )
        except McpError as e:
            return failure(CallStatus.ERROR, str(e), started)
        except (*TRANSPORT_ERRORS, ProviderNotConnectedError) as e:
            logger.warning("Provider connection lost", provider=provider_id, error=str(e))
            await self.disconnect(provider_id)
            return failure(CallStatus.UNAVAILABLE, f"Server {provider_id} connection lost", started)

        ok, payload = convert_call_result(raw)
        duration = (time.perf_counter() - started) * 1000

        logger.info(
            "Tool executed",
            tool=capability_name,
            ok=ok,
            duration_ms=round(duration, 1)
        )

        return CapabilityCallResult(
            call_id=call_id,
            capability_name=capability_name,
            provider_id=provider_id,
            status=CallStatus.SUCCESS if ok else CallStatus.ERROR,
            output=payload if ok else None,
            error=None if ok else (str(payload) or "Tool reported an error"),
            duration_ms=duration
        )

    async def call(
        self,
        capability_name: str,
        arguments: dict[str, Any],
        call_id: Optional[str] = None
    ) -> CapabilityCallResult:
        """Route a capability name to its provider and execute it."""
        provider_id = self.provider_for(capability_name)
        if provider_id is None:
            return CapabilityCallResult(
                call_id=call_id or new_id(),
                capability_name=capability_name,
                status=CallStatus.NOT_FOUND,
                error=f"No connected server provides tool {capability_name}"
            )
        return await self.execute(provider_id, capability_name, arguments, call_id)

    async def disconnect(self, provider_id: str) -> None:
        """Disconnect one provider. Close failures are logged, not raised."""
        client = self._clients.pop(provider_id, None)
        self._capabilities.pop(provider_id, None)
        self._rebuild_routes()
        if client is None:
            return

        try:
            await client.close()
        except Exception as e:
            logger.warning("Provider close failed", provider=provider_id, error=str(e))

    async def disconnect_all(self) -> None:
        """Disconnect every provider, in reverse connection order."""
        for provider_id in reversed(list(self._clients)):
            await self.disconnect(provider_id)

    async def __aenter__(self) -> "ToolGateway":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect_all()
