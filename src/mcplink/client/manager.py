"""
SessionManager: owns at most one live server connection for a conversation.

Switching servers always tears down the current connection first; if the new
connection then fails, the manager is left with no connection rather than the
old one.
"""

import logging
import os
from collections.abc import Awaitable, Callable, Mapping
from contextlib import AsyncExitStack
from datetime import timedelta
from pathlib import Path
from types import TracebackType
from typing import Any, TextIO

import anyio
from pydantic import BaseModel
from typing_extensions import Self

from mcplink import types
from mcplink.client.config import LaunchDescriptor, ServerRegistry
from mcplink.client.conversation import ToolResultRecord, record_from_error, record_from_result, tool_spec
from mcplink.client.session import (
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    ClientSession,
    ConnectionState,
    LoggingFnT,
    ServerCapabilityFlags,
    ToolsChangedFnT,
    Transport,
)
from mcplink.client.stdio import StdioTransport
from mcplink.shared.exceptions import McpError, NoActiveConnection

logger = logging.getLogger(__name__)

TransportFactory = Callable[[LaunchDescriptor, TextIO | None], Awaitable[Transport]]


class ConnectionSummary(BaseModel):
    """What the user is shown after a successful connect."""

    server_name: str
    pid: int | None = None
    protocol_version: str
    server_info: types.Implementation
    capabilities: ServerCapabilityFlags


class SessionManager:
    """Holds the active connection for a conversation.

    Operations on the manager are forwarded to the active session and fail
    with NoActiveConnection when there is none.

    Example:
        registry = ServerRegistry.load_default()
        async with SessionManager(registry) as manager:
            await manager.connect("git")
            specs = await manager.tool_specs()
            record = await manager.invoke_tool("toolu_01", "git_status", {"repo_path": "."})
    """

    def __init__(
        self,
        registry: ServerRegistry,
        *,
        workspace_folder: str | Path | None = None,
        inputs: Mapping[str, str] | None = None,
        client_info: types.Implementation | None = None,
        request_timeout: timedelta | None = DEFAULT_REQUEST_TIMEOUT,
        handshake_timeout: timedelta | None = DEFAULT_HANDSHAKE_TIMEOUT,
        errlog: TextIO | None = None,
        logging_callback: LoggingFnT | None = None,
        tools_changed_callback: ToolsChangedFnT | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self._registry = registry
        self._workspace_folder = workspace_folder
        self._inputs = inputs
        self._client_info = client_info
        self._request_timeout = request_timeout
        self._handshake_timeout = handshake_timeout
        self._errlog = errlog
        self._logging_callback = logging_callback
        self._tools_changed_callback = tools_changed_callback
        self._transport_factory = transport_factory or StdioTransport.spawn

        self._lock = anyio.Lock()
        self._session: ClientSession | None = None
        self._exit_stack: AsyncExitStack | None = None
        self._server_name: str | None = None
        self._summary: ConnectionSummary | None = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        await self.disconnect()
        return None

    @property
    def registry(self) -> ServerRegistry:
        return self._registry

    @property
    def connection(self) -> ConnectionSummary | None:
        """The live connection, or None once its server has gone away."""
        return self._summary if self._has_live_session() else None

    @property
    def session(self) -> ClientSession | None:
        return self._session

    @property
    def is_connected(self) -> bool:
        return self._session is not None and self._session.state is ConnectionState.READY

    def current_server(self) -> str | None:
        return self._server_name if self._has_live_session() else None

    def _has_live_session(self) -> bool:
        return self._session is not None and self._session.state is not ConnectionState.CLOSED

    async def connect(self, server_name: str, inputs: Mapping[str, str] | None = None) -> ConnectionSummary:
        """Connect to ``server_name``, replacing any current connection.

        ``inputs`` supplies ``${input:*}`` values on top of those given to the manager.

        The name is looked up before anything is torn down, so an unknown name
        leaves the current connection alone. Any later failure leaves the
        manager disconnected.

        Raises:
            UnknownServer: no such server in the registry
            SpawnError, HandshakeError: the new connection could not be made
        """
        workspace_folder = self._workspace_folder if self._workspace_folder is not None else os.getcwd()
        if inputs is not None:
            inputs = {**(self._inputs or {}), **inputs}
        else:
            inputs = self._inputs
        descriptor = self._registry.resolve(server_name, workspace_folder, inputs)

        async with self._lock:
            await self._close_current()

            logger.info(f"Connecting to server '{server_name}'")
            stack = AsyncExitStack()
            try:
                transport = await self._transport_factory(descriptor, self._errlog)
                stack.push_async_callback(transport.close)
                session = await stack.enter_async_context(
                    ClientSession(
                        transport,
                        client_info=self._client_info,
                        request_timeout=self._request_timeout,
                        handshake_timeout=self._handshake_timeout,
                        logging_callback=self._logging_callback,
                        tools_changed_callback=self._tools_changed_callback,
                    )
                )
                result = await session.initialize()
            except Exception:
                await stack.aclose()
                logger.warning(f"Could not connect to server '{server_name}'")
                raise

            self._exit_stack = stack
            self._session = session
            self._server_name = server_name
            self._summary = ConnectionSummary(
                server_name=server_name,
                pid=getattr(transport, "pid", None),
                protocol_version=result.protocol_version,
                server_info=result.server_info,
                capabilities=session.capabilities,
            )
            return self._summary

    async def disconnect(self) -> None:
        """Close the current connection, if any."""
        async with self._lock:
            await self._close_current()

    async def _close_current(self) -> None:
        if self._exit_stack is None:
            return

        stack, name = self._exit_stack, self._server_name
        self._exit_stack = None
        self._session = None
        self._server_name = None
        self._summary = None

        logger.info(f"Disconnecting from server '{name}'")
        await stack.aclose()

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise NoActiveConnection("No MCP server is connected; connect one with 'mcp <server>'")
        if self._session.state is ConnectionState.CLOSED:
            name = self._server_name
            raise NoActiveConnection(
                f"Connection to '{name}' was closed ({self._session.close_reason}); reconnect with 'mcp {name}'"
            )
        return self._session

    async def send_ping(self) -> types.EmptyResult:
        return await self._require_session().send_ping()

    async def list_tools(self) -> list[types.Tool]:
        return await self._require_session().list_tools()

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        read_timeout_seconds: timedelta | None = None,
    ) -> types.CallToolResult:
        return await self._require_session().call_tool(name, arguments, read_timeout_seconds)

    async def list_resources(self) -> list[types.Resource]:
        return await self._require_session().list_resources()

    async def read_resource(self, uri: str) -> types.ReadResourceResult:
        return await self._require_session().read_resource(uri)

    async def list_prompts(self) -> list[types.Prompt]:
        return await self._require_session().list_prompts()

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> types.GetPromptResult:
        return await self._require_session().get_prompt(name, arguments)

    async def tool_specs(self) -> list[dict[str, Any]]:
        """Tool definitions of the active server, for the chat backend's next request."""
        return [tool_spec(tool) for tool in await self.list_tools()]

    async def invoke_tool(self, tool_use_id: str, name: str, arguments: dict[str, Any] | None) -> ToolResultRecord:
        """Call a tool on behalf of the model. Failures become error records instead of raising."""
        try:
            result = await self.call_tool(name, arguments)
        except McpError as e:
            logger.info(f"Tool call {tool_use_id} ({name}) failed: {e}")
            return record_from_error(tool_use_id, e)
        return record_from_result(tool_use_id, result)
