"""The protocol client: one ClientSession per server connection.

A session moves through ``UNINITIALIZED -> HANDSHAKING -> READY -> CLOSED``
and never goes back; reconnecting requires a new transport and a new session.
While the session is entered as an async context manager a single reader
task drains the transport and routes each message:

* responses are matched to pending requests by id (arrival order does not
  matter) and responses for unknown ids are logged and dropped,
* ``notifications/message`` and ``notifications/tools/list_changed`` go to
  their callbacks, other notifications are ignored,
* server requests are answered (``ping``) or rejected with METHOD_NOT_FOUND.

Every request has a deadline. A timeout only fails that call, but
``max_consecutive_timeouts`` timeouts in a row close the connection.
"""

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from functools import partial
from types import TracebackType
from typing import Any, Protocol, TypeVar

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import BaseModel, ConfigDict, ValidationError
from typing_extensions import Self

from mcplink import types
from mcplink.client.conversation import render_tool_result
from mcplink.shared.exceptions import (
    DecodeError,
    HandshakeError,
    InvalidArguments,
    McpError,
    NotConnected,
    ProtocolError,
    ReadError,
    RequestCancelled,
    RequestTimeout,
    ResourceNotFound,
    ToolExecutionError,
    ToolNotFound,
    WriteError,
)
from mcplink.shared.version import SUPPORTED_PROTOCOL_VERSIONS

DEFAULT_CLIENT_INFO = types.Implementation(name="mcplink", version="0.1.0")

DEFAULT_REQUEST_TIMEOUT = timedelta(seconds=30)
DEFAULT_HANDSHAKE_TIMEOUT = timedelta(seconds=10)
MAX_CONSECUTIVE_TIMEOUTS = 3

logger = logging.getLogger(__name__)
server_logger = logging.getLogger("mcplink.server")

ResultT = TypeVar("ResultT", bound=BaseModel)

_UNKNOWN_TOOL_PATTERN = re.compile(r"unknown tool|no such tool|tool\b.*\bnot found", re.IGNORECASE)

_SERVER_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}


class Transport(Protocol):
    """What a session needs from its transport."""

    async def send(self, message: types.JSONRPCMessage) -> None: ...

    async def receive(self) -> types.JSONRPCMessage: ...

    async def close(self) -> None: ...


class LoggingFnT(Protocol):
    async def __call__(self, params: types.LoggingMessageNotificationParams) -> None: ...


ToolsChangedFnT = Callable[[], Awaitable[None]]


async def _default_logging_callback(params: types.LoggingMessageNotificationParams) -> None:
    name = f"mcplink.server.{params.logger}" if params.logger else server_logger.name
    logging.getLogger(name).log(_SERVER_LOG_LEVELS.get(params.level, logging.INFO), "%s", params.data)


async def _default_tools_changed_callback() -> None:
    logger.debug("Server reported that its tool list changed")


class ConnectionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    HANDSHAKING = "handshaking"
    READY = "ready"
    CLOSED = "closed"


class ServerCapabilityFlags(BaseModel):
    """Feature groups the server advertised at handshake."""

    model_config = ConfigDict(frozen=True)

    tools: bool = False
    resources: bool = False
    prompts: bool = False

    @classmethod
    def from_capabilities(cls, capabilities: types.ServerCapabilities) -> Self:
        return cls(
            tools=capabilities.tools is not None,
            resources=capabilities.resources is not None,
            prompts=capabilities.prompts is not None,
        )


PendingOutcome = types.JSONRPCResultResponse | types.JSONRPCErrorResponse | RequestCancelled


@dataclass
class PendingRequest:
    """An in-flight request and its single-fulfillment completion slot."""

    id: int
    method: str
    sent_at: float
    _send_stream: MemoryObjectSendStream[PendingOutcome] = field(repr=False)
    _receive_stream: MemoryObjectReceiveStream[PendingOutcome] = field(repr=False)

    @classmethod
    def create(cls, request_id: int, method: str) -> "PendingRequest":
        send_stream, receive_stream = anyio.create_memory_object_stream[PendingOutcome](1)
        return cls(request_id, method, anyio.current_time(), send_stream, receive_stream)

    def fulfill(self, outcome: PendingOutcome) -> bool:
        """Deliver the outcome. Returns False if the slot was already used or closed."""
        try:
            self._send_stream.send_nowait(outcome)
        except (anyio.WouldBlock, anyio.BrokenResourceError, anyio.ClosedResourceError):
            return False
        return True

    async def wait(self) -> PendingOutcome:
        try:
            return await self._receive_stream.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            return RequestCancelled(f"Request {self.id} ({self.method}) was abandoned")

    def close(self) -> None:
        self._send_stream.close()
        self._receive_stream.close()


def _default_error(error: types.ErrorData) -> McpError:
    return McpError(error)


def _tool_call_error(tool_name: str, error: types.ErrorData) -> McpError:
    if error.code == types.METHOD_NOT_FOUND or (
        error.code == types.INVALID_PARAMS and _UNKNOWN_TOOL_PATTERN.search(error.message)
    ):
        return ToolNotFound(error)
    if error.code == types.INVALID_PARAMS:
        return InvalidArguments(error)
    return ToolExecutionError(error)


def _read_resource_error(uri: str, error: types.ErrorData) -> McpError:
    if error.code in (types.RESOURCE_NOT_FOUND, types.INVALID_PARAMS):
        return ResourceNotFound(error)
    return McpError(error)


class ClientSession:
    """Protocol client for one server connection.

    Example:
        transport = await StdioTransport.spawn(descriptor)
        async with ClientSession(transport) as session:
            await session.initialize()
            tools = await session.list_tools()
            result = await session.call_tool("add", {"a": 5, "b": 3})
    """

    def __init__(
        self,
        transport: Transport,
        *,
        client_info: types.Implementation | None = None,
        request_timeout: timedelta | None = DEFAULT_REQUEST_TIMEOUT,
        handshake_timeout: timedelta | None = DEFAULT_HANDSHAKE_TIMEOUT,
        max_consecutive_timeouts: int = MAX_CONSECUTIVE_TIMEOUTS,
        logging_callback: LoggingFnT | None = None,
        tools_changed_callback: ToolsChangedFnT | None = None,
    ) -> None:
        self._transport = transport
        self._client_info = client_info or DEFAULT_CLIENT_INFO
        self._request_timeout = request_timeout
        self._handshake_timeout = handshake_timeout
        self._max_consecutive_timeouts = max_consecutive_timeouts
        self._logging_callback = logging_callback or _default_logging_callback
        self._tools_changed_callback = tools_changed_callback or _default_tools_changed_callback

        self._state = ConnectionState.UNINITIALIZED
        self._pending: dict[int, PendingRequest] = {}
        self._next_id = 1
        self._consecutive_timeouts = 0
        self._initialize_result: types.InitializeResult | None = None
        self._capabilities = ServerCapabilityFlags()
        self._close_reason: str | None = None
        self._task_group: TaskGroup | None = None

    async def __aenter__(self) -> Self:
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self._receive_loop)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        await self.disconnect()
        assert self._task_group is not None
        # The reader may still be blocked on a transport that does not signal
        # EOF on close, so do not wait for it.
        self._task_group.cancel_scope.cancel()
        # The reader never raises; the body's exception propagates unwrapped.
        await self._task_group.__aexit__(None, None, None)
        return None

    # -- state ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def capabilities(self) -> ServerCapabilityFlags:
        return self._capabilities

    @property
    def initialize_result(self) -> types.InitializeResult | None:
        return self._initialize_result

    @property
    def server_info(self) -> types.Implementation | None:
        return self._initialize_result.server_info if self._initialize_result else None

    @property
    def protocol_version(self) -> str | None:
        return self._initialize_result.protocol_version if self._initialize_result else None

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    @property
    def pending_request_ids(self) -> list[int]:
        return list(self._pending)

    # -- handshake ----------------------------------------------------------------

    async def initialize(self) -> types.InitializeResult:
        """Perform the initialize handshake.

        Raises:
            HandshakeError: the server failed, timed out or answered with an
                unsupported protocol version. The session is closed.
            NotConnected: the session is already closed.
        """
        if self._state is ConnectionState.CLOSED:
            raise NotConnected(f"Connection is closed: {self._close_reason}")
        if self._state is not ConnectionState.UNINITIALIZED:
            raise ProtocolError("initialize() may only be called once per connection")

        self._state = ConnectionState.HANDSHAKING
        params = types.InitializeRequestParams(
            protocol_version=types.LATEST_PROTOCOL_VERSION,
            capabilities=types.ClientCapabilities(),
            client_info=self._client_info,
        )

        try:
            result = await self._send_request(
                "initialize",
                params.model_dump(by_alias=True, mode="json", exclude_none=True),
                types.InitializeResult,
                timeout=self._handshake_timeout,
            )
            if result.protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
                raise ProtocolError(f"Unsupported protocol version from the server: {result.protocol_version}")
            await self._send_notification("notifications/initialized")
        except McpError as e:
            await self._shutdown(f"Handshake failed: {e}")
            raise HandshakeError(f"Handshake failed: {e}") from e

        self._initialize_result = result
        self._capabilities = ServerCapabilityFlags.from_capabilities(result.capabilities)
        self._state = ConnectionState.READY
        logger.info(
            f"Connected to {result.server_info.name} {result.server_info.version} "
            f"(protocol {result.protocol_version}, {self._capabilities})"
        )
        return result

    # -- operations ---------------------------------------------------------------

    async def send_ping(self) -> types.EmptyResult:
        """Send a ping request."""
        self._require_ready()
        return await self._send_request("ping", None, types.EmptyResult)

    async def list_tools(self) -> list[types.Tool]:
        """Fetch every tool the server currently offers, following pagination."""
        self._require_capability("tools")
        pages = await self._list_all("tools/list", types.ListToolsResult)
        return [tool for page in pages for tool in page.tools]

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        read_timeout_seconds: timedelta | None = None,
    ) -> types.CallToolResult:
        """Send a tools/call request.

        Raises:
            ToolNotFound: the server has no such tool
            InvalidArguments: the server rejected the arguments
            ToolExecutionError: the tool ran and failed (safe to retry)
            RequestTimeout: no answer within the deadline
        """
        self._require_capability("tools")
        params: dict[str, Any] = {"name": name}
        if arguments is not None:
            params["arguments"] = arguments

        result = await self._send_request(
            "tools/call",
            params,
            types.CallToolResult,
            timeout=read_timeout_seconds,
            error_factory=partial(_tool_call_error, name),
        )

        if result.is_error:
            message = render_tool_result(result) or f"Tool '{name}' reported an error"
            error = types.ErrorData(
                code=types.INTERNAL_ERROR,
                message=message,
                data=result.model_dump(by_alias=True, mode="json", exclude_none=True),
            )
            if _UNKNOWN_TOOL_PATTERN.search(message):
                raise ToolNotFound(error)
            raise ToolExecutionError(error)
        return result

    async def list_resources(self) -> list[types.Resource]:
        """Fetch every resource the server currently offers, following pagination."""
        self._require_capability("resources")
        pages = await self._list_all("resources/list", types.ListResourcesResult)
        return [resource for page in pages for resource in page.resources]

    async def read_resource(self, uri: str) -> types.ReadResourceResult:
        """Send a resources/read request.

        Raises:
            ResourceNotFound: the server does not know ``uri``
        """
        self._require_capability("resources")
        return await self._send_request(
            "resources/read",
            {"uri": uri},
            types.ReadResourceResult,
            error_factory=partial(_read_resource_error, uri),
        )

    async def list_prompts(self) -> list[types.Prompt]:
        """Fetch every prompt the server currently offers, following pagination."""
        self._require_capability("prompts")
        pages = await self._list_all("prompts/list", types.ListPromptsResult)
        return [prompt for page in pages for prompt in page.prompts]

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> types.GetPromptResult:
        """Send a prompts/get request."""
        self._require_capability("prompts")
        params: dict[str, Any] = {"name": name}
        if arguments is not None:
            params["arguments"] = arguments
        return await self._send_request("prompts/get", params, types.GetPromptResult)

    async def disconnect(self) -> None:
        """Cancel pending requests and close the transport. A no-op once closed."""
        await self._shutdown("Disconnected by client")

    # -- internals ----------------------------------------------------------------

    def _require_ready(self) -> None:
        if self._state is not ConnectionState.READY:
            detail = f": {self._close_reason}" if self._close_reason else ""
            raise NotConnected(f"Connection is {self._state.value}{detail}")

    def _require_capability(self, group: str) -> None:
        self._require_ready()
        if not getattr(self._capabilities, group):
            server = self.server_info.name if self.server_info else "server"
            raise ProtocolError(f"{server} does not advertise the '{group}' capability")

    async def _list_all(self, method: str, result_type: type[ResultT]) -> list[ResultT]:
        pages: list[ResultT] = []
        seen_cursors: set[str] = set()
        cursor: str | None = None
        while True:
            page = await self._send_request(method, {"cursor": cursor} if cursor else None, result_type)
            pages.append(page)
            cursor = getattr(page, "next_cursor", None)
            if not cursor:
                return pages
            if cursor in seen_cursors:
                raise ProtocolError(f"Server repeated pagination cursor {cursor!r} for {method}")
            seen_cursors.add(cursor)

    async def _send_request(
        self,
        method: str,
        params: dict[str, Any] | None,
        result_type: type[ResultT],
        timeout: timedelta | None = None,
        error_factory: Callable[[types.ErrorData], McpError] = _default_error,
    ) -> ResultT:
        """Send a request and wait for its response.

        ``timeout`` overrides the session's request timeout for this call.
        """
        if self._state not in (ConnectionState.HANDSHAKING, ConnectionState.READY):
            raise NotConnected(f"Connection is {self._state.value}")

        request_id = self._next_id
        self._next_id += 1
        pending = PendingRequest.create(request_id, method)
        self._pending[request_id] = pending

        request = types.JSONRPCRequest(id=request_id, method=method, params=params)

        deadline = timeout if timeout is not None else self._request_timeout
        seconds = deadline.total_seconds() if deadline is not None else None
        outcome: PendingOutcome | None = None
        sent = False
        try:
            # One deadline covers the write too; a server that stops reading stdin blocks send
            with anyio.move_on_after(seconds):
                await self._transport.send(request)
                sent = True
                outcome = await pending.wait()
        finally:
            self._pending.pop(request_id, None)
            pending.close()

        if outcome is None:
            if not sent:
                # A partly written line corrupts every frame after it
                await self._shutdown(f"Timed out writing {method} request to server")
            await self._on_timeout(pending, seconds)
        elif isinstance(outcome, RequestCancelled):
            raise outcome

        self._consecutive_timeouts = 0
        if isinstance(outcome, types.JSONRPCErrorResponse):
            raise error_factory(outcome.error)

        assert isinstance(outcome, types.JSONRPCResultResponse)
        try:
            return result_type.model_validate(outcome.result)
        except ValidationError as e:
            raise ProtocolError(f"Invalid {method} result from server: {e}") from e

    async def _on_timeout(self, pending: PendingRequest, seconds: float | None) -> None:
        self._consecutive_timeouts += 1
        logger.warning(
            f"Request {pending.id} ({pending.method}) timed out after {seconds} seconds "
            f"({self._consecutive_timeouts}/{self._max_consecutive_timeouts} consecutive)"
        )
        if self._consecutive_timeouts >= self._max_consecutive_timeouts:
            logger.error(f"{self._consecutive_timeouts} consecutive timeouts; server appears wedged, disconnecting")
            await self._shutdown(f"{self._consecutive_timeouts} consecutive request timeouts")
        raise RequestTimeout(
            f"Timed out while waiting for response to {pending.method}. Waited {seconds} seconds."
        )

    async def _send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._transport.send(types.JSONRPCNotification(method=method, params=params))

    async def _shutdown(self, reason: str) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        self._state = ConnectionState.CLOSED
        self._close_reason = reason

        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            request.fulfill(RequestCancelled(f"Request {request.id} ({request.method}) cancelled: {reason}"))
        if pending:
            logger.info(f"Cancelled {len(pending)} pending request(s): {reason}")

        await self._transport.close()
        logger.info(f"Connection closed: {reason}")

    async def _receive_loop(self) -> None:
        try:
            while True:
                try:
                    message = await self._transport.receive()
                except DecodeError as e:
                    logger.warning(f"Ignoring malformed message: {e}")
                    continue
                await self._handle_message(message)
        except anyio.EndOfStream:
            logger.debug("Server closed its output stream")
        except ReadError as e:
            logger.warning(f"Reading from server failed: {e}")
        except Exception as e:
            # Never let the reader crash the owning task group
            logger.exception(f"Unhandled exception in receive loop: {e}")
        finally:
            if self._state is not ConnectionState.CLOSED:
                await self._shutdown("Server process exited")

    async def _handle_message(self, message: types.JSONRPCMessage) -> None:
        if isinstance(message, types.JSONRPCResultResponse | types.JSONRPCErrorResponse):
            self._handle_response(message)
        elif isinstance(message, types.JSONRPCNotification):
            await self._handle_notification(message)
        else:
            await self._handle_server_request(message)

    def _handle_response(self, message: types.JSONRPCResultResponse | types.JSONRPCErrorResponse) -> None:
        request_id = message.id
        # Some servers echo integer ids back as strings
        if isinstance(request_id, str) and request_id.isdigit():
            request_id = int(request_id)

        pending = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if pending is None:
            logger.warning(f"Dropping response with unknown request ID: {message.id!r}")
            return
        pending.fulfill(message)

    async def _handle_notification(self, notification: types.JSONRPCNotification) -> None:
        try:
            if notification.method == "notifications/message":
                params = types.LoggingMessageNotificationParams.model_validate(notification.params or {})
                await self._logging_callback(params)
            elif notification.method == "notifications/tools/list_changed":
                await self._tools_changed_callback()
        except ValidationError as e:
            logger.warning(f"Failed to validate notification: {e}. Message was: {notification}")
        except Exception:
            logger.exception(f"Notification handler for {notification.method} failed")

    async def _handle_server_request(self, request: types.JSONRPCRequest) -> None:
        if request.method == "ping":
            response: types.JSONRPCMessage = types.JSONRPCResultResponse(id=request.id, result={})
        else:
            response = types.JSONRPCErrorResponse(
                id=request.id,
                error=types.ErrorData(code=types.METHOD_NOT_FOUND, message=f"Method not supported: {request.method}"),
            )
        try:
            await self._transport.send(response)
        except WriteError as e:
            logger.debug(f"Could not answer server request {request.method}: {e}")
