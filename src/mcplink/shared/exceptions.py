from mcplink.types import (
    CONNECTION_CLOSED,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    REQUEST_CANCELLED,
    REQUEST_TIMEOUT,
    RESOURCE_NOT_FOUND,
    ErrorData,
)


class McpError(Exception):
    """Base class for every error raised by mcplink.

    Mirrors a JSON-RPC error: it wraps an ErrorData carrying a numeric code, a
    human readable message and optional additional data. Errors reported by a
    server keep the server's ErrorData; errors raised locally synthesize one.

    Attributes:
        error: The ErrorData describing the failure
        retryable: Whether repeating the same call may succeed
    """

    error: ErrorData
    default_code: int = INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, error: ErrorData | str):
        if isinstance(error, str):
            error = ErrorData(code=self.default_code, message=error)
        super().__init__(error.message)
        self.error = error

    @property
    def code(self) -> int:
        return self.error.code


# Transport -------------------------------------------------------------------


class TransportError(McpError):
    """The child process or its pipes failed."""

    default_code = CONNECTION_CLOSED


class SpawnError(TransportError):
    """The server process could not be started."""


class WriteError(TransportError):
    """A message could not be written because the pipe is closed."""


class ReadError(TransportError):
    """The server's output stream failed while reading."""


class DecodeError(TransportError):
    """A single line from the server was not a valid JSON-RPC message."""

    default_code = PARSE_ERROR

    def __init__(self, error: ErrorData | str, line: str = ""):
        super().__init__(error)
        self.line = line


# Connection lifecycle --------------------------------------------------------


class HandshakeError(McpError):
    """The initialize exchange failed, timed out or returned nonsense."""

    default_code = CONNECTION_CLOSED


class NotConnected(McpError):
    """An operation was attempted on a connection that is not ready."""

    default_code = CONNECTION_CLOSED


class NoActiveConnection(NotConnected):
    """The session manager has no server connected."""


class RequestTimeout(McpError):
    """No response arrived before the request's deadline."""

    default_code = REQUEST_TIMEOUT
    retryable = True


class RequestCancelled(McpError):
    """The connection was closed while the request was pending."""

    default_code = REQUEST_CANCELLED


class ProtocolError(McpError):
    """The server lacks a capability or the exchange was structurally invalid."""

    default_code = INVALID_REQUEST


# Server-reported outcomes ----------------------------------------------------


class ToolNotFound(McpError):
    """The server has no tool with the requested name."""

    default_code = METHOD_NOT_FOUND


class InvalidArguments(McpError):
    """The server rejected the tool arguments."""

    default_code = INVALID_PARAMS


class ToolExecutionError(McpError):
    """The server ran the tool and the tool failed."""

    retryable = True


class ResourceNotFound(McpError):
    """The server has no resource at the requested URI."""

    default_code = RESOURCE_NOT_FOUND


# Configuration ---------------------------------------------------------------


class UnknownServer(McpError):
    """No launch descriptor is registered under the requested name."""

    default_code = INVALID_PARAMS


class ConfigError(McpError):
    """The server configuration could not be used."""

    default_code = INVALID_PARAMS


class InvalidConfig(ConfigError):
    """A server entry is malformed."""


class UnsupportedTransport(ConfigError):
    """A server entry asks for a transport other than stdio."""
