"""Protocol types used by the mcplink client.

Only the subset of the Model Context Protocol needed for tool, resource and
prompt discovery and invocation is modelled here. Every model allows extra
fields so that newer servers can add data without breaking older clients.
"""

from typing import Annotated, Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter

LATEST_PROTOCOL_VERSION: Final[str] = "2025-06-18"

JSONRPC_VERSION: Final[str] = "2.0"

# Standard JSON-RPC error codes
PARSE_ERROR: Final[int] = -32700
INVALID_REQUEST: Final[int] = -32600
METHOD_NOT_FOUND: Final[int] = -32601
INVALID_PARAMS: Final[int] = -32602
INTERNAL_ERROR: Final[int] = -32603

# Implementation-defined error codes
CONNECTION_CLOSED: Final[int] = -32000
REQUEST_TIMEOUT: Final[int] = -32001
RESOURCE_NOT_FOUND: Final[int] = -32002
REQUEST_CANCELLED: Final[int] = -32800

RequestId = Annotated[int, Field(strict=True)] | str

LoggingLevel = Literal["debug", "info", "notice", "warning", "error", "critical", "alert", "emergency"]


# =============================================================================
# JSON-RPC envelopes
# =============================================================================


class JSONRPCBase(BaseModel):
    """Base class for all JSON-RPC messages."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION


class JSONRPCRequest(JSONRPCBase):
    """A request that expects a response."""

    id: RequestId
    method: str
    params: dict[str, Any] | None = None


class JSONRPCNotification(JSONRPCBase):
    """A notification which does not expect a response."""

    method: str
    params: dict[str, Any] | None = None


class ErrorData(BaseModel):
    """Error information in a JSON-RPC error response."""

    model_config = ConfigDict(extra="allow")

    code: int
    message: str
    data: Any | None = None


class JSONRPCResultResponse(JSONRPCBase):
    """A successful (non-error) response to a request."""

    id: RequestId
    result: dict[str, Any]


class JSONRPCErrorResponse(JSONRPCBase):
    """A response to a request that indicates an error occurred."""

    id: RequestId | None = None
    error: ErrorData


JSONRPCResponse = JSONRPCResultResponse | JSONRPCErrorResponse


def _message_kind(value: Any) -> str | None:
    if isinstance(value, dict):
        keys = value.keys()
    elif isinstance(value, JSONRPCBase):
        keys = value.model_dump(exclude_unset=True).keys()
    else:
        return None

    if "method" in keys:
        return "request" if "id" in keys else "notification"
    if "error" in keys:
        return "error"
    if "result" in keys:
        return "result"
    return None


JSONRPCMessage = Annotated[
    Annotated[JSONRPCRequest, Tag("request")]
    | Annotated[JSONRPCNotification, Tag("notification")]
    | Annotated[JSONRPCResultResponse, Tag("result")]
    | Annotated[JSONRPCErrorResponse, Tag("error")],
    Discriminator(_message_kind),
]

jsonrpc_message_adapter: TypeAdapter[JSONRPCMessage] = TypeAdapter(JSONRPCMessage)


# =============================================================================
# MCP domain types
# =============================================================================


class MCPModel(BaseModel):
    """Base class for all MCP domain types. Allows extra fields for forward compatibility."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class Implementation(MCPModel):
    """Describes the name and version of an MCP implementation."""

    name: str
    version: str
    title: str | None = None


class ClientCapabilities(MCPModel):
    """Capabilities that a client may support."""

    experimental: dict[str, Any] | None = None
    roots: dict[str, Any] | None = None
    sampling: dict[str, Any] | None = None
    elicitation: dict[str, Any] | None = None


class ServerCapabilities(MCPModel):
    """Capabilities that a server may support."""

    experimental: dict[str, Any] | None = None
    logging: dict[str, Any] | None = None
    completions: dict[str, Any] | None = None
    prompts: dict[str, Any] | None = None
    resources: dict[str, Any] | None = None
    tools: dict[str, Any] | None = None


class InitializeRequestParams(MCPModel):
    """Parameters for the initialize request."""

    protocol_version: Annotated[str, Field(alias="protocolVersion")]
    capabilities: ClientCapabilities
    client_info: Annotated[Implementation, Field(alias="clientInfo")]


class InitializeResult(MCPModel):
    """Server's response to an initialize request."""

    protocol_version: Annotated[str, Field(alias="protocolVersion")]
    capabilities: ServerCapabilities
    server_info: Annotated[Implementation, Field(alias="serverInfo")]
    instructions: str | None = None


class EmptyResult(MCPModel):
    """A response that indicates success but carries no data."""


# -----------------------------------------------------------------------------
# Content
# -----------------------------------------------------------------------------


class Annotations(MCPModel):
    audience: list[Literal["user", "assistant"]] | None = None
    priority: Annotated[float | None, Field(ge=0.0, le=1.0)] = None


class ResourceContents(MCPModel):
    """The contents of a specific resource or sub-resource."""

    uri: str
    mime_type: Annotated[str | None, Field(alias="mimeType")] = None


class TextResourceContents(ResourceContents):
    """Text contents of a resource."""

    text: str


class BlobResourceContents(ResourceContents):
    """Binary contents of a resource (base64 encoded)."""

    blob: str


class Resource(MCPModel):
    """A known resource that the server is capable of reading."""

    uri: str
    name: str
    title: str | None = None
    description: str | None = None
    mime_type: Annotated[str | None, Field(alias="mimeType")] = None
    annotations: Annotations | None = None
    size: int | None = None


class TextContent(MCPModel):
    """Text provided to or from an LLM."""

    type: Literal["text"] = "text"
    text: str
    annotations: Annotations | None = None


class ImageContent(MCPModel):
    """An image provided to or from an LLM."""

    type: Literal["image"] = "image"
    data: str  # base64 encoded
    mime_type: Annotated[str, Field(alias="mimeType")]
    annotations: Annotations | None = None


class AudioContent(MCPModel):
    """Audio provided to or from an LLM."""

    type: Literal["audio"] = "audio"
    data: str  # base64 encoded
    mime_type: Annotated[str, Field(alias="mimeType")]
    annotations: Annotations | None = None


class ResourceLink(Resource):
    """A resource link that can be included in content."""

    type: Literal["resource_link"] = "resource_link"


class EmbeddedResource(MCPModel):
    """The contents of a resource, embedded into a prompt or tool call result."""

    type: Literal["resource"] = "resource"
    resource: TextResourceContents | BlobResourceContents
    annotations: Annotations | None = None


ContentBlock = Annotated[
    TextContent | ImageContent | AudioContent | ResourceLink | EmbeddedResource,
    Field(discriminator="type"),
]


# -----------------------------------------------------------------------------
# Tools
# -----------------------------------------------------------------------------


class ToolAnnotations(MCPModel):
    """Additional properties describing a Tool to clients."""

    title: str | None = None
    read_only_hint: Annotated[bool | None, Field(alias="readOnlyHint")] = None
    destructive_hint: Annotated[bool | None, Field(alias="destructiveHint")] = None
    idempotent_hint: Annotated[bool | None, Field(alias="idempotentHint")] = None
    open_world_hint: Annotated[bool | None, Field(alias="openWorldHint")] = None


class Tool(MCPModel):
    """Definition of a tool the server provides."""

    name: str
    title: str | None = None
    description: str | None = None
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object"}, alias="inputSchema")
    output_schema: Annotated[dict[str, Any] | None, Field(alias="outputSchema")] = None
    annotations: ToolAnnotations | None = None


class ListToolsResult(MCPModel):
    """Server's response to a tools/list request."""

    tools: list[Tool]
    next_cursor: Annotated[str | None, Field(alias="nextCursor")] = None


class CallToolResult(MCPModel):
    """Server's response to a tools/call request."""

    content: list[ContentBlock] = Field(default_factory=list)
    structured_content: Annotated[dict[str, Any] | None, Field(alias="structuredContent")] = None
    is_error: Annotated[bool, Field(alias="isError")] = False


# -----------------------------------------------------------------------------
# Resources
# -----------------------------------------------------------------------------


class ListResourcesResult(MCPModel):
    """Server's response to a resources/list request."""

    resources: list[Resource]
    next_cursor: Annotated[str | None, Field(alias="nextCursor")] = None


class ReadResourceResult(MCPModel):
    """Server's response to a resources/read request."""

    contents: list[TextResourceContents | BlobResourceContents]


# -----------------------------------------------------------------------------
# Prompts
# -----------------------------------------------------------------------------


class PromptArgument(MCPModel):
    """An argument that a prompt template accepts."""

    name: str
    description: str | None = None
    required: bool | None = None


class Prompt(MCPModel):
    """A prompt or prompt template that the server offers."""

    name: str
    title: str | None = None
    description: str | None = None
    arguments: list[PromptArgument] | None = None


class ListPromptsResult(MCPModel):
    """Server's response to a prompts/list request."""

    prompts: list[Prompt]
    next_cursor: Annotated[str | None, Field(alias="nextCursor")] = None


class PromptMessage(MCPModel):
    """Describes a message returned as part of a prompt."""

    role: Literal["user", "assistant"]
    content: ContentBlock


class GetPromptResult(MCPModel):
    """Server's response to a prompts/get request."""

    description: str | None = None
    messages: list[PromptMessage]


# -----------------------------------------------------------------------------
# Notifications
# -----------------------------------------------------------------------------


class LoggingMessageNotificationParams(MCPModel):
    """Parameters for a notifications/message notification."""

    level: LoggingLevel
    logger: str | None = None
    data: Any = None
