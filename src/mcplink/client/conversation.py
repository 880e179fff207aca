"""Helpers that turn MCP listings and tool outcomes into conversation history.

The chat backend is not part of mcplink; these helpers only produce plain
records that a conversational loop can attach to its next request.
"""

import json
from collections.abc import Sequence
from typing import Any, Literal

from pydantic import BaseModel

from mcplink import types
from mcplink.shared.exceptions import McpError


class ToolResultRecord(BaseModel):
    """The outcome of one tool invocation, ready to be appended to history."""

    tool_use_id: str
    status: Literal["success", "error"]
    content: str
    retryable: bool = False


def tool_spec(tool: types.Tool) -> dict[str, Any]:
    """Describe ``tool`` in the shape chat backends expect for tool definitions."""
    return {
        "name": tool.name,
        "description": tool.description or "",
        "input_schema": tool.input_schema,
    }


def render_content(blocks: Sequence[types.ContentBlock]) -> str:
    """Flatten content blocks into text. Binary payloads are summarized, not inlined."""
    parts: list[str] = []
    for block in blocks:
        if isinstance(block, types.TextContent):
            parts.append(block.text)
        elif isinstance(block, types.ImageContent):
            parts.append(f"[Image Content ({block.mime_type})]")
        elif isinstance(block, types.AudioContent):
            parts.append(f"[Audio Content ({block.mime_type})]")
        elif isinstance(block, types.ResourceLink):
            parts.append(f"[Resource Link: {block.uri}]")
        elif isinstance(block.resource, types.TextResourceContents):
            parts.append(block.resource.text)
        else:
            parts.append(f"[Blob Content ({block.resource.mime_type or 'application/octet-stream'})]")
    return "\n".join(parts)


def render_tool_result(result: types.CallToolResult) -> str:
    text = render_content(result.content)
    if not text and result.structured_content is not None:
        text = json.dumps(result.structured_content, ensure_ascii=False)
    return text


def record_from_result(tool_use_id: str, result: types.CallToolResult) -> ToolResultRecord:
    return ToolResultRecord(
        tool_use_id=tool_use_id,
        status="error" if result.is_error else "success",
        content=render_tool_result(result),
    )


def record_from_error(tool_use_id: str, error: McpError) -> ToolResultRecord:
    """Render a failed call so the model sees it instead of the loop crashing.

    ``retryable`` is only set for timeouts and tool execution failures; not
    found and invalid argument errors should not be retried unchanged.
    """
    return ToolResultRecord(
        tool_use_id=tool_use_id,
        status="error",
        content=f"{type(error).__name__}: {error}",
        retryable=error.retryable,
    )
