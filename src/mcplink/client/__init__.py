"""MCP client: server registry, stdio transport, protocol session and session manager."""

from mcplink.client.config import LaunchDescriptor, ServerRegistry
from mcplink.client.conversation import ToolResultRecord
from mcplink.client.manager import ConnectionSummary, SessionManager
from mcplink.client.session import ClientSession, ConnectionState, ServerCapabilityFlags, Transport
from mcplink.client.stdio import StdioTransport

__all__ = [
    "ClientSession",
    "ConnectionState",
    "ConnectionSummary",
    "LaunchDescriptor",
    "ServerCapabilityFlags",
    "ServerRegistry",
    "SessionManager",
    "StdioTransport",
    "ToolResultRecord",
    "Transport",
]
