"""A Model Context Protocol client for stdio servers.

## Example

```python
import anyio
from mcplink import ServerRegistry, SessionManager

async def main():
    registry = ServerRegistry.load_default()
    async with SessionManager(registry) as manager:
        await manager.connect("git")
        for tool in await manager.list_tools():
            print(tool.name)

anyio.run(main)
```
"""

from mcplink.client.config import LaunchDescriptor, ServerRegistry
from mcplink.client.conversation import ToolResultRecord
from mcplink.client.manager import ConnectionSummary, SessionManager
from mcplink.client.session import ClientSession, ConnectionState, ServerCapabilityFlags
from mcplink.client.stdio import StdioTransport
from mcplink.shared.exceptions import (
    ConfigError,
    DecodeError,
    HandshakeError,
    InvalidArguments,
    InvalidConfig,
    McpError,
    NoActiveConnection,
    NotConnected,
    ProtocolError,
    ReadError,
    RequestCancelled,
    RequestTimeout,
    ResourceNotFound,
    SpawnError,
    ToolExecutionError,
    ToolNotFound,
    TransportError,
    UnknownServer,
    UnsupportedTransport,
    WriteError,
)

__all__ = [
    "ClientSession",
    "ConfigError",
    "ConnectionState",
    "ConnectionSummary",
    "DecodeError",
    "HandshakeError",
    "InvalidArguments",
    "InvalidConfig",
    "LaunchDescriptor",
    "McpError",
    "NoActiveConnection",
    "NotConnected",
    "ProtocolError",
    "ReadError",
    "RequestCancelled",
    "RequestTimeout",
    "ResourceNotFound",
    "ServerCapabilityFlags",
    "ServerRegistry",
    "SessionManager",
    "SpawnError",
    "StdioTransport",
    "ToolExecutionError",
    "ToolNotFound",
    "ToolResultRecord",
    "TransportError",
    "UnknownServer",
    "UnsupportedTransport",
    "WriteError",
]
