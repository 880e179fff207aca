import sys
from pathlib import Path

import pytest

MOCK_SERVER = Path(__file__).parent / "fixtures" / "mock_server.py"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def mock_server_entry():
    """Build an mcp.json server entry that launches the scripted mock server."""

    def make_entry(mode: str = "", **extra):
        entry = {"type": "stdio", "command": sys.executable, "args": [str(MOCK_SERVER)], **extra}
        if mode:
            entry["env"] = {**entry.get("env", {}), "MOCK_SERVER_MODE": mode}
        return entry

    return make_entry
