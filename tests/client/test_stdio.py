import json
import os
import shutil
import sys
import textwrap
import time
from pathlib import Path

import anyio
import pytest

from mcplink import types
from mcplink.client.config import LaunchDescriptor
from mcplink.client.stdio import StdioTransport, build_environment, load_env_file
from mcplink.shared.exceptions import DecodeError, SpawnError, WriteError

tee: str = shutil.which("tee")  # type: ignore

pytestmark = pytest.mark.anyio


def python_server(script: str, **kwargs) -> LaunchDescriptor:
    """A descriptor running ``script`` with the current interpreter."""
    return LaunchDescriptor(name="script", command=sys.executable, args=("-c", textwrap.dedent(script)), **kwargs)


@pytest.mark.skipif(tee is None, reason="could not find tee command")
async def test_stdio_roundtrip_through_tee():
    transport = await StdioTransport.spawn(LaunchDescriptor(name="tee", command=tee))
    try:
        messages = [
            types.JSONRPCRequest(id=1, method="ping"),
            types.JSONRPCResultResponse(id=2, result={}),
            types.JSONRPCNotification(method="notifications/initialized"),
        ]
        for message in messages:
            await transport.send(message)

        with anyio.fail_after(5):
            received = [await transport.receive() for _ in messages]
    finally:
        await transport.close()

    assert received == messages
    assert isinstance(received[0], types.JSONRPCRequest)
    assert isinstance(received[1], types.JSONRPCResultResponse)
    assert isinstance(received[2], types.JSONRPCNotification)
    assert transport.returncode is not None


async def test_spawn_missing_command_raises_spawn_error():
    descriptor = LaunchDescriptor(name="missing", command="/path/to/nonexistent/mcp-server")
    with pytest.raises(SpawnError, match="missing"):
        await StdioTransport.spawn(descriptor)


async def test_malformed_line_is_reported_and_skipped():
    transport = await StdioTransport.spawn(
        python_server(
            """
            import sys
            sys.stdout.write("this is not json\\n")
            sys.stdout.write('{"jsonrpc": "2.0", "id": 7, "result": {"ok": true}}\\n')
            sys.stdout.flush()
            sys.stdin.read()
            """
        )
    )
    try:
        with anyio.fail_after(5):
            with pytest.raises(DecodeError) as exc_info:
                await transport.receive()
            message = await transport.receive()
    finally:
        await transport.close()

    assert exc_info.value.line == "this is not json"
    assert exc_info.value.code == types.PARSE_ERROR
    assert isinstance(message, types.JSONRPCResultResponse)
    assert message.id == 7
    assert message.result == {"ok": True}


async def test_lines_split_across_writes_and_unterminated_last_line():
    transport = await StdioTransport.spawn(
        python_server(
            """
            import sys, time
            sys.stdout.write('{"jsonrpc": "2.0", "method": "a"}\\n{"jsonrpc": "2.0", "me')
            sys.stdout.flush()
            time.sleep(0.2)
            sys.stdout.write('thod": "b"}\\n\\n{"jsonrpc": "2.0", "method": "c"}')
            sys.stdout.flush()
            """
        )
    )
    try:
        with anyio.fail_after(5):
            methods = []
            for _ in range(3):
                message = await transport.receive()
                assert isinstance(message, types.JSONRPCNotification)
                methods.append(message.method)
            with pytest.raises(anyio.EndOfStream):
                await transport.receive()
    finally:
        await transport.close()

    assert methods == ["a", "b", "c"]


async def test_send_after_close_raises_write_error():
    transport = await StdioTransport.spawn(python_server("import sys; sys.stdin.read()"))
    await transport.close()
    await transport.close()

    assert transport.closed
    with pytest.raises(WriteError):
        await transport.send(types.JSONRPCNotification(method="notifications/initialized"))


async def test_send_to_exited_process_raises_write_error():
    transport = await StdioTransport.spawn(python_server("pass"))
    try:
        with anyio.fail_after(5):
            with pytest.raises(anyio.EndOfStream):
                await transport.receive()
            with pytest.raises(WriteError):
                # The pipe may accept a few writes before reporting the broken pipe
                for _ in range(100):
                    await transport.send(types.JSONRPCRequest(id=1, method="ping", params={"pad": "x" * 4096}))
                    await anyio.sleep(0.01)
    finally:
        await transport.close()


async def test_environment_env_file_and_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MCPLINK_INHERITED", "inherited")
    (tmp_path / "server.env").write_text("MCPLINK_FROM_FILE=file\nMCPLINK_OVERRIDE=file\n")

    descriptor = python_server(
        """
        import json, os
        keys = ["MCPLINK_INHERITED", "MCPLINK_FROM_FILE", "MCPLINK_OVERRIDE"]
        params = {key: os.environ.get(key) for key in keys}
        params["cwd"] = os.getcwd()
        print(json.dumps({"jsonrpc": "2.0", "method": "report", "params": params}), flush=True)
        """,
        env={"MCPLINK_OVERRIDE": "descriptor"},
        env_file="server.env",
        cwd=str(tmp_path),
    )

    transport = await StdioTransport.spawn(descriptor)
    try:
        with anyio.fail_after(5):
            message = await transport.receive()
    finally:
        await transport.close()

    assert isinstance(message, types.JSONRPCNotification)
    assert message.params is not None
    assert message.params["MCPLINK_INHERITED"] == "inherited"
    assert message.params["MCPLINK_FROM_FILE"] == "file"
    assert message.params["MCPLINK_OVERRIDE"] == "descriptor"
    assert os.path.realpath(message.params["cwd"]) == os.path.realpath(tmp_path)


async def test_missing_env_file_raises_spawn_error(tmp_path: Path):
    descriptor = python_server("pass", env_file=str(tmp_path / "missing.env"))
    with pytest.raises(SpawnError, match="missing.env"):
        await StdioTransport.spawn(descriptor)


def test_build_environment_precedence(tmp_path: Path):
    env_file = tmp_path / ".env"
    env_file.write_text("# comment\nA=from-file\nB=from-file\nEMPTY\n")
    descriptor = LaunchDescriptor(name="s", command="x", env={"B": "from-descriptor"}, env_file=str(env_file))

    env = build_environment(descriptor, base_env={"A": "base", "C": "base"})

    assert env == {"A": "from-file", "B": "from-descriptor", "C": "base"}


def test_load_env_file_without_env_file_is_empty():
    assert load_env_file(LaunchDescriptor(name="s", command="x")) == {}


@pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
async def test_close_terminates_server_that_ignores_stdin_close():
    transport = await StdioTransport.spawn(
        python_server("import time; time.sleep(60)"),
        termination_timeout=0.5,
    )

    start = time.monotonic()
    await transport.close()
    elapsed = time.monotonic() - start

    assert transport.returncode is not None
    assert elapsed < 5


@pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
async def test_close_kills_server_that_ignores_sigterm():
    transport = await StdioTransport.spawn(
        python_server(
            """
            import signal, sys, time
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            print('{"jsonrpc": "2.0", "method": "ready"}', flush=True)
            time.sleep(60)
            """
        ),
        termination_timeout=0.5,
    )
    with anyio.fail_after(5):
        await transport.receive()

    start = time.monotonic()
    await transport.close()
    elapsed = time.monotonic() - start

    assert transport.returncode is not None
    assert transport.returncode != 0
    assert elapsed < 5


async def test_messages_are_single_lines():
    transport = await StdioTransport.spawn(
        python_server(
            """
            import sys
            line = sys.stdin.readline()
            sys.stdout.write(line)
            sys.stdout.flush()
            """
        )
    )
    try:
        text = "multi\nline\ttext"
        await transport.send(types.JSONRPCRequest(id=1, method="tools/call", params={"name": "echo", "text": text}))
        with anyio.fail_after(5):
            message = await transport.receive()
    finally:
        await transport.close()

    assert isinstance(message, types.JSONRPCRequest)
    assert message.params == {"name": "echo", "text": text}
    assert json.loads(message.model_dump_json())["params"]["text"] == text
