"""Stdio transport: one child process speaking newline-delimited JSON-RPC.

The transport exclusively owns the process and its pipes. Each outgoing
message is serialized to a single line on the child's stdin; each line on the
child's stdout is decoded into one JSON-RPC message. The child's stderr is
not part of the protocol and is passed through to ``errlog``.
"""

import logging
import os
import signal
import subprocess
import sys
from collections import deque
from collections.abc import Mapping
from pathlib import Path
from typing import TextIO

import anyio
from anyio.abc import Process
from anyio.streams.text import TextReceiveStream
from dotenv import dotenv_values
from pydantic import ValidationError
from typing_extensions import Self

from mcplink.client.config import LaunchDescriptor
from mcplink.shared.exceptions import DecodeError, ReadError, SpawnError, WriteError
from mcplink.types import JSONRPCMessage, jsonrpc_message_adapter

logger = logging.getLogger(__name__)

# Timeout for process termination before falling back to force kill
PROCESS_TERMINATION_TIMEOUT = 2.0


def load_env_file(descriptor: LaunchDescriptor) -> dict[str, str]:
    """Read the descriptor's ``envFile``.

    Relative paths are taken relative to the descriptor's working directory,
    or to the current directory when it has none. Keys declared without a
    value are skipped.
    """
    if descriptor.env_file is None:
        return {}

    path = Path(descriptor.env_file).expanduser()
    if not path.is_absolute() and descriptor.cwd is not None:
        path = Path(descriptor.cwd) / path
    if not path.is_file():
        raise SpawnError(f"Environment file for server '{descriptor.name}' not found: {path}")

    return {key: value for key, value in dotenv_values(path).items() if value is not None}


def build_environment(descriptor: LaunchDescriptor, base_env: Mapping[str, str] | None = None) -> dict[str, str]:
    """Compose the child environment.

    The descriptor's ``env`` wins over the env file, which wins over the
    inherited process environment.
    """
    env = dict(os.environ if base_env is None else base_env)
    env.update(load_env_file(descriptor))
    if descriptor.env:
        env.update(descriptor.env)
    return env


class StdioTransport:
    """Line-delimited JSON-RPC over a child process's stdin/stdout.

    Use :meth:`spawn` to create one. ``receive`` is meant to be called by a
    single reader task; ``send`` may be called from any task and writes are
    serialized in call order.
    """

    def __init__(
        self,
        process: Process,
        descriptor: LaunchDescriptor,
        encoding: str = "utf-8",
        termination_timeout: float = PROCESS_TERMINATION_TIMEOUT,
    ) -> None:
        assert process.stdin, "Opened process is missing stdin"
        assert process.stdout, "Opened process is missing stdout"

        self._process = process
        self._descriptor = descriptor
        self._encoding = encoding
        self._termination_timeout = termination_timeout
        self._stdout = TextReceiveStream(process.stdout, encoding=encoding, errors="replace")
        self._buffer = ""
        self._lines: deque[str] = deque()
        self._eof = False
        self._closed = False
        self._write_lock = anyio.Lock()

    @classmethod
    async def spawn(
        cls,
        descriptor: LaunchDescriptor,
        errlog: TextIO | None = None,
        encoding: str = "utf-8",
        termination_timeout: float = PROCESS_TERMINATION_TIMEOUT,
    ) -> Self:
        """Start the server process described by ``descriptor``.

        Raises:
            SpawnError: the env file is missing or the process could not start
        """
        env = build_environment(descriptor)
        command = [descriptor.command, *descriptor.args]

        try:
            process = await anyio.open_process(
                command,
                env=env,
                stderr=_stderr_target(errlog if errlog is not None else sys.stderr),
                cwd=descriptor.cwd,
                # A new session lets close() signal the whole process group
                start_new_session=sys.platform != "win32",
            )
        except OSError as e:
            raise SpawnError(f"Failed to start server '{descriptor.name}' ({descriptor.command}): {e}") from e

        logger.info(f"Started server '{descriptor.name}' (pid {process.pid}): {' '.join(command)}")
        return cls(process, descriptor, encoding=encoding, termination_timeout=termination_timeout)

    @property
    def descriptor(self) -> LaunchDescriptor:
        return self._descriptor

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: JSONRPCMessage) -> None:
        """Write one message as a single line.

        Raises:
            WriteError: the transport is closed or the pipe is broken
        """
        if self._closed:
            raise WriteError("Transport is closed")

        line = message.model_dump_json(by_alias=True, exclude_none=True)
        logger.debug(f"-> {line}")

        async with self._write_lock:
            try:
                await self._process.stdin.send((line + "\n").encode(self._encoding))  # type: ignore[union-attr]
            except (anyio.ClosedResourceError, anyio.BrokenResourceError, OSError) as e:
                raise WriteError(f"Failed to write to server '{self._descriptor.name}': {e!r}") from e

    async def receive(self) -> JSONRPCMessage:
        """Wait for the next complete line and decode it.

        Raises:
            DecodeError: the line is not a JSON-RPC message; the stream stays usable
            ReadError: reading from the pipe failed
            anyio.EndOfStream: the process closed its stdout
        """
        while not self._lines:
            if self._eof:
                raise anyio.EndOfStream

            try:
                chunk = await self._stdout.receive()
            except (anyio.EndOfStream, anyio.ClosedResourceError):
                self._eof = True
                if self._buffer.strip():
                    self._lines.append(self._buffer)
                self._buffer = ""
                continue
            except (anyio.BrokenResourceError, OSError) as e:
                raise ReadError(f"Failed to read from server '{self._descriptor.name}': {e!r}") from e

            lines = (self._buffer + chunk).split("\n")
            self._buffer = lines.pop()
            self._lines.extend(line for line in lines if line.strip())

        line = self._lines.popleft()
        logger.debug(f"<- {line}")
        try:
            return jsonrpc_message_adapter.validate_json(line)
        except ValidationError as e:
            raise DecodeError(f"Malformed message from server '{self._descriptor.name}': {line[:200]!r}", line) from e

    async def close(self) -> None:
        """Stop the process and release its pipes. Safe to call more than once.

        Follows the stdio shutdown sequence: close the server's stdin, wait for
        it to exit, then SIGTERM and finally SIGKILL the process group.
        """
        if self._closed:
            return
        self._closed = True

        with anyio.CancelScope(shield=True):
            process = self._process
            try:
                await process.stdin.aclose()  # type: ignore[union-attr]
            except (anyio.BrokenResourceError, OSError):
                # stdin might already be closed, which is fine
                pass

            try:
                with anyio.fail_after(self._termination_timeout):
                    await process.wait()
            except TimeoutError:
                await _terminate_process_tree(process, self._termination_timeout)

            await self._stdout.aclose()
            await process.aclose()

        logger.info(f"Stopped server '{self._descriptor.name}' (pid {process.pid}, exit code {process.returncode})")


def _stderr_target(errlog: TextIO) -> TextIO | int:
    """Return ``errlog`` if a child process can inherit it.

    In-memory streams (captured stderr, notebooks) have no file descriptor;
    the child's stderr is discarded in that case.
    """
    try:
        errlog.fileno()
    except (AttributeError, OSError, ValueError):
        logger.debug("errlog has no file descriptor; discarding server stderr")
        return subprocess.DEVNULL
    return errlog


async def _terminate_process_tree(process: Process, timeout_seconds: float) -> None:
    """SIGTERM the process group, then SIGKILL it if it outlives ``timeout_seconds``.

    Falls back to terminating just the process where process groups are not
    available.
    """
    if sys.platform == "win32":  # pragma: no cover
        process.terminate()
        with anyio.move_on_after(timeout_seconds):
            await process.wait()
            return
        process.kill()
        return

    try:
        pgid = os.getpgid(process.pid)
        os.killpg(pgid, signal.SIGTERM)
    except ProcessLookupError:
        return
    except (PermissionError, OSError) as e:
        logger.warning(f"Process group termination failed for PID {process.pid}: {e}, falling back to terminate")
        process.terminate()
        pgid = None

    with anyio.move_on_after(timeout_seconds):
        await process.wait()
        return

    logger.warning(f"Process {process.pid} ignored SIGTERM, killing it")
    try:
        if pgid is not None:
            os.killpg(pgid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass
