"""mcplink command line interface.

    mcplink servers                 list configured servers
    mcplink tools <server>          connect to one server and list its tools
    mcplink shell                   interactive session using chat directives
"""

import json
import logging
import sys
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

import anyio
import anyio.to_thread
import click

from mcplink import types
from mcplink.client.config import DEFAULT_CONFIG_PATHS, ServerRegistry
from mcplink.client.conversation import render_tool_result
from mcplink.client.manager import ConnectionSummary, SessionManager
from mcplink.shared.exceptions import McpError

logger = logging.getLogger(__name__)

DIRECTIVES = (
    "mcp",
    "disconnect",
    "status",
    "tools",
    "call",
    "resources",
    "read",
    "prompts",
    "ping",
    "help",
    "quit",
    "exit",
)

# Accepted without the leading slash; anything else unprefixed is chat text
BARE_DIRECTIVES = ("mcp", "quit", "exit")

HELP_TEXT = """\
Commands:
  mcp                     list configured servers
  mcp <server>            connect to a server (replaces the current connection)
  /disconnect             close the current connection
  /status                 show the current connection
  /tools                  list the tools of the connected server
  /call <tool> [json]     call a tool, arguments given as a JSON object
  /resources              list resources
  /read <uri>             read a resource
  /prompts                list prompts
  /ping                   check that the server responds
  /help                   show this help
  quit                    leave the shell"""


@dataclass(frozen=True)
class Directive:
    """A shell command entered in place of a chat message."""

    command: str
    argument: str = ""


def parse_directive(line: str) -> Directive | None:
    """Parse ``line`` as a directive. Returns None for ordinary chat text.

    Only ``mcp``, ``quit`` and ``exit`` work bare; the other commands need a
    leading ``/`` so chat such as "read me the diff" is left alone.
    """
    text = line.strip()
    prefixed = text.startswith("/")
    command, _, argument = text.removeprefix("/").partition(" ")
    command = command.lower()
    if command not in DIRECTIVES:
        return None
    if not prefixed and command not in BARE_DIRECTIVES:
        return None
    return Directive(command, argument.strip())


def parse_call_argument(argument: str) -> tuple[str, dict[str, Any] | None]:
    """Split ``"<tool> {json}"`` into the tool name and its arguments."""
    name, _, raw_arguments = argument.strip().partition(" ")
    if not name:
        raise click.UsageError("call <tool> [json arguments]")
    raw_arguments = raw_arguments.strip()
    if not raw_arguments:
        return name, None
    try:
        arguments = json.loads(raw_arguments)
    except json.JSONDecodeError as e:
        raise click.UsageError(f"Tool arguments are not valid JSON: {e}") from e
    if not isinstance(arguments, dict):
        raise click.UsageError("Tool arguments must be a JSON object")
    return name, arguments


def echo_servers(registry: ServerRegistry) -> None:
    if not len(registry):
        click.echo("No MCP servers configured.")
        return
    click.echo("Configured MCP servers:")
    for descriptor in registry:
        click.echo(f"\n  {descriptor.name}")
        click.echo("    Type: stdio")
        click.echo(f"    Command: {descriptor.command}")
        if descriptor.args:
            click.echo(f"    Args: {' '.join(descriptor.args)}")
        if descriptor.env:
            click.echo(f"    Env: {len(descriptor.env)} variables")
        if descriptor.env_file:
            click.echo(f"    Env file: {descriptor.env_file}")


def echo_summary(summary: ConnectionSummary) -> None:
    info = summary.server_info
    features = [name for name, enabled in summary.capabilities.model_dump().items() if enabled]
    click.echo(f"Connected to '{summary.server_name}': {info.name} {info.version}")
    click.echo(f"  Protocol: {summary.protocol_version}")
    click.echo(f"  Capabilities: {', '.join(features) or 'none'}")


def echo_tools(tools: list[types.Tool]) -> None:
    if not tools:
        click.echo("No tools available.")
        return
    click.echo(f"Available tools ({len(tools)}):")
    for tool in tools:
        click.echo(f"  {tool.name}")
        if tool.description:
            click.echo(f"    {tool.description}")


def _render_resource_contents(result: types.ReadResourceResult) -> str:
    parts = []
    for contents in result.contents:
        if isinstance(contents, types.TextResourceContents):
            parts.append(contents.text)
        else:
            mime_type = contents.mime_type or "application/octet-stream"
            parts.append(f"[Blob Content ({mime_type}, {len(contents.blob)} bytes base64)]")
    return "\n".join(parts)


async def execute_directive(
    manager: SessionManager, directive: Directive, inputs: dict[str, str] | None = None
) -> bool:
    """Run one directive against ``manager``. Returns False when the shell should exit.

    ``inputs`` caches the ``${input:*}`` values entered so far; the ones a
    server needs are asked for the first time it is connected.
    Protocol failures propagate as McpError; the caller reports them.
    """
    command, argument = directive.command, directive.argument

    if command in ("quit", "exit"):
        return False
    if command == "help":
        click.echo(HELP_TEXT)
    elif command == "mcp":
        if not argument:
            echo_servers(manager.registry)
        else:
            if inputs is not None:
                missing = manager.registry.get(argument).input_ids - set(inputs)
                if missing:
                    inputs.update(await anyio.to_thread.run_sync(_prompt_inputs, manager.registry, missing) or {})
            previous = manager.current_server()
            if previous is not None and previous != argument:
                click.echo(f"Disconnecting from '{previous}'...")
            echo_summary(await manager.connect(argument, inputs))
    elif command == "disconnect":
        current = manager.current_server()
        if current is None:
            click.echo("Not connected.")
        else:
            await manager.disconnect()
            click.echo(f"Disconnected from '{current}'.")
    elif command == "status":
        summary = manager.connection
        if summary is None:
            click.echo("Not connected.")
        else:
            echo_summary(summary)
    elif command == "tools":
        echo_tools(await manager.list_tools())
    elif command == "call":
        name, arguments = parse_call_argument(argument)
        result = await manager.call_tool(name, arguments)
        click.echo(render_tool_result(result) or "(no output)")
    elif command == "resources":
        resources = await manager.list_resources()
        if not resources:
            click.echo("No resources available.")
        for resource in resources:
            click.echo(f"  {resource.uri}  {resource.name}")
    elif command == "read":
        if not argument:
            raise click.UsageError("read <uri>")
        click.echo(_render_resource_contents(await manager.read_resource(argument)))
    elif command == "prompts":
        prompts = await manager.list_prompts()
        if not prompts:
            click.echo("No prompts available.")
        for prompt in prompts:
            click.echo(f"  {prompt.name}" + (f": {prompt.description}" if prompt.description else ""))
    elif command == "ping":
        await manager.send_ping()
        click.echo("pong")
    return True


async def run_shell(manager: SessionManager) -> None:
    click.echo("mcplink shell. Type '/help' for commands and 'quit' to leave.")
    inputs: dict[str, str] = {}
    while True:
        current = manager.current_server()
        click.echo(f"[{current}]> " if current else "> ", nl=False)
        line = await anyio.to_thread.run_sync(sys.stdin.readline)
        if not line:
            click.echo()
            break

        directive = parse_directive(line)
        if directive is None:
            if line.strip():
                click.echo("No chat backend is attached; type '/help' to see the available commands.")
            continue

        try:
            if not await execute_directive(manager, directive, inputs):
                break
        except McpError as e:
            click.echo(f"Error: {e}", err=True)
        except click.UsageError as e:
            click.echo(f"Usage: {e.message}", err=True)

    if manager.current_server() is not None:
        click.echo(f"Disconnecting from '{manager.current_server()}'...")


def _load_registry(config_path: Path | None) -> ServerRegistry | None:
    try:
        if config_path is not None:
            return ServerRegistry.from_file(config_path)
        return ServerRegistry.load_default()
    except McpError as e:
        raise click.ClickException(str(e)) from e


def _require_registry(config_path: Path | None) -> ServerRegistry:
    registry = _load_registry(config_path)
    if registry is None:
        locations = " or ".join(str(path) for path in DEFAULT_CONFIG_PATHS)
        raise click.ClickException(f"No MCP configuration found. Create {locations}, or pass --config.")
    return registry


def _prompt_inputs(registry: ServerRegistry, input_ids: set[str] | None = None) -> dict[str, str] | None:
    """Ask for the ``${input:*}`` values the configuration declares."""
    if not registry.inputs:
        return None
    definitions = [d for d in registry.inputs if input_ids is None or d.id in input_ids]
    return {
        d.id: click.prompt(d.description or d.id, hide_input=d.password, err=True)
        for d in definitions
    }


def _manager_options(workspace: Path | None, timeout: float | None) -> dict[str, Any]:
    return {
        "workspace_folder": workspace,
        "request_timeout": timedelta(seconds=timeout) if timeout else None,
    }


config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Configuration file (default: .vscode/mcp.json, then mcp.json)",
)
workspace_option = click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Value substituted for ${workspaceFolder} (default: current directory)",
)
timeout_option = click.option(
    "--timeout", type=float, default=30.0, show_default=True, help="Per-request timeout in seconds (0 disables)"
)


@click.group()
@click.option("-v", "--verbose", count=True, help="Log more (-v info, -vv debug)")
def cli(verbose: int) -> None:
    """Connect to Model Context Protocol servers over stdio."""
    level = logging.WARNING if verbose == 0 else logging.INFO if verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")


@cli.command("servers")
@config_option
def servers_command(config_path: Path | None) -> None:
    """List configured servers."""
    registry = _load_registry(config_path)
    if registry is None:
        click.echo("No MCP configuration found. Place an mcp.json file at one of:")
        for path in DEFAULT_CONFIG_PATHS:
            click.echo(f"  {path}")
        return
    echo_servers(registry)
    if len(registry):
        click.echo("\nTo list a server's tools: mcplink tools <server>")


@cli.command("tools")
@click.argument("server_name")
@config_option
@workspace_option
@timeout_option
def tools_command(server_name: str, config_path: Path | None, workspace: Path | None, timeout: float) -> None:
    """Connect to SERVER_NAME and list its tools."""
    registry = _require_registry(config_path)
    try:
        inputs = _prompt_inputs(registry, registry.get(server_name).input_ids)
    except McpError as e:
        raise click.ClickException(str(e)) from e

    async def show_tools() -> None:
        async with SessionManager(registry, inputs=inputs, **_manager_options(workspace, timeout)) as manager:
            echo_summary(await manager.connect(server_name))
            echo_tools(await manager.list_tools())

    try:
        anyio.run(show_tools)
    except McpError as e:
        raise click.ClickException(str(e)) from e


@cli.command("shell")
@config_option
@workspace_option
@timeout_option
def shell_command(config_path: Path | None, workspace: Path | None, timeout: float) -> None:
    """Start an interactive shell that accepts chat directives."""
    registry = _load_registry(config_path) or ServerRegistry()

    async def shell() -> None:
        async with SessionManager(registry, **_manager_options(workspace, timeout)) as manager:
            await run_shell(manager)

    anyio.run(shell)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
