"""Server registry: launch descriptors for stdio MCP servers.

The on-disk format follows the `.vscode/mcp.json` convention:

    {
      // comments are allowed
      "inputs": [{"type": "promptString", "id": "api-key", "password": true}],
      "servers": {
        "git": {
          "type": "stdio",
          "command": "uvx",
          "args": ["mcp-server-git", "--repository", "${workspaceFolder}"],
          "env": {"API_KEY": "${input:api-key}"}
        }
      }
    }

Placeholders are kept verbatim when the file is parsed and only substituted
when a descriptor is resolved, so one registry can be reused from different
working directories.
"""

# stdlib imports
import json
import logging
import os
import re
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any, Literal, cast

# third party imports
from pydantic import BaseModel, ConfigDict, Field, ValidationError

# local imports
from mcplink.shared.exceptions import InvalidConfig, UnknownServer, UnsupportedTransport

logger = logging.getLogger(__name__)

WORKSPACE_FOLDER_VARIABLE = "${workspaceFolder}"

# Searched in order, first existing file wins
DEFAULT_CONFIG_PATHS = (Path(".vscode") / "mcp.json", Path("mcp.json"))

_INPUT_PATTERN = re.compile(r"\$\{input:([^}]+)\}")


class InputDefinition(BaseModel):
    """Definition of an input parameter referenced as ``${input:<id>}``."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["promptString"] = "promptString"
    id: str
    description: str | None = None
    password: bool = False


class LaunchDescriptor(BaseModel):
    """How to start one stdio MCP server. Immutable once parsed."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    name: str
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] | None = None
    env_file: str | None = Field(default=None, alias="envFile")
    cwd: str | None = None

    def resolve(self, workspace_folder: str | Path, inputs: Mapping[str, str] | None = None) -> "LaunchDescriptor":
        """Return a copy with ``${workspaceFolder}`` (and ``${input:*}``) substituted.

        Substitution is textual and applies to the command, every argument,
        environment values, the env file path and the working directory.
        Resolving an already resolved descriptor returns an equal descriptor.
        """
        folder = str(workspace_folder)

        def substitute(value: str) -> str:
            value = value.replace(WORKSPACE_FOLDER_VARIABLE, folder)
            if inputs is not None:
                value = _substitute_inputs(value, inputs)
            return value

        return self.model_copy(
            update={
                "command": substitute(self.command),
                "args": tuple(substitute(arg) for arg in self.args),
                "env": {key: substitute(value) for key, value in self.env.items()} if self.env is not None else None,
                "env_file": substitute(self.env_file) if self.env_file is not None else None,
                "cwd": substitute(self.cwd) if self.cwd is not None else None,
            }
        )

    @property
    def input_ids(self) -> set[str]:
        """IDs of every ``${input:<id>}`` placeholder used by this descriptor."""
        texts = [self.command, *self.args, *(self.env or {}).values()]
        texts.extend(value for value in (self.env_file, self.cwd) if value is not None)
        return {match for text in texts for match in _INPUT_PATTERN.findall(text)}


def _substitute_inputs(value: str, inputs: Mapping[str, str]) -> str:
    def replace_input(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in inputs:
            return inputs[key]
        raise InvalidConfig(f"Missing input value for key: '{key}'")

    return _INPUT_PATTERN.sub(replace_input, value)


def parse_server_entry(name: str, entry: Any) -> LaunchDescriptor:
    """Parse one ``name -> {type, command, args, env, envFile, cwd}`` entry.

    Unknown keys are ignored. A missing ``command`` raises InvalidConfig and a
    ``type`` other than ``"stdio"`` raises UnsupportedTransport. An absent
    ``type`` is inferred as stdio.
    """
    if not isinstance(entry, Mapping):
        raise InvalidConfig(f"Server '{name}' must be an object, got {type(entry).__name__}")
    entry = cast(Mapping[str, Any], entry)

    server_type = entry.get("type", "stdio")
    if server_type != "stdio":
        raise UnsupportedTransport(
            f"Server '{name}' uses transport type '{server_type}'; only 'stdio' is supported"
        )
    if not entry.get("command"):
        raise InvalidConfig(f"Server '{name}' is missing the required 'command' field")

    try:
        return LaunchDescriptor.model_validate({**entry, "name": name})
    except ValidationError as e:
        raise InvalidConfig(f"Invalid configuration for server '{name}': {e}") from e


class ServerRegistry:
    """Named launch descriptors, consulted at connect time."""

    def __init__(
        self,
        servers: Iterable[LaunchDescriptor] = (),
        inputs: Iterable[InputDefinition] = (),
    ) -> None:
        self._servers: dict[str, LaunchDescriptor] = {}
        self._inputs: dict[str, InputDefinition] = {}
        for descriptor in servers:
            self._servers[descriptor.name] = descriptor
        for input_def in inputs:
            self._inputs[input_def.id] = input_def

    def __contains__(self, name: object) -> bool:
        return name in self._servers

    def __iter__(self) -> Iterator[LaunchDescriptor]:
        return iter(self._servers.values())

    def __len__(self) -> int:
        return len(self._servers)

    def names(self) -> list[str]:
        return list(self._servers)

    @property
    def inputs(self) -> list[InputDefinition]:
        return list(self._inputs.values())

    def get(self, name: str) -> LaunchDescriptor:
        try:
            return self._servers[name]
        except KeyError:
            raise UnknownServer(f"Unknown server: '{name}'") from None

    def resolve(
        self,
        name: str,
        workspace_folder: str | Path | None = None,
        inputs: Mapping[str, str] | None = None,
    ) -> LaunchDescriptor:
        """Look up ``name`` and resolve it against ``workspace_folder`` (default: cwd)."""
        descriptor = self.get(name)
        if inputs is not None:
            missing = sorted(descriptor.input_ids - inputs.keys())
            if missing:
                lines = [
                    f"  - {input_id}: {self.get_input_description(input_id) or 'No description'}"
                    for input_id in missing
                ]
                raise InvalidConfig("Missing required input values:\n" + "\n".join(lines))
        return descriptor.resolve(workspace_folder if workspace_folder is not None else os.getcwd(), inputs)

    def get_input_description(self, input_id: str) -> str | None:
        input_def = self._inputs.get(input_id)
        return input_def.description if input_def else None

    def update(self, other: "ServerRegistry") -> None:
        """Merge ``other`` into this registry; entries in ``other`` win."""
        for descriptor in other:
            if descriptor.name in self._servers:
                logger.debug(f"Server '{descriptor.name}' overridden by a later configuration source")
            self._servers[descriptor.name] = descriptor
        self._inputs.update({input_def.id: input_def for input_def in other.inputs})

    @classmethod
    def merge(cls, *registries: "ServerRegistry") -> "ServerRegistry":
        """Combine registries in load order; later sources override earlier ones."""
        merged = cls()
        for registry in registries:
            merged.update(registry)
        return merged

    @classmethod
    def from_mapping(cls, servers: Mapping[str, Any], inputs: Iterable[Any] = ()) -> "ServerRegistry":
        """Build a registry from an already parsed ``name -> entry`` mapping."""
        descriptors = [parse_server_entry(name, entry) for name, entry in servers.items()]
        try:
            input_defs = [InputDefinition.model_validate(input_def) for input_def in inputs]
        except ValidationError as e:
            raise InvalidConfig(f"Invalid input definition: {e}") from e
        return cls(descriptors, input_defs)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ServerRegistry":
        """Build a registry from a whole configuration document.

        Both ``servers`` and ``mcpServers`` are accepted as the root key;
        ``servers`` is preferred when both are present.
        """
        if "servers" in data:
            servers = data["servers"]
        elif "mcpServers" in data:
            servers = data["mcpServers"]
        else:
            raise InvalidConfig("Configuration has no 'servers' section")

        if not isinstance(servers, Mapping):
            raise InvalidConfig("'servers' must be an object mapping names to server entries")
        return cls.from_mapping(cast(Mapping[str, Any], servers), data.get("inputs") or ())

    @classmethod
    def from_file(cls, config_path: Path | str) -> "ServerRegistry":
        """Load a registry from a JSON (or JSONC) configuration file."""
        config_path = Path(os.path.expandvars(config_path)).expanduser()

        with open(config_path, encoding="utf-8") as config_file:
            content = config_file.read()

        try:
            data = json.loads(_strip_json_comments(content))
        except json.JSONDecodeError as e:
            raise InvalidConfig(f"Failed to parse {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise InvalidConfig(f"Failed to parse {config_path}: expected a JSON object")

        logger.debug(f"Loaded MCP configuration from {config_path}")
        return cls.from_dict(cast(dict[str, Any], data))

    @staticmethod
    def default_path(base_dir: str | Path | None = None) -> Path | None:
        """Return the first existing default configuration file, if any.

        Searches ``.vscode/mcp.json`` first and then ``mcp.json``.
        """
        base = Path(base_dir) if base_dir is not None else Path.cwd()
        for candidate in DEFAULT_CONFIG_PATHS:
            path = base / candidate
            if path.is_file():
                return path
        return None

    @classmethod
    def load_default(cls, base_dir: str | Path | None = None) -> "ServerRegistry | None":
        """Load the default configuration file, or return None if there is none."""
        path = cls.default_path(base_dir)
        if path is None:
            return None
        return cls.from_file(path)


def _strip_json_comments(content: str) -> str:
    """Strip // comments from JSON content, being careful not to remove // inside strings."""
    result: list[str] = []

    for line in content.split("\n"):
        in_string = False
        escaped = False
        comment_start = -1

        for i, char in enumerate(line):
            if escaped:
                escaped = False
                continue
            if char == "\\" and in_string:
                escaped = True
                continue
            if char == '"':
                in_string = not in_string
                continue
            if not in_string and char == "/" and i + 1 < len(line) and line[i + 1] == "/":
                comment_start = i
                break

        if comment_start != -1:
            line = line[:comment_start].rstrip()
        result.append(line)

    return "\n".join(result)
