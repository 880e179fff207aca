# stdlib imports
import json
from pathlib import Path

# third party imports
import pytest
from pydantic import ValidationError

# local imports
from mcplink.client.config import LaunchDescriptor, ServerRegistry, parse_server_entry
from mcplink.shared.exceptions import ConfigError, InvalidConfig, UnknownServer, UnsupportedTransport

FIXTURE = Path(__file__).parent.parent / "fixtures" / "mcp.json"


@pytest.fixture
def registry() -> ServerRegistry:
    return ServerRegistry.from_file(FIXTURE)


def test_load_jsonc_file(registry: ServerRegistry):
    assert registry.names() == ["git", "weather"]
    assert len(registry) == 2
    assert "git" in registry
    assert "missing" not in registry

    git = registry.get("git")
    assert git.command == "uvx"
    assert git.args == ("mcp-server-git", "--repository", "${workspaceFolder}")
    assert git.env is None
    assert git.cwd is None


def test_comment_markers_inside_strings_are_kept(registry: ServerRegistry):
    weather = registry.get("weather")
    assert weather.env is not None
    assert weather.env["WEATHER_URL"] == "https://example.com//api"
    assert weather.env_file == "${workspaceFolder}/.env"


def test_inputs_are_parsed(registry: ServerRegistry):
    assert [input_def.id for input_def in registry.inputs] == ["api-key"]
    assert registry.inputs[0].password
    assert registry.get_input_description("api-key") == "API key for the weather service"
    assert registry.get_input_description("unknown") is None
    assert registry.get("weather").input_ids == {"api-key"}
    assert registry.get("git").input_ids == set()


def test_resolve_substitutes_workspace_folder(registry: ServerRegistry):
    resolved = registry.resolve("weather", "/work", inputs={"api-key": "secret"})

    assert resolved.command == "node"
    assert resolved.args == ("/work/weather/index.js",)
    assert resolved.env == {"WEATHER_API_KEY": "secret", "WEATHER_URL": "https://example.com//api"}
    assert resolved.env_file == "/work/.env"
    assert resolved.cwd == "/work/weather"
    # The registry entry itself is not modified
    assert registry.get("weather").args == ("${workspaceFolder}/weather/index.js",)


def test_resolve_is_idempotent(registry: ServerRegistry):
    once = registry.resolve("git", "/work")
    assert once.resolve("/elsewhere") == once


def test_resolve_defaults_to_current_directory(
    registry: ServerRegistry, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
):
    monkeypatch.chdir(tmp_path)
    resolved = registry.resolve("git")
    assert resolved.args[-1] == str(tmp_path)


def test_resolve_reports_missing_inputs(registry: ServerRegistry):
    with pytest.raises(InvalidConfig, match="api-key: API key for the weather service"):
        registry.resolve("weather", "/work", inputs={})


def test_resolve_without_inputs_keeps_placeholders(registry: ServerRegistry):
    resolved = registry.resolve("weather", "/work")
    assert resolved.env is not None
    assert resolved.env["WEATHER_API_KEY"] == "${input:api-key}"


def test_unknown_server(registry: ServerRegistry):
    with pytest.raises(UnknownServer, match="nope"):
        registry.get("nope")
    with pytest.raises(UnknownServer):
        registry.resolve("nope", "/work")


def test_missing_type_is_stdio():
    descriptor = parse_server_entry("svc", {"command": "python", "args": ["-m", "svc"]})
    assert descriptor == LaunchDescriptor(name="svc", command="python", args=("-m", "svc"))


def test_unknown_fields_are_ignored():
    descriptor = parse_server_entry("svc", {"type": "stdio", "command": "svc", "disabled": False, "alwaysAllow": []})
    assert descriptor.command == "svc"


@pytest.mark.parametrize("server_type", ["sse", "http", "streamable_http"])
def test_non_stdio_transport_rejected(server_type: str):
    with pytest.raises(UnsupportedTransport, match=server_type):
        parse_server_entry("remote", {"type": server_type, "url": "https://example.com/mcp"})


@pytest.mark.parametrize(
    "entry",
    [
        {"type": "stdio"},
        {"command": ""},
        "python server.py",
        {"command": "svc", "args": "not-a-list"},
        {"command": "svc", "env": {"KEY": 1}},
    ],
)
def test_invalid_entries_rejected(entry):
    with pytest.raises(InvalidConfig):
        parse_server_entry("bad", entry)


def test_config_errors_share_a_base_class():
    assert issubclass(InvalidConfig, ConfigError)
    assert issubclass(UnsupportedTransport, ConfigError)


def test_from_dict_accepts_mcp_servers_key():
    registry = ServerRegistry.from_dict({"mcpServers": {"time": {"command": "uvx", "args": ["mcp-server-time"]}}})
    assert registry.names() == ["time"]


def test_from_dict_requires_servers():
    with pytest.raises(InvalidConfig, match="servers"):
        ServerRegistry.from_dict({"inputs": []})
    with pytest.raises(InvalidConfig):
        ServerRegistry.from_dict({"servers": ["not", "a", "mapping"]})


def test_from_file_rejects_invalid_json(tmp_path: Path):
    path = tmp_path / "mcp.json"
    path.write_text('{"servers": {')
    with pytest.raises(InvalidConfig, match="Failed to parse"):
        ServerRegistry.from_file(path)


def test_from_file_expands_environment_variables(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    (tmp_path / "mcp.json").write_text(json.dumps({"servers": {"a": {"command": "a"}}}))
    monkeypatch.setenv("MCPLINK_CONFIG_DIR", str(tmp_path))

    registry = ServerRegistry.from_file("$MCPLINK_CONFIG_DIR/mcp.json")
    assert registry.names() == ["a"]


def test_default_path_prefers_vscode_directory(tmp_path: Path):
    assert ServerRegistry.default_path(tmp_path) is None
    assert ServerRegistry.load_default(tmp_path) is None

    (tmp_path / "mcp.json").write_text(json.dumps({"servers": {"root": {"command": "root"}}}))
    assert ServerRegistry.default_path(tmp_path) == tmp_path / "mcp.json"

    (tmp_path / ".vscode").mkdir()
    (tmp_path / ".vscode" / "mcp.json").write_text(json.dumps({"servers": {"vscode": {"command": "vscode"}}}))
    assert ServerRegistry.default_path(tmp_path) == tmp_path / ".vscode" / "mcp.json"

    registry = ServerRegistry.load_default(tmp_path)
    assert registry is not None
    assert registry.names() == ["vscode"]


def test_merge_later_sources_win():
    user = ServerRegistry.from_dict({"servers": {"git": {"command": "git-old"}, "time": {"command": "time"}}})
    workspace = ServerRegistry.from_dict({"servers": {"git": {"command": "git-new"}}})

    merged = ServerRegistry.merge(user, workspace)

    assert sorted(merged.names()) == ["git", "time"]
    assert merged.get("git").command == "git-new"
    assert user.get("git").command == "git-old"


def test_descriptors_are_immutable(registry: ServerRegistry):
    with pytest.raises(ValidationError):
        registry.get("git").command = "other"  # type: ignore[misc]
