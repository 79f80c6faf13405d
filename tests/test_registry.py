"""Tests for the registry store."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from mcpfleet.errors import ConfigurationError
from mcpfleet.models import ParseMode, SourceKind
from mcpfleet.registry import NULL_TOKEN, RegistryError, RegistryStore, parse_definition

REGISTRY = """\
global:
  build_directory: build
  network_name: mcp-network
  default_timeout: 12

servers:
  github:
    name: GitHub MCP Server
    server_type: api_based
    category: code
    source:
      type: registry
      image: mcp/github:latest
    environment_variables:
      - GITHUB_TOKEN
      - name: GITHUB_HOST
        example: github.com
    health_test:
      parse_mode: json
    capabilities: [repos, issues]

  builder:
    name: Built Server
    server_type: standalone
    source:
      type: source-build
      repository: https://example.com/builder.git
      image: local/builder:latest
      build_context: server
      entrypoint: node
      cmd: ["dist/cli.js", "--stdio"]

  hosted:
    name: Hosted
    server_type: remote
    source:
      type: remote
      url: https://mcp.example.com/sse

  broken:
    name: Broken
    server_type: api_based
    source:
      type: registry
"""


@pytest.fixture
def store(registry_file: Path) -> RegistryStore:
    """Return a store over the sample registry."""
    registry_file.write_text(REGISTRY, encoding="utf-8")
    return RegistryStore(registry_file)


def test_query_returns_scalar_values(store: RegistryStore) -> None:
    """Scalar fields come back as plain text."""
    assert store.query("github", "source.image") == "mcp/github:latest"
    assert store.query("github", "name") == "GitHub MCP Server"


def test_query_returns_null_token_for_missing(store: RegistryStore) -> None:
    """Missing servers and fields yield the null token."""
    assert store.query("github", "source.url") == NULL_TOKEN
    assert store.query("nope", "source.image") == NULL_TOKEN
    assert store.query("github", "source.image.deeper") == NULL_TOKEN


def test_query_renders_collections_as_json(store: RegistryStore) -> None:
    """Lists and mappings are emitted as JSON."""
    assert json.loads(store.query("github", "capabilities")) == ["repos", "issues"]
    assert json.loads(store.query("github", "health_test")) == {"parse_mode": "json"}
    assert store.query("github", "environment_variables.0") == "GITHUB_TOKEN"


def test_query_reflects_edits_without_caching(store: RegistryStore) -> None:
    """Every call reads the file again."""
    assert store.query("github", "category") == "code"
    store.path.write_text(REGISTRY.replace("category: code", "category: vcs"), encoding="utf-8")
    assert store.query("github", "category") == "vcs"


def test_server_ids_preserve_order(store: RegistryStore) -> None:
    """Server ids come back in file order."""
    assert store.server_ids() == ["github", "builder", "hosted", "broken"]


def test_globals_section(store: RegistryStore) -> None:
    """The global section is exposed as typed values."""
    registry_globals = store.globals()
    assert registry_globals.build_directory == "build"
    assert registry_globals.network_name == "mcp-network"
    assert registry_globals.default_timeout == 12.0


def test_load_collects_per_server_errors(store: RegistryStore) -> None:
    """One malformed entry does not stop the others from loading."""
    load = store.load()

    assert [d.id for d in load.definitions] == ["github", "builder", "hosted"]
    assert set(load.errors) == {"broken"}
    assert load.errors["broken"].server_id == "broken"
    assert "requires 'image'" in str(load.errors["broken"])


def test_load_only_reports_undefined_ids(store: RegistryStore) -> None:
    """Requesting an undefined server records an error for it."""
    load = store.load(["github", "ghost"])

    assert [d.id for d in load.definitions] == ["github"]
    assert "not defined" in str(load.errors["ghost"])


def test_parsed_definition_fields(store: RegistryStore) -> None:
    """Definitions carry variables, overrides and probe settings."""
    load = store.load()
    github = load.get("github")
    builder = load.get("builder")
    hosted = load.get("hosted")
    assert github is not None and builder is not None and hosted is not None

    assert github.variable_names == ("GITHUB_TOKEN", "GITHUB_HOST")
    assert github.environment_variables[0].placeholder == "your_github_token_here"
    assert github.environment_variables[1].placeholder == "github.com"
    assert github.parse_mode is ParseMode.DIRECT
    assert github.capabilities == ("repos", "issues")

    assert builder.source.kind is SourceKind.SOURCE_BUILD
    assert builder.source.build_context == "server"
    assert builder.entrypoint == "node"
    assert builder.cmd == ("dist/cli.js", "--stdio")

    assert hosted.source.kind is SourceKind.REMOTE_ENDPOINT
    assert hosted.source.proxy_command == "mcp-remote"
    assert hosted.source.target == "https://mcp.example.com/sse"


def test_missing_registry_file_raises(tmp_path: Path) -> None:
    """A missing registry is an error, not an empty fleet."""
    with pytest.raises(RegistryError, match="not found"):
        RegistryStore(tmp_path / "absent.yml").load()


def test_malformed_yaml_raises(registry_file: Path) -> None:
    """Unparseable YAML is reported as a registry error."""
    registry_file.write_text("servers: [unclosed\n", encoding="utf-8")

    with pytest.raises(RegistryError, match="Failed to parse"):
        RegistryStore(registry_file).server_ids()


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ({"server_type": "api_based"}, "missing 'source'"),
        ({"source": {"type": "ftp"}}, "unknown source type"),
        ({"source": {"type": "build", "image": "x"}}, "requires 'repository'"),
        ({"source": {"type": "remote"}}, "requires 'url'"),
        ({"source": {"type": "registry", "image": "x"}, "volumes": "a:b"}, "volumes must be a list"),
        (
            {"source": {"type": "registry", "image": "x"}, "health_test": {"parse_mode": "xml"}},
            "unknown parse_mode",
        ),
        ({"source": {"type": "registry", "image": "x"}, "environment_variables": [3]}, "invalid environment"),
    ],
)
def test_parse_definition_rejects_malformed_entries(raw: dict[str, object], message: str) -> None:
    """Malformed entries raise ConfigurationError naming the problem."""
    with pytest.raises(ConfigurationError, match=message):
        parse_definition("demo", raw)


def test_volume_mappings_accept_structured_form() -> None:
    """Volumes may be given as mappings."""
    definition = parse_definition(
        "demo",
        {
            "server_type": "mount_based",
            "source": {"type": "registry", "image": "x"},
            "volumes": [
                {"source": "~/data", "destination": "/data", "read_only": True},
                "/tmp:/scratch",
            ],
            "container_env": {"MODE": "stdio"},
        },
    )

    assert definition.volumes == ("~/data:/data:ro", "/tmp:/scratch")
    assert definition.container_env == (("MODE", "stdio"),)


@pytest.mark.parametrize("server_id", ["..", "../etc", "a/b", ".hidden", ""])
def test_parse_definition_rejects_unsafe_ids(server_id: str) -> None:
    """Ids must be a single path segment."""
    raw = {"server_type": "api_based", "source": {"type": "registry", "image": "x"}}

    with pytest.raises(ConfigurationError, match="invalid id"):
        parse_definition(server_id, raw)


def test_load_reports_unsafe_ids_per_server(tmp_path: Path) -> None:
    """An unsafe id fails only its own entry."""
    path = tmp_path / "registry.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "servers": {
                    "..": {"server_type": "api_based", "source": {"type": "registry", "image": "x"}},
                    "ok.v2_server": {"server_type": "api_based", "source": {"type": "registry", "image": "y"}},
                }
            }
        ),
        encoding="utf-8",
    )

    result = RegistryStore(path).load()

    assert [definition.id for definition in result.definitions] == ["ok.v2_server"]
    assert ".." in result.errors


def test_cmd_splits_joined_flags() -> None:
    """``--name=value`` command tokens become two arguments."""
    definition = parse_definition(
        "demo",
        {
            "source": {"type": "registry", "image": "x"},
            "cmd": ["serve", "--log-level=0", "--root=/a=b", "-v", "--empty="],
        },
    )

    assert definition.cmd == ("serve", "--log-level", "0", "--root", "/a=b", "-v", "--empty", "")
