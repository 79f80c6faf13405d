"""Read-only access to the MCP server registry.

The registry (``mcp_server_registry.yml`` by default) is the single source of
truth for every server. It is read fresh on every call so edits are picked up
without any cache invalidation. Two access styles are offered:

* :meth:`RegistryStore.query` is a generic path lookup (``source.image``)
  that returns the literal ``null`` token for missing servers or fields, so
  scripts can tell "not configured" apart from a failure.
* :meth:`RegistryStore.load` parses every entry into a
  :class:`~mcpfleet.models.ServerDefinition`, collecting per-server
  :class:`~mcpfleet.errors.ConfigurationError` instances instead of aborting.
"""
from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to read the mcpfleet registry. Install with `pip install mcpfleet`."
    ) from exc

from .errors import ConfigurationError
from .models import (
    PARSE_MODE_ALIASES,
    SOURCE_KIND_ALIASES,
    EnvVarSpec,
    HealthTestSpec,
    ServerDefinition,
    SourceDescriptor,
    SourceKind,
)

NULL_TOKEN = "null"
# Ids name scratch directories and containers, so they must be one path segment.
SERVER_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")
JOINED_FLAG_PATTERN = re.compile(r"(--[A-Za-z0-9][A-Za-z0-9._-]*)=(.*)", re.DOTALL)
DEFAULT_PROXY_COMMAND = "mcp-remote"


class RegistryError(RuntimeError):
    """Raised when the registry file itself cannot be read."""


@dataclass(frozen=True, slots=True)
class RegistryGlobals:
    """Values from the registry's ``global`` section."""

    build_directory: str | None = None
    network_name: str | None = None
    default_timeout: float | None = None


@dataclass(slots=True)
class RegistryLoad:
    """Parsed definitions plus the entries that failed to parse."""

    definitions: list[ServerDefinition] = field(default_factory=list)
    errors: dict[str, ConfigurationError] = field(default_factory=dict)

    def get(self, server_id: str) -> ServerDefinition | None:
        """Return the definition for *server_id* if it parsed."""
        for definition in self.definitions:
            if definition.id == server_id:
                return definition
        return None


@dataclass(frozen=True)
class RegistryStore:
    """High-level interface to the registry YAML file."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the registry path after initialisation."""
        object.__setattr__(self, "path", Path(self.path).expanduser())

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------
    def read(self) -> dict[str, object]:
        """Return the parsed registry document."""
        if not self.path.exists():
            raise RegistryError(f"Registry file not found: {self.path}")
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise RegistryError(f"Failed to parse registry file {self.path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, Mapping):
            raise RegistryError(f"Registry file {self.path} must contain a mapping.")
        return dict(data)

    def _servers(self) -> dict[str, object]:
        servers = self.read().get("servers") or {}
        if not isinstance(servers, Mapping):
            raise RegistryError("Registry 'servers' must be a mapping keyed by server id.")
        return {str(key): value for key, value in servers.items()}

    def server_ids(self) -> list[str]:
        """Return every server id in registry order."""
        return list(self._servers())

    def query(self, server_id: str, field_path: str) -> str:
        """Look up ``servers.<server_id>.<field_path>`` as text.

        Missing servers and fields yield :data:`NULL_TOKEN`. Lists and
        mappings are returned as compact JSON.
        """
        node: object = self._servers().get(server_id)
        for segment in (part for part in field_path.split(".") if part):
            if isinstance(node, Mapping):
                node = node.get(segment)
            elif isinstance(node, list) and segment.isdigit() and int(segment) < len(node):
                node = node[int(segment)]
            else:
                node = None
            if node is None:
                break
        return _format_scalar(node)

    def globals(self) -> RegistryGlobals:
        """Return values from the ``global`` section."""
        raw = self.read().get("global") or {}
        if not isinstance(raw, Mapping):
            return RegistryGlobals()
        timeout = raw.get("default_timeout")
        return RegistryGlobals(
            build_directory=_optional_str(raw.get("build_directory")),
            network_name=_optional_str(raw.get("network_name")),
            default_timeout=float(timeout) if isinstance(timeout, (int, float)) else None,
        )

    # ------------------------------------------------------------------
    # Parsed access
    # ------------------------------------------------------------------
    def load(self, only: Sequence[str] | None = None) -> RegistryLoad:
        """Parse entries (all, or those in *only*) into definitions."""
        servers = self._servers()
        result = RegistryLoad()
        wanted = list(only) if only else list(servers)
        for server_id in wanted:
            raw = servers.get(server_id)
            if raw is None:
                result.errors[server_id] = ConfigurationError(
                    f"Server '{server_id}' is not defined in the registry.",
                    server_id=server_id,
                )
                continue
            try:
                result.definitions.append(parse_definition(server_id, raw))
            except ConfigurationError as exc:
                result.errors[server_id] = exc
        return result


def parse_definition(server_id: str, raw: object) -> ServerDefinition:
    """Build a :class:`ServerDefinition` from a raw registry mapping."""
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Entry '{server_id}' must be a mapping.", server_id=server_id)
    if not isinstance(server_id, str) or not SERVER_ID_PATTERN.fullmatch(server_id):
        raise ConfigurationError(
            f"Entry '{server_id}' has an invalid id; use letters, digits, '.', '_' or '-'.",
            server_id=server_id,
        )

    source_raw = raw.get("source")
    if not isinstance(source_raw, Mapping):
        raise ConfigurationError(f"Entry '{server_id}' is missing 'source'.", server_id=server_id)
    source = _parse_source(server_id, source_raw)

    cmd_raw = raw.get("cmd", source_raw.get("cmd"))
    entrypoint = _optional_str(raw.get("entrypoint", source_raw.get("entrypoint")))

    return ServerDefinition(
        id=server_id,
        name=_optional_str(raw.get("name")) or server_id,
        topology=str(raw.get("server_type") or ""),
        source=source,
        environment_variables=_parse_env_vars(server_id, raw.get("environment_variables")),
        volumes=_parse_volumes(server_id, raw.get("volumes")),
        networks=_string_tuple(server_id, "networks", raw.get("networks")),
        entrypoint=entrypoint,
        cmd=_parse_cmd(server_id, cmd_raw),
        health_test=_parse_health_test(server_id, raw.get("health_test")),
        container_env=_parse_container_env(server_id, raw.get("container_env")),
        mount_args=bool(raw.get("mount_args", False)),
        description=_optional_str(raw.get("description")),
        category=_optional_str(raw.get("category")),
        capabilities=_string_tuple(server_id, "capabilities", raw.get("capabilities")),
    )


def _parse_source(server_id: str, raw: Mapping[str, object]) -> SourceDescriptor:
    type_raw = str(raw.get("type") or "").strip().lower()
    kind = SOURCE_KIND_ALIASES.get(type_raw)
    if kind is None:
        raise ConfigurationError(
            f"Entry '{server_id}' has unknown source type '{type_raw}'.",
            server_id=server_id,
        )

    image = _optional_str(raw.get("image"))
    if kind is SourceKind.REGISTRY_IMAGE:
        if not image:
            raise ConfigurationError(
                f"Entry '{server_id}' registry source requires 'image'.",
                server_id=server_id,
            )
        return SourceDescriptor(kind=kind, image=image)

    if kind is SourceKind.SOURCE_BUILD:
        repository = _optional_str(raw.get("repository"))
        if not repository or not image:
            raise ConfigurationError(
                f"Entry '{server_id}' build source requires 'repository' and 'image'.",
                server_id=server_id,
            )
        return SourceDescriptor(
            kind=kind,
            image=image,
            repository=repository,
            build_context=_optional_str(raw.get("build_context")),
            dockerfile=_optional_str(raw.get("dockerfile")),
        )

    url = _optional_str(raw.get("url"))
    if not url:
        raise ConfigurationError(
            f"Entry '{server_id}' remote source requires 'url'.",
            server_id=server_id,
        )
    return SourceDescriptor(
        kind=kind,
        url=url,
        proxy_command=_optional_str(raw.get("proxy_command")) or DEFAULT_PROXY_COMMAND,
    )


def _parse_env_vars(server_id: str, raw: object) -> tuple[EnvVarSpec, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigurationError(
            f"Entry '{server_id}' environment_variables must be a list.",
            server_id=server_id,
        )
    specs: list[EnvVarSpec] = []
    for item in raw:
        if isinstance(item, str) and item.strip():
            specs.append(EnvVarSpec(name=item.strip()))
        elif isinstance(item, Mapping) and _optional_str(item.get("name")):
            specs.append(
                EnvVarSpec(
                    name=str(item["name"]).strip(),
                    example=_optional_str(item.get("example")),
                )
            )
        else:
            raise ConfigurationError(
                f"Entry '{server_id}' has an invalid environment variable: {item!r}.",
                server_id=server_id,
            )
    return tuple(specs)


def _parse_volumes(server_id: str, raw: object) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigurationError(f"Entry '{server_id}' volumes must be a list.", server_id=server_id)
    expressions: list[str] = []
    for item in raw:
        if isinstance(item, str) and item.strip():
            expressions.append(item.strip())
        elif isinstance(item, Mapping) and item.get("source") and item.get("destination"):
            expression = f"{item['source']}:{item['destination']}"
            if item.get("read_only"):
                expression += ":ro"
            expressions.append(expression)
        else:
            raise ConfigurationError(
                f"Entry '{server_id}' has an invalid volume: {item!r}.",
                server_id=server_id,
            )
    return tuple(expressions)


def _parse_cmd(server_id: str, raw: object) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return _split_joined_flag(raw)
    if isinstance(raw, list) and all(isinstance(item, (str, int, float)) for item in raw):
        tokens: list[str] = []
        for item in raw:
            tokens.extend(_split_joined_flag(str(item)))
        return tuple(tokens)
    raise ConfigurationError(
        f"Entry '{server_id}' cmd must be a string or list of strings.",
        server_id=server_id,
    )


def _split_joined_flag(token: str) -> tuple[str, ...]:
    """Return ``--name=value`` as two arguments; other tokens unchanged."""
    match = JOINED_FLAG_PATTERN.fullmatch(token)
    if match is None:
        return (token,)
    return (match.group(1), match.group(2))


def _parse_health_test(server_id: str, raw: object) -> HealthTestSpec | None:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ConfigurationError(
            f"Entry '{server_id}' health_test must be a mapping.",
            server_id=server_id,
        )
    mode_raw = str(raw.get("parse_mode") or "direct").strip().lower()
    mode = PARSE_MODE_ALIASES.get(mode_raw)
    if mode is None:
        allowed = ", ".join(sorted(PARSE_MODE_ALIASES))
        raise ConfigurationError(
            f"Entry '{server_id}' has unknown parse_mode '{mode_raw}'. Allowed: {allowed}.",
            server_id=server_id,
        )
    timeout_raw = raw.get("timeout")
    timeout = float(timeout_raw) if isinstance(timeout_raw, (int, float)) else None
    return HealthTestSpec(parse_mode=mode, timeout=timeout)


def _parse_container_env(server_id: str, raw: object) -> tuple[tuple[str, str], ...]:
    if raw is None:
        return ()
    if not isinstance(raw, Mapping):
        raise ConfigurationError(
            f"Entry '{server_id}' container_env must be a mapping.",
            server_id=server_id,
        )
    return tuple((str(key), "" if value is None else str(value)) for key, value in raw.items())


def _string_tuple(server_id: str, label: str, raw: object) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigurationError(f"Entry '{server_id}' {label} must be a list.", server_id=server_id)
    return tuple(str(item) for item in raw)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _format_scalar(value: object) -> str:
    if value is None:
        return NULL_TOKEN
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Mapping, list)):
        return json.dumps(value, default=str)
    return str(value)


__all__ = [
    "NULL_TOKEN",
    "RegistryError",
    "RegistryGlobals",
    "RegistryLoad",
    "RegistryStore",
    "parse_definition",
]
