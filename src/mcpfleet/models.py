"""Data models describing registry entries and their derived launch specs."""
from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class Topology(str, Enum):
    """Deployment pattern governing which resources a server launch needs."""

    API_BASED = "api_based"
    MOUNT_BASED = "mount_based"
    PRIVILEGED = "privileged"
    STANDALONE = "standalone"
    REMOTE = "remote"


TOPOLOGY_VALUES: tuple[str, ...] = tuple(topology.value for topology in Topology)


class SourceKind(str, Enum):
    """How the server's runnable artifact is obtained."""

    REGISTRY_IMAGE = "registry-image"
    SOURCE_BUILD = "source-build"
    REMOTE_ENDPOINT = "remote-endpoint"


SOURCE_KIND_ALIASES: Mapping[str, SourceKind] = {
    "registry-image": SourceKind.REGISTRY_IMAGE,
    "registry": SourceKind.REGISTRY_IMAGE,
    "source-build": SourceKind.SOURCE_BUILD,
    "build": SourceKind.SOURCE_BUILD,
    "remote-endpoint": SourceKind.REMOTE_ENDPOINT,
    "remote": SourceKind.REMOTE_ENDPOINT,
}


class ParseMode(str, Enum):
    """How the output of a basic probe is interpreted."""

    DIRECT = "direct"
    FILTER_JSON = "filter_json"
    ERROR_ONLY = "error_only"


PARSE_MODE_ALIASES: Mapping[str, ParseMode] = {
    "direct": ParseMode.DIRECT,
    "json": ParseMode.DIRECT,
    "filter_json": ParseMode.FILTER_JSON,
    "error_only": ParseMode.ERROR_ONLY,
}


@dataclass(frozen=True, slots=True)
class SourceDescriptor:
    """Where a server comes from. Exactly one kind is populated."""

    kind: SourceKind
    image: str | None = None
    repository: str | None = None
    build_context: str | None = None
    dockerfile: str | None = None
    url: str | None = None
    proxy_command: str | None = None

    @property
    def target(self) -> str | None:
        """Return the image reference or endpoint URL the source yields."""
        if self.kind is SourceKind.REMOTE_ENDPOINT:
            return self.url
        return self.image


@dataclass(frozen=True, slots=True)
class EnvVarSpec:
    """A required environment variable and its example value."""

    name: str
    example: str | None = None

    @property
    def placeholder(self) -> str:
        """Return the value written into the example secrets file."""
        if self.example:
            return self.example
        return f"your_{self.name.lower()}_here"


@dataclass(frozen=True, slots=True)
class HealthTestSpec:
    """Per-server health probe settings."""

    parse_mode: ParseMode = ParseMode.DIRECT
    timeout: float | None = None


@dataclass(frozen=True, slots=True)
class ServerDefinition:
    """One registry entry."""

    id: str
    name: str
    topology: str
    source: SourceDescriptor
    environment_variables: tuple[EnvVarSpec, ...] = ()
    volumes: tuple[str, ...] = ()
    networks: tuple[str, ...] = ()
    entrypoint: str | None = None
    cmd: tuple[str, ...] = ()
    health_test: HealthTestSpec | None = None
    container_env: tuple[tuple[str, str], ...] = ()
    mount_args: bool = False
    description: str | None = None
    category: str | None = None
    capabilities: tuple[str, ...] = ()

    @property
    def variable_names(self) -> tuple[str, ...]:
        """Return the names of the required environment variables."""
        return tuple(spec.name for spec in self.environment_variables)

    @property
    def parse_mode(self) -> ParseMode:
        """Return the effective basic-probe parse mode."""
        if self.health_test is None:
            return ParseMode.DIRECT
        return self.health_test.parse_mode


@dataclass(frozen=True, slots=True)
class VolumeMapping:
    """A host-to-container binding after source resolution."""

    source: str
    destination: str
    read_only: bool = False
    unresolved: tuple[str, ...] = ()

    def as_argument(self) -> str:
        """Return the ``host:container[:ro]`` form passed to ``--volume``."""
        value = f"{self.source}:{self.destination}"
        if self.read_only:
            value += ":ro"
        return value


@dataclass(frozen=True, slots=True)
class LaunchSpec:
    """Resolved command line for a single server."""

    server_id: str
    topology: Topology
    command: str
    args: tuple[str, ...]
    working_directory: Path | None = None
    env_file: Path | None = None
    image: str | None = None
    mounts: tuple[VolumeMapping, ...] = ()
    unresolved: tuple[str, ...] = ()

    def to_client_entry(self) -> dict[str, object]:
        """Return the nested object a client application expects."""
        return {"command": self.command, "args": list(self.args)}


@dataclass(slots=True)
class ResolvedConfig:
    """Launch specs for every renderable server, in registry order."""

    specs: dict[str, LaunchSpec] = field(default_factory=dict)

    def add(self, spec: LaunchSpec) -> None:
        """Register *spec* under its server id."""
        self.specs[spec.server_id] = spec

    def __iter__(self) -> Iterator[LaunchSpec]:
        """Iterate over launch specs in insertion order."""
        return iter(self.specs.values())

    def __len__(self) -> int:
        """Return the number of servers."""
        return len(self.specs)

    def __contains__(self, server_id: object) -> bool:
        """Return ``True`` if *server_id* has a launch spec."""
        return server_id in self.specs


__all__ = [
    "EnvVarSpec",
    "HealthTestSpec",
    "LaunchSpec",
    "PARSE_MODE_ALIASES",
    "ParseMode",
    "ResolvedConfig",
    "SOURCE_KIND_ALIASES",
    "ServerDefinition",
    "SourceDescriptor",
    "SourceKind",
    "TOPOLOGY_VALUES",
    "Topology",
    "VolumeMapping",
]
