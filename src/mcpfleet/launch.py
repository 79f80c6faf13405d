"""Turn registry entries into client launch specifications.

Container-backed topologies launch through ``docker run --rm -i``; the remote
topology wraps a local proxy command around the hosted endpoint. Every
argument is its own list element; flags are never joined to their values.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .classifier import classify
from .environment import EnvironmentSnapshot
from .errors import ConfigurationError, FleetError, UnresolvedReferenceError
from .logging import LogSink, NullSink
from .models import (
    LaunchSpec,
    ResolvedConfig,
    ServerDefinition,
    SourceKind,
    Topology,
    VolumeMapping,
)
from .outcomes import UnitOutcome, UnitStatus

UNRESOLVED_ROOT = "/mcpfleet-unresolved"
DOCKER_RUN_ARGS: tuple[str, ...] = ("run", "--rm", "-i")

_BARE_VARIABLE = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_WHOLE_REFERENCE = re.compile(r"^\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))$")
_REFERENCE = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")


@dataclass(frozen=True, slots=True)
class LaunchSettings:
    """Host-level values shared by every launch spec."""

    env_file: Path
    container_command: str = "docker"
    remote_launcher: str = "npx"
    remote_launcher_args: tuple[str, ...] = ("-y",)
    working_directory: Path | None = None


@dataclass(frozen=True, slots=True)
class ResolvedSource:
    """Host paths produced by one volume source expression."""

    paths: tuple[str, ...]
    unresolved: tuple[str, ...] = ()
    fan_out: bool = False


@dataclass(slots=True)
class FleetResolution:
    """Launch specs for the fleet plus one outcome per server."""

    config: ResolvedConfig = field(default_factory=ResolvedConfig)
    outcomes: list[UnitOutcome] = field(default_factory=list)


def unresolved_placeholder(variable: str) -> str:
    """Return the host path substituted for an unset *variable*."""
    return f"{UNRESOLVED_ROOT}/{variable}"


def parse_volume_expression(expression: str, *, server_id: str | None = None) -> tuple[str, str, bool]:
    """Split ``source:destination[:ro|rw]`` into its parts."""
    parts = expression.split(":")
    read_only = False
    if len(parts) == 3 and parts[2] in {"ro", "rw"}:
        read_only = parts[2] == "ro"
        parts = parts[:2]
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ConfigurationError(
            f"Invalid volume expression '{expression}'; expected SOURCE:DEST[:ro].",
            server_id=server_id,
        )
    return parts[0], parts[1], read_only


def resolve_volume_source(source: str, snapshot: EnvironmentSnapshot) -> ResolvedSource:
    """Expand variable references and home shorthand in a volume source.

    A source that is exactly one variable reference may hold a
    comma-separated list of directories; each element becomes its own path.
    """
    variable = _whole_variable(source)
    if variable is not None:
        value = snapshot.lookup(variable)
        if value is None:
            return ResolvedSource(paths=(unresolved_placeholder(variable),), unresolved=(variable,))
        elements = [item.strip() for item in value.split(",") if item.strip()]
        if not elements:
            return ResolvedSource(paths=(unresolved_placeholder(variable),), unresolved=(variable,))
        paths = tuple(_expand_home(item, snapshot) for item in elements)
        return ResolvedSource(paths=paths, fan_out="," in value)

    missing: list[str] = []

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        value = snapshot.lookup(name)
        if value is None:
            missing.append(name)
            return ""
        return value

    expanded = _REFERENCE.sub(_substitute, source)
    if missing:
        names = tuple(dict.fromkeys(missing))
        return ResolvedSource(paths=(unresolved_placeholder(names[0]),), unresolved=names)
    return ResolvedSource(paths=(_expand_home(expanded, snapshot),))


def resolve_volumes(
    definition: ServerDefinition,
    snapshot: EnvironmentSnapshot,
) -> tuple[VolumeMapping, ...]:
    """Resolve every volume expression declared by *definition*."""
    mappings: list[VolumeMapping] = []
    for expression in definition.volumes:
        source, destination, read_only = parse_volume_expression(
            expression, server_id=definition.id
        )
        resolved = resolve_volume_source(source, snapshot)
        for path in resolved.paths:
            container_path = destination
            if resolved.fan_out:
                container_path = f"{destination.rstrip('/')}/{_base_name(path)}"
            mappings.append(
                VolumeMapping(
                    source=path,
                    destination=container_path,
                    read_only=read_only,
                    unresolved=resolved.unresolved,
                )
            )
    return tuple(mappings)


def build_launch_spec(
    definition: ServerDefinition,
    snapshot: EnvironmentSnapshot,
    settings: LaunchSettings,
    sink: LogSink | None = None,
) -> LaunchSpec:
    """Build the topology-appropriate launch spec for *definition*."""
    sink = sink or NullSink()
    topology = classify(definition)
    _check_source(definition, topology)
    spec = _BUILDERS[topology](definition, snapshot, settings)
    for variable in spec.unresolved:
        sink.add_step(
            f"launch.{definition.id}",
            status="warning",
            detail=f"Variable '{variable}' is unset; mounted {unresolved_placeholder(variable)}.",
        )
    return spec


def build_resolved_config(
    definitions: Iterable[ServerDefinition],
    snapshot: EnvironmentSnapshot,
    settings: LaunchSettings,
    sink: LogSink | None = None,
    *,
    failures: Mapping[str, FleetError] | None = None,
) -> FleetResolution:
    """Build launch specs for every definition, isolating per-server errors."""
    sink = sink or NullSink()
    resolution = FleetResolution()
    for server_id, exc in (failures or {}).items():
        resolution.outcomes.append(UnitOutcome.from_error(server_id, exc))
    for definition in definitions:
        try:
            spec = build_launch_spec(definition, snapshot, settings, sink)
        except ConfigurationError as exc:
            sink.add_step(f"launch.{definition.id}", status="error", detail=str(exc))
            resolution.outcomes.append(UnitOutcome.from_error(definition.id, exc))
            continue
        resolution.config.add(spec)
        if spec.unresolved:
            error = UnresolvedReferenceError(spec.unresolved[0], server_id=definition.id)
            resolution.outcomes.append(
                UnitOutcome(
                    server_id=definition.id,
                    status=UnitStatus.WARNING,
                    detail=f"{error}; unresolved: {', '.join(spec.unresolved)}",
                    error_class=type(error).__name__,
                )
            )
        else:
            resolution.outcomes.append(
                UnitOutcome(
                    server_id=definition.id,
                    status=UnitStatus.SUCCESS,
                    detail=f"{spec.topology.value} launch spec ready",
                )
            )
    return resolution


# ----------------------------------------------------------------------
# Topology builders
# ----------------------------------------------------------------------
def _build_api_based(
    definition: ServerDefinition,
    snapshot: EnvironmentSnapshot,
    settings: LaunchSettings,
) -> LaunchSpec:
    return _container_spec(
        definition,
        Topology.API_BASED,
        settings,
        env_file=settings.env_file,
    )


def _build_mount_based(
    definition: ServerDefinition,
    snapshot: EnvironmentSnapshot,
    settings: LaunchSettings,
) -> LaunchSpec:
    return _container_spec(
        definition,
        Topology.MOUNT_BASED,
        settings,
        env_file=settings.env_file if definition.environment_variables else None,
        mounts=resolve_volumes(definition, snapshot),
    )


def _build_privileged(
    definition: ServerDefinition,
    snapshot: EnvironmentSnapshot,
    settings: LaunchSettings,
) -> LaunchSpec:
    return _container_spec(
        definition,
        Topology.PRIVILEGED,
        settings,
        env_file=settings.env_file if definition.environment_variables else None,
        mounts=resolve_volumes(definition, snapshot),
        networks=definition.networks,
    )


def _build_standalone(
    definition: ServerDefinition,
    snapshot: EnvironmentSnapshot,
    settings: LaunchSettings,
) -> LaunchSpec:
    return _container_spec(definition, Topology.STANDALONE, settings)


def _build_remote(
    definition: ServerDefinition,
    snapshot: EnvironmentSnapshot,
    settings: LaunchSettings,
) -> LaunchSpec:
    source = definition.source
    args = (*settings.remote_launcher_args, source.proxy_command or "", source.url or "")
    return LaunchSpec(
        server_id=definition.id,
        topology=Topology.REMOTE,
        command=settings.remote_launcher,
        args=tuple(args),
        working_directory=settings.working_directory,
    )


_BUILDERS: dict[
    Topology,
    Callable[[ServerDefinition, EnvironmentSnapshot, LaunchSettings], LaunchSpec],
] = {
    Topology.API_BASED: _build_api_based,
    Topology.MOUNT_BASED: _build_mount_based,
    Topology.PRIVILEGED: _build_privileged,
    Topology.STANDALONE: _build_standalone,
    Topology.REMOTE: _build_remote,
}
if set(_BUILDERS) != set(Topology):  # pragma: no cover - guards new topologies
    raise RuntimeError("Every topology needs a launch spec builder.")


def _container_spec(
    definition: ServerDefinition,
    topology: Topology,
    settings: LaunchSettings,
    *,
    env_file: Path | None = None,
    mounts: tuple[VolumeMapping, ...] = (),
    networks: tuple[str, ...] = (),
) -> LaunchSpec:
    image = definition.source.image or ""
    args: list[str] = list(DOCKER_RUN_ARGS)
    if env_file is not None:
        args.extend(["--env-file", str(env_file)])
    for name, value in definition.container_env:
        args.extend(["-e", f"{name}={value}"])
    for mount in mounts:
        args.extend(["--volume", mount.as_argument()])
    for network in networks:
        args.extend(["--network", network])
    if definition.entrypoint:
        args.extend(["--entrypoint", definition.entrypoint])
    args.append(image)
    args.extend(definition.cmd)
    if definition.mount_args:
        args.extend(mount.destination for mount in mounts)

    unresolved = tuple(dict.fromkeys(name for mount in mounts for name in mount.unresolved))
    return LaunchSpec(
        server_id=definition.id,
        topology=topology,
        command=settings.container_command,
        args=tuple(args),
        working_directory=settings.working_directory,
        env_file=env_file,
        image=image,
        mounts=mounts,
        unresolved=unresolved,
    )


def _check_source(definition: ServerDefinition, topology: Topology) -> None:
    is_remote_source = definition.source.kind is SourceKind.REMOTE_ENDPOINT
    if topology is Topology.REMOTE and not is_remote_source:
        raise ConfigurationError(
            f"Server '{definition.id}' is remote but its source is not a remote endpoint.",
            server_id=definition.id,
        )
    if topology is not Topology.REMOTE and is_remote_source:
        raise ConfigurationError(
            f"Server '{definition.id}' has a remote endpoint but server_type "
            f"'{topology.value}'.",
            server_id=definition.id,
        )


def _whole_variable(source: str) -> str | None:
    if _BARE_VARIABLE.match(source):
        return source
    match = _WHOLE_REFERENCE.match(source)
    if match:
        return match.group(1) or match.group(2)
    return None


def _expand_home(path: str, snapshot: EnvironmentSnapshot) -> str:
    if path == "~" or path.startswith("~/"):
        return snapshot.home().rstrip("/") + path[1:]
    return path


def _base_name(path: str) -> str:
    name = PurePosixPath(path.rstrip("/")).name
    return name or "root"


__all__ = [
    "DOCKER_RUN_ARGS",
    "FleetResolution",
    "LaunchSettings",
    "ResolvedSource",
    "UNRESOLVED_ROOT",
    "build_launch_spec",
    "build_resolved_config",
    "parse_volume_expression",
    "resolve_volume_source",
    "resolve_volumes",
    "unresolved_placeholder",
]
