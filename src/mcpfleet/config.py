"""Configuration loader for mcpfleet.

Configuration values are read from several sources, later ones winning:

1. Built-in defaults.
2. ``~/.config/mcpfleet/config.yml`` (or an override path).
3. Environment variables prefixed with ``MCPFLEET_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MCPFLEET_TIMEOUTS__PROBE=20
    export MCPFLEET_CLIENTS__CURSOR=~/work/.cursor/mcp.json

Values are coerced via PyYAML's ``safe_load`` so that numbers and ``null``
are parsed naturally. Relative paths are resolved against the working
directory at load time. Settings left unset here (``build_dir``,
``network_name``) are filled from the registry's ``global`` section by
:meth:`AppConfig.with_registry_globals`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load mcpfleet configuration. Install with "
        "`pip install mcpfleet` or ensure PyYAML>=6.0 is available."
    ) from exc

from .registry import RegistryGlobals

ENV_PREFIX = "MCPFLEET_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
DEFAULT_BUILD_DIR = "build"
DEFAULT_PROBE_TIMEOUT = 10.0


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DockerConfig:
    """External tool locations."""

    docker_bin: str = "docker"
    git_bin: str = "git"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"docker_bin": self.docker_bin, "git_bin": self.git_bin}


@dataclass(frozen=True)
class TimeoutConfig:
    """Per-operation timeouts in seconds."""

    pull: float = 600.0
    build: float = 1800.0
    clone: float = 300.0
    probe: float | None = None  # registry global.default_timeout, then 10s
    advanced_probe: float = 20.0

    @property
    def effective_probe(self) -> float:
        """Return the basic probe deadline."""
        return self.probe if self.probe is not None else DEFAULT_PROBE_TIMEOUT

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "pull": self.pull,
            "build": self.build,
            "clone": self.clone,
            "probe": self.probe,
            "advanced_probe": self.advanced_probe,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration for the mcpfleet CLI."""

    config_file: Path
    registry_file: Path
    env_file: Path
    env_example_file: Path
    build_dir: Path | None
    dockerfiles_dir: Path
    templates_dir: Path
    logs_dir: Path
    remote_launcher: str
    network_name: str | None
    clients: Mapping[str, Path]
    docker: DockerConfig
    timeouts: TimeoutConfig

    @property
    def effective_build_dir(self) -> Path:
        """Return the scratch root for source builds."""
        return self.build_dir if self.build_dir is not None else Path(DEFAULT_BUILD_DIR).resolve()

    def with_registry_globals(self, registry_globals: RegistryGlobals) -> AppConfig:
        """Return a copy with unset settings filled from the registry."""
        updated = self
        if self.build_dir is None and registry_globals.build_directory:
            updated = replace(
                updated,
                build_dir=_to_path(registry_globals.build_directory, base=self.registry_file.parent),
            )
        if self.network_name is None and registry_globals.network_name:
            updated = replace(updated, network_name=registry_globals.network_name)
        if self.timeouts.probe is None and registry_globals.default_timeout:
            updated = replace(
                updated,
                timeouts=replace(self.timeouts, probe=registry_globals.default_timeout),
            )
        return updated

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "registry_file": str(self.registry_file),
            "env_file": str(self.env_file),
            "env_example_file": str(self.env_example_file),
            "build_dir": str(self.build_dir) if self.build_dir else None,
            "dockerfiles_dir": str(self.dockerfiles_dir),
            "templates_dir": str(self.templates_dir),
            "logs_dir": str(self.logs_dir),
            "remote_launcher": self.remote_launcher,
            "network_name": self.network_name,
            "clients": {name: str(path) for name, path in self.clients.items()},
            "docker": self.docker.to_dict(),
            "timeouts": self.timeouts.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/mcpfleet/config.yml",
    "registry_file": "mcp_server_registry.yml",
    "env_file": ".env",
    "env_example_file": ".env_example",
    "build_dir": None,  # registry global.build_directory, then ./build
    "dockerfiles_dir": "support/docker",
    "templates_dir": "~/.config/mcpfleet/templates",
    "logs_dir": "~/.local/state/mcpfleet",
    "remote_launcher": "npx",
    "network_name": None,
    "clients": {
        "cursor": "~/.cursor/mcp.json",
        "claude_desktop": "~/Library/Application Support/Claude/claude_desktop_config.json",
    },
    "docker": {
        "docker_bin": "docker",
        "git_bin": "git",
    },
    "timeouts": {
        "pull": 600.0,
        "build": 1800.0,
        "clone": 300.0,
        "probe": None,
        "advanced_probe": 20.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_DOCKER_KEYS = {"docker_bin", "git_bin"}
ALLOWED_TIMEOUT_KEYS = set(TimeoutConfig().to_dict())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    docker = _as_dict(raw.get("docker"), "docker")
    unknown = set(docker.keys()) - ALLOWED_DOCKER_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown docker configuration keys: {joined}.")

    timeouts = _as_dict(raw.get("timeouts"), "timeouts")
    unknown = set(timeouts.keys()) - ALLOWED_TIMEOUT_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown timeouts configuration keys: {joined}.")

    clients = _as_dict(raw.get("clients"), "clients")
    for name, value in clients.items():
        if value is not None and not isinstance(value, (str, Path)):
            raise ConfigError(f"clients.{name} must be a path or null.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    build_dir_value = raw.get("build_dir")
    network_value = raw.get("network_name")

    clients_mapping = _as_dict(raw.get("clients"), "clients")
    clients = {
        name: _to_path(value)
        for name, value in clients_mapping.items()
        if value not in (None, "")
    }

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        docker_bin=str(docker_mapping.get("docker_bin", "docker")),
        git_bin=str(docker_mapping.get("git_bin", "git")),
    )

    timeout_mapping = _as_dict(raw.get("timeouts"), "timeouts")
    defaults = TimeoutConfig()
    probe_value = timeout_mapping.get("probe")
    timeouts = TimeoutConfig(
        pull=_expect_positive_float(timeout_mapping.get("pull"), "timeouts.pull", default=defaults.pull),
        build=_expect_positive_float(
            timeout_mapping.get("build"), "timeouts.build", default=defaults.build
        ),
        clone=_expect_positive_float(
            timeout_mapping.get("clone"), "timeouts.clone", default=defaults.clone
        ),
        probe=(
            _expect_positive_float(probe_value, "timeouts.probe", default=DEFAULT_PROBE_TIMEOUT)
            if probe_value is not None
            else None
        ),
        advanced_probe=_expect_positive_float(
            timeout_mapping.get("advanced_probe"),
            "timeouts.advanced_probe",
            default=defaults.advanced_probe,
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        registry_file=_to_path(raw.get("registry_file")),
        env_file=_to_path(raw.get("env_file")),
        env_example_file=_to_path(raw.get("env_example_file")),
        build_dir=_to_path(build_dir_value) if build_dir_value else None,
        dockerfiles_dir=_to_path(raw.get("dockerfiles_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        remote_launcher=str(raw.get("remote_launcher") or "npx"),
        network_name=str(network_value) if network_value else None,
        clients=clients,
        docker=docker,
        timeouts=timeouts,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object, *, base: Path | None = None) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, (str, Path)):
        path = Path(value).expanduser()
    else:
        raise ConfigError(f"Cannot convert value {value!r} to Path.")
    if not path.is_absolute():
        path = (base or Path.cwd()) / path
    return path


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DockerConfig",
    "TimeoutConfig",
    "load_config",
]
