"""Client configuration rendering and emission.

The rendered document is assembled from per-topology Jinja2 fragments, then
parsed and re-serialised so every client destination receives byte-identical,
canonical JSON. Emission stages a temporary file, and a backup of any existing
file, beside every destination before replacing any of them.
"""
from __future__ import annotations

import json
import os
import shutil
import tempfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .errors import EmitError, RenderError
from .logging import LogSink, NullSink
from .models import LaunchSpec, ResolvedConfig, ServerDefinition
from .templates import TemplateEngine, TemplateError

CONFIG_TEMPLATE = "clients/mcp_config.json.j2"
ENV_EXAMPLE_TEMPLATE = "env_example.j2"


def server_template_name(spec: LaunchSpec) -> str:
    """Return the fragment template used for *spec*'s topology."""
    return f"clients/{spec.topology.value}.json.j2"


class ConfigRenderer:
    """Render a :class:`ResolvedConfig` into the client JSON document."""

    def __init__(self, templates: TemplateEngine) -> None:
        self._templates = templates

    def render(self, resolved: ResolvedConfig) -> str:
        """Return canonical JSON text for *resolved*.

        Raises :class:`RenderError` when a fragment fails to render or the
        assembled document is not valid JSON.
        """
        entries: list[str] = []
        for spec in resolved:
            context = {"server": _server_context(spec)}
            try:
                fragment = self._templates.render_to_string(server_template_name(spec), context)
            except TemplateError as exc:
                raise RenderError(f"Failed to render entry for '{spec.server_id}': {exc}") from exc
            entries.append(fragment.strip())

        try:
            assembled = self._templates.render_to_string(CONFIG_TEMPLATE, {"entries": entries})
        except TemplateError as exc:
            raise RenderError(f"Failed to render client configuration: {exc}") from exc

        servers = parse_client_document(assembled)
        if list(servers) != list(resolved.specs):
            raise RenderError("Rendered client configuration does not list every server.")
        for server_id, entry in servers.items():
            if entry != resolved.specs[server_id].to_client_entry():
                raise RenderError(f"Rendered entry for '{server_id}' does not match its launch spec.")
        return json.dumps({"mcpServers": servers}, indent=2) + "\n"


def parse_client_document(text: str) -> dict[str, dict[str, object]]:
    """Return the ``mcpServers`` map of a client configuration document.

    Raises :class:`RenderError` when *text* is not JSON, has no
    ``mcpServers`` mapping, or holds an entry without a string ``command``
    and a list of string ``args``.
    """
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise RenderError(f"Client configuration is not valid JSON: {exc}") from exc
    servers = document.get("mcpServers") if isinstance(document, dict) else None
    if not isinstance(servers, dict):
        raise RenderError("Client configuration has no 'mcpServers' mapping.")
    for server_id, entry in servers.items():
        command = entry.get("command") if isinstance(entry, dict) else None
        args = entry.get("args", []) if isinstance(entry, dict) else None
        if not isinstance(command, str) or not command:
            raise RenderError(f"Entry for '{server_id}' has no command.")
        if not isinstance(args, list) or not all(isinstance(arg, str) for arg in args):
            raise RenderError(f"Entry for '{server_id}' must list its args as strings.")
    return servers


def _server_context(spec: LaunchSpec) -> dict[str, object]:
    return {
        "id": spec.server_id,
        "topology": spec.topology.value,
        "command": spec.command,
        "args": list(spec.args),
        "image": spec.image,
    }


@dataclass(slots=True)
class _StagedWrite:
    target: Path
    staged: Path
    backup: Path | None = None


class ConfigEmitter:
    """Write one document to several destinations, all or nothing.

    Every destination gets a staged copy of the new document, and existing
    files get a backup beside them, before anything is replaced. When a
    replace fails, destinations already replaced are restored from their
    backups and new ones are removed.
    """

    def __init__(self, protected_paths: Iterable[Path] = ()) -> None:
        """Refuse to write to any of *protected_paths* (the secrets file)."""
        self._protected = {_resolved(path) for path in protected_paths}

    def emit(
        self,
        document: str,
        destinations: Sequence[Path],
        sink: LogSink | None = None,
    ) -> list[Path]:
        """Replace every destination with *document*; return the paths written."""
        sink = sink or NullSink()
        targets = [Path(path).expanduser() for path in destinations]
        for target in targets:
            if _resolved(target) in self._protected:
                raise EmitError(f"Refusing to overwrite protected file {target}.")

        staged: list[_StagedWrite] = []
        try:
            for target in targets:
                target.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
                entry = _StagedWrite(target=target, staged=Path(tmp_name))
                staged.append(entry)
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(document)
                os.chmod(entry.staged, 0o644)
                if target.exists():
                    fd, backup_name = tempfile.mkstemp(
                        dir=str(target.parent), prefix=f".{target.name}.bak."
                    )
                    os.close(fd)
                    entry.backup = Path(backup_name)
                    shutil.copy2(target, entry.backup)
        except OSError as exc:
            _discard(staged)
            sink.add_step("config.emit", status="error", detail=str(exc))
            raise EmitError(f"Failed to stage client configuration: {exc}") from exc

        written: list[_StagedWrite] = []
        for entry in staged:
            try:
                os.replace(entry.staged, entry.target)
            except OSError as exc:
                unrestored = _roll_back(written)
                _discard(staged)
                sink.add_step("config.emit", status="error", detail=str(exc))
                message = f"Failed to replace {entry.target}: {exc}"
                if unrestored:
                    message += f"; could not restore {', '.join(unrestored)}"
                raise EmitError(message) from exc
            written.append(entry)
            sink.add_step("config.emit", detail=f"Wrote {entry.target}.")
        _discard(staged)
        return [entry.target for entry in written]


class EnvExampleWriter:
    """Regenerate the example secrets file from registry declarations."""

    def __init__(self, templates: TemplateEngine) -> None:
        self._templates = templates

    def render(self, definitions: Iterable[ServerDefinition], env_file: Path) -> str:
        """Return the example file contents."""
        seen: set[str] = set()
        stanzas: list[dict[str, object]] = []
        for definition in definitions:
            variables = []
            for variable in definition.environment_variables:
                if variable.name in seen:
                    continue
                seen.add(variable.name)
                variables.append({"name": variable.name, "example": variable.placeholder})
            if variables:
                stanzas.append({"id": definition.id, "name": definition.name, "variables": variables})
        context = {"env_file_name": Path(env_file).name, "stanzas": stanzas}
        try:
            return self._templates.render_to_string(ENV_EXAMPLE_TEMPLATE, context)
        except TemplateError as exc:
            raise RenderError(f"Failed to render example environment file: {exc}") from exc

    def write(
        self,
        definitions: Iterable[ServerDefinition],
        path: Path,
        env_file: Path,
        sink: LogSink | None = None,
    ) -> bool:
        """Write the example file to *path*; return ``True`` when it changed."""
        sink = sink or NullSink()
        target = Path(path).expanduser()
        if _resolved(target) == _resolved(env_file):
            raise EmitError(f"Refusing to overwrite the environment file {env_file}.")
        content = self.render(definitions, env_file)
        if target.exists() and target.read_text(encoding="utf-8") == content:
            sink.add_step("env_example.write", detail=f"{target} already up to date.")
            return False
        ConfigEmitter(protected_paths=[env_file]).emit(content, [target])
        sink.add_step("env_example.write", detail=f"Wrote {target}.")
        return True


def _resolved(path: Path) -> Path:
    return Path(path).expanduser().resolve(strict=False)


def _roll_back(written: Sequence[_StagedWrite]) -> list[str]:
    """Undo replaced destinations; return the ones that could not be restored."""
    unrestored: list[str] = []
    for entry in reversed(written):
        try:
            if entry.backup is None:
                entry.target.unlink(missing_ok=True)
            else:
                os.replace(entry.backup, entry.target)
        except OSError:
            unrestored.append(str(entry.target))
    return unrestored


def _discard(staged: Sequence[_StagedWrite]) -> None:
    for entry in staged:
        for leftover in (entry.staged, entry.backup):
            if leftover is None:
                continue
            try:
                leftover.unlink(missing_ok=True)
            except OSError:
                continue


__all__ = [
    "CONFIG_TEMPLATE",
    "ConfigEmitter",
    "ConfigRenderer",
    "ENV_EXAMPLE_TEMPLATE",
    "EnvExampleWriter",
    "parse_client_document",
    "server_template_name",
]
