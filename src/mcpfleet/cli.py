"""Typer-powered command line interface for ``mcpfleet``.

Data a caller may pipe (the rendered client document, ``parse`` results,
``list --json``) goes to stdout. Progress, per-server status lines and the
final tally go to stderr so the two channels never mix.
"""
from __future__ import annotations

import json
import shutil
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .builder import SetupOrchestrator
from .clients import ConfigEmitter, ConfigRenderer, EnvExampleWriter, parse_client_document
from .config import AppConfig, ConfigError, load_config
from .environment import EnvironmentResolver, EnvironmentSnapshot
from .errors import EmitError, ExternalToolError, RenderError
from .exit_codes import ExitCode
from .health import HealthVerifier, ProbeTimeouts
from .launch import FleetResolution, LaunchSettings, build_resolved_config
from .logging import OperationScope, StructuredLogger
from .outcomes import RunSummary, UnitOutcome, UnitStatus, summarize
from .providers import ContainerRuntime, GitProvider
from .registry import RegistryError, RegistryLoad, RegistryStore
from .templates import TemplateEngine

console = Console(stderr=True, soft_wrap=True)
output = Console(soft_wrap=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate configuration file.",
)
REGISTRY_OPTION = typer.Option(
    None,
    "--registry",
    help="Path to the MCP server registry (overrides configuration).",
)
ENV_FILE_OPTION = typer.Option(
    None,
    "--env-file",
    help="Path to the environment file holding secrets and host paths.",
)

_STATUS_STYLES = {
    UnitStatus.SUCCESS: "green",
    UnitStatus.WARNING: "yellow",
    UnitStatus.FAILED: "red",
    UnitStatus.SKIPPED: "yellow",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        MCP server fleet manager.

        Generates client configuration from the server registry, pulls or
        builds server images, and verifies each server speaks JSON-RPC.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    store: RegistryStore
    logger: StructuredLogger
    templates: TemplateEngine
    resolver: EnvironmentResolver
    container: ContainerRuntime
    git: GitProvider


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    registry_file: Path | None = None,
    env_file: Path | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if registry_file is not None:
        overrides["registry_file"] = str(registry_file)
    if env_file is not None:
        overrides["env_file"] = str(env_file)

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"Configuration error: {exc}", style="red", markup=False)
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    store = RegistryStore(config.registry_file)
    if store.path.exists():
        try:
            config = config.with_registry_globals(store.globals())
        except RegistryError:
            # Reported by the command that reads the registry.
            pass

    runtime = RuntimeContext(
        config=config,
        store=store,
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        resolver=EnvironmentResolver(),
        container=ContainerRuntime(
            docker_bin=config.docker.docker_bin,
            pull_timeout=config.timeouts.pull,
            build_timeout=config.timeouts.build,
        ),
        git=GitProvider(git_bin=config.docker.git_bin, clone_timeout=config.timeouts.clone),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the mcpfleet version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    registry_file: Path | None = REGISTRY_OPTION,
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, registry_file, env_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            typer.echo(f"mcpfleet {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, registry_file, env_file)

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(message, style="red", markup=False)
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _load_registry(
    runtime: RuntimeContext,
    op: OperationScope,
    only: Sequence[str] | None = None,
) -> RegistryLoad:
    if not runtime.store.path.exists():
        _command_error(op, f"Registry file not found: {runtime.store.path}", rc=ExitCode.ENVIRONMENT)
    try:
        load = runtime.store.load(only)
    except RegistryError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    op.add_step(
        "registry.load",
        detail=f"Parsed {len(load.definitions)} server(s); {len(load.errors)} invalid.",
    )
    return load


def _require_tool(op: OperationScope, binary: str) -> None:
    if shutil.which(binary) is None:
        _command_error(op, f"Required tool '{binary}' was not found on PATH.", rc=ExitCode.ENVIRONMENT)


def _resolve_fleet(runtime: RuntimeContext, op: OperationScope) -> tuple[FleetResolution, EnvironmentSnapshot]:
    load = _load_registry(runtime, op)
    snapshot = runtime.resolver.resolve(runtime.config.env_file, op)
    if snapshot.missing:
        console.print(
            f"Environment file {snapshot.source} not found; unresolved values stay visible.",
            style="yellow",
            markup=False,
        )
    settings = LaunchSettings(
        env_file=runtime.config.env_file,
        container_command=runtime.config.docker.docker_bin,
        remote_launcher=runtime.config.remote_launcher,
        working_directory=runtime.config.registry_file.parent,
    )
    resolution = build_resolved_config(
        load.definitions,
        snapshot,
        settings,
        op,
        failures=load.errors,
    )
    return resolution, snapshot


def _report(
    outcomes: Sequence[UnitOutcome],
    summary: RunSummary,
    *,
    verbose: bool,
    noun: str = "server",
) -> None:
    for outcome in outcomes:
        if verbose or outcome.status is not UnitStatus.SUCCESS:
            console.print(outcome.status_line(), style=_STATUS_STYLES[outcome.status], markup=False)
    console.print(summary.tally_line(noun), style="bold" if summary.ok else "bold red", markup=False)


def _finish_run(
    op: OperationScope,
    outcomes: Sequence[UnitOutcome],
    *,
    failure_code: int,
    verbose: bool = True,
    changed: int | None = None,
    noun: str = "server",
) -> None:
    summary = summarize(outcomes, failure_code=failure_code)
    _report(outcomes, summary, verbose=verbose, noun=noun)
    context = {"totals": {status.value: count for status, count in summary.totals.items()}}
    warnings = [o.server_id for o in outcomes if o.status is UnitStatus.WARNING]
    if summary.ok:
        if warnings:
            op.warning(summary.tally_line(noun), warnings=warnings, changed=changed, context=context)
        else:
            op.success(summary.tally_line(noun), changed=changed, context=context)
        return
    op.error(summary.tally_line(noun), rc=summary.exit_code, errors=list(summary.failed), context=context)
    raise typer.Exit(code=summary.exit_code)


@app.command("list")
def list_servers(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit servers as JSON instead of a table.",
    ),
) -> None:
    """List servers declared in the registry."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "registry", "path": str(runtime.store.path)},
    ) as op:
        load = _load_registry(runtime, op)
        entries = [
            {
                "id": definition.id,
                "name": definition.name,
                "server_type": definition.topology,
                "source": definition.source.kind.value,
                "target": definition.source.target,
                "description": definition.description,
                "category": definition.category,
                "capabilities": list(definition.capabilities),
            }
            for definition in load.definitions
        ]
        invalid = [
            {"id": server_id, "error": str(exc)} for server_id, exc in load.errors.items()
        ]

        if json_output:
            typer.echo(json.dumps({"servers": entries, "invalid": invalid}, indent=2))
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("ID", style="bold")
            table.add_column("Name")
            table.add_column("Type")
            table.add_column("Source")
            table.add_column("Category")
            if not entries:
                table.add_row("(none)", "", "", "", "")
            for entry in entries:
                table.add_row(
                    str(entry["id"]),
                    str(entry["name"]),
                    str(entry["server_type"]),
                    str(entry["target"] or ""),
                    str(entry["category"] or ""),
                )
            output.print(table)
            for item in invalid:
                console.print(f"[FAILED] {item['id']}: {item['error']}", style="red", markup=False)
        op.success(f"Listed {len(entries)} server(s).", changed=0)


@app.command("parse")
def parse_field(
    ctx: typer.Context,
    server_id: str = typer.Argument(..., help="Server id in the registry."),
    field_path: str = typer.Argument(..., help="Dotted field path, e.g. source.image."),
) -> None:
    """Print one registry field; prints ``null`` when it is absent."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "parse",
        args={"server_id": server_id, "field": field_path},
        target={"kind": "registry", "path": str(runtime.store.path)},
    ) as op:
        if not runtime.store.path.exists():
            _command_error(
                op, f"Registry file not found: {runtime.store.path}", rc=ExitCode.ENVIRONMENT
            )
        try:
            value = runtime.store.query(server_id, field_path)
        except RegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        typer.echo(value)
        op.success("Queried registry field.", changed=0)


@app.command("config")
def config_preview(ctx: typer.Context) -> None:
    """Render the client configuration document to stdout."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config",
        args={},
        target={"kind": "client-config", "scope": "preview"},
    ) as op:
        resolution, _snapshot = _resolve_fleet(runtime, op)
        try:
            document = ConfigRenderer(runtime.templates).render(resolution.config)
        except RenderError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        typer.echo(document, nl=False)
        _finish_run(op, resolution.outcomes, failure_code=ExitCode.VALIDATION, verbose=False)


@app.command("config-write")
def config_write(
    ctx: typer.Context,
    destinations: list[Path] | None = typer.Option(
        None,
        "--destination",
        "-d",
        help="Write to this path instead of the configured client files (repeatable).",
    ),
    skip_env_example: bool = typer.Option(
        False,
        "--skip-env-example",
        help="Do not regenerate the example environment file.",
    ),
) -> None:
    """Write the client configuration to every client destination."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    targets = list(destinations) if destinations else list(config.clients.values())
    with runtime.logger.operation(
        "config-write",
        args={"destinations": [str(path) for path in targets]},
        target={"kind": "client-config", "scope": "write"},
    ) as op:
        if not targets:
            _command_error(op, "No client destinations configured.", rc=ExitCode.VALIDATION)
        resolution, _snapshot = _resolve_fleet(runtime, op)
        try:
            document = ConfigRenderer(runtime.templates).render(resolution.config)
        except RenderError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        emitter = ConfigEmitter(protected_paths=[config.env_file])
        try:
            written = emitter.emit(document, targets, op)
        except EmitError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        for path in written:
            console.print(f"Wrote {path}", style="green", markup=False)

        changed = len(written)
        if not skip_env_example:
            definitions = runtime.store.load().definitions
            try:
                if EnvExampleWriter(runtime.templates).write(
                    definitions, config.env_example_file, config.env_file, op
                ):
                    changed += 1
                    console.print(f"Wrote {config.env_example_file}", style="green", markup=False)
            except (EmitError, RenderError) as exc:
                _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        _finish_run(
            op,
            resolution.outcomes,
            failure_code=ExitCode.VALIDATION,
            verbose=False,
            changed=changed,
        )


@app.command("validate")
def validate_clients(ctx: typer.Context) -> None:
    """Check that every configured client file holds a valid, current document."""
    runtime = _get_runtime(ctx)
    clients = dict(runtime.config.clients)
    with runtime.logger.operation(
        "validate",
        args={"clients": {name: str(path) for name, path in clients.items()}},
        target={"kind": "client-config", "scope": "validate"},
    ) as op:
        if not clients:
            _command_error(op, "No client destinations configured.", rc=ExitCode.VALIDATION)
        resolution, _snapshot = _resolve_fleet(runtime, op)
        expected: dict[str, dict[str, object]] | None = None
        if not any(outcome.status.is_failure for outcome in resolution.outcomes):
            try:
                rendered = ConfigRenderer(runtime.templates).render(resolution.config)
            except RenderError as exc:
                op.add_step("validate.render", status="warning", detail=str(exc))
            else:
                expected = parse_client_document(rendered)

        outcomes = [
            _validate_client(name, Path(path).expanduser(), expected, op)
            for name, path in clients.items()
        ]
        _finish_run(op, outcomes, failure_code=ExitCode.VALIDATION, noun="client")


def _validate_client(
    name: str,
    path: Path,
    expected: dict[str, dict[str, object]] | None,
    op: OperationScope,
) -> UnitOutcome:
    if not path.exists():
        outcome = UnitOutcome(
            server_id=name,
            status=UnitStatus.FAILED,
            detail=f"{path} not found; run config-write",
            error_class="FileNotFoundError",
        )
    else:
        try:
            servers = parse_client_document(path.read_text(encoding="utf-8"))
        except (OSError, RenderError) as exc:
            outcome = UnitOutcome.from_error(name, exc)
        else:
            if expected is not None and servers != expected:
                outcome = UnitOutcome(
                    server_id=name,
                    status=UnitStatus.WARNING,
                    detail=f"{path} differs from the registry; run config-write",
                )
            else:
                outcome = UnitOutcome(
                    server_id=name,
                    status=UnitStatus.SUCCESS,
                    detail=f"{path}: {len(servers)} server(s)",
                )
    op.add_step(f"validate.{name}", status=outcome.status.value, detail=outcome.detail)
    return outcome


@app.command("setup")
def setup_servers(
    ctx: typer.Context,
    server_id: str | None = typer.Argument(None, help="Only set up this server."),
) -> None:
    """Pull or build the image for each server."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "setup",
        args={"server_id": server_id},
        target={"kind": "server", "scope": server_id or "all"},
    ) as op:
        load = _load_registry(runtime, op, [server_id] if server_id else None)
        _require_tool(op, config.docker.docker_bin)
        orchestrator = SetupOrchestrator(
            runtime.container,
            runtime.git,
            build_dir=config.effective_build_dir,
            dockerfiles_dir=config.dockerfiles_dir,
            project_root=config.registry_file.parent,
        )
        if config.network_name and any(d.networks for d in load.definitions):
            try:
                orchestrator.ensure_network(config.network_name, op)
            except ExternalToolError as exc:
                op.add_step("setup.network", status="warning", detail=str(exc))
                console.print(
                    f"Could not create network {config.network_name}: {exc}",
                    style="yellow",
                    markup=False,
                )

        outcomes = [UnitOutcome.from_error(sid, exc) for sid, exc in load.errors.items()]
        for definition in load.definitions:
            console.print(f"Setting up {definition.name} ({definition.id})", markup=False)
            outcomes.append(orchestrator.setup(definition, op).to_outcome())
        _finish_run(op, outcomes, failure_code=ExitCode.PROVIDER)


@app.command("test")
def test_servers(
    ctx: typer.Context,
    server_id: str | None = typer.Argument(None, help="Only test this server."),
) -> None:
    """Probe each server over JSON-RPC."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "test",
        args={"server_id": server_id},
        target={"kind": "server", "scope": server_id or "all"},
    ) as op:
        load = _load_registry(runtime, op, [server_id] if server_id else None)
        _require_tool(op, config.docker.docker_bin)
        snapshot = runtime.resolver.resolve(config.env_file, op)
        verifier = HealthVerifier(
            runtime.container,
            snapshot,
            timeouts=ProbeTimeouts(
                basic=config.timeouts.effective_probe,
                advanced=config.timeouts.advanced_probe,
            ),
        )
        outcomes = [UnitOutcome.from_error(sid, exc) for sid, exc in load.errors.items()]
        for definition in load.definitions:
            console.print(f"Testing {definition.name} ({definition.id})", markup=False)
            outcomes.append(verifier.verify(definition, op).to_outcome())
        _finish_run(op, outcomes, failure_code=ExitCode.PROVIDER)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
