"""Two-tier health verification for container-backed servers."""

from __future__ import annotations

import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from ..environment import EnvironmentSnapshot
from ..errors import ExternalToolError
from ..logging import LogSink, NullSink
from ..models import ServerDefinition, SourceKind
from ..providers import ContainerRuntime, ProbeExecution
from .models import ProbeState, ServerHealth
from .parsing import (
    encode_messages,
    initialize_request,
    initialized_notification,
    interpret_advanced,
    interpret_basic,
    tools_list_request,
)

# Stand-in credential so servers get past "variable not set" checks at startup.
BASIC_PROBE_TOKEN = "test_token"
PROBE_NAME_PREFIX = "mcpfleet-probe"


@dataclass(slots=True, frozen=True)
class ProbeTimeouts:
    """Deadlines for the two probe tiers, in seconds."""

    basic: float = 10.0
    advanced: float = 20.0


class HealthVerifier:
    """Run the basic and (when credentials are real) advanced probes."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        snapshot: EnvironmentSnapshot,
        *,
        timeouts: ProbeTimeouts | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.runtime = runtime
        self.snapshot = snapshot
        self.timeouts = timeouts or ProbeTimeouts()
        self._base_env = dict(snapshot.base if base_env is None else base_env)

    def verify(self, definition: ServerDefinition, sink: LogSink | None = None) -> ServerHealth:
        """Return the health verdict for *definition*."""
        sink = sink or NullSink()
        health = ServerHealth(server_id=definition.id)

        if definition.source.kind is SourceKind.REMOTE_ENDPOINT:
            self._advance(health, ProbeState.SKIPPED, sink, "remote endpoint; not probed")
            return health
        image = definition.source.image or ""
        if not self.runtime.image_exists(image):
            self._advance(health, ProbeState.SKIPPED, sink, f"image {image} not available")
            return health

        self._advance(health, ProbeState.BASIC_PROBE, sink)
        try:
            execution = self._basic_probe(definition)
        except ExternalToolError as exc:
            self._advance(health, ProbeState.BASIC_FAILED, sink, str(exc))
            return health
        basic = interpret_basic(
            execution.stdout,
            execution.stderr,
            definition.parse_mode,
            returncode=execution.returncode,
            timed_out=execution.timed_out,
        )
        health.data["basic"] = {"verdict": basic.verdict.value, "timed_out": execution.timed_out}
        if basic.server_name:
            health.data["server_name"] = basic.server_name
        if not basic.verdict.passed:
            self._advance(health, ProbeState.BASIC_FAILED, sink, basic.message)
            return health
        self._advance(health, ProbeState.BASIC_OK, sink, basic.message)

        if not self.advanced_gate_open(definition):
            self._advance(
                health,
                ProbeState.ADVANCED_SKIPPED,
                sink,
                f"{basic.message}; no real credentials, advanced probe skipped",
            )
            return health

        self._advance(health, ProbeState.ADVANCED_PROBE, sink)
        try:
            execution = self._advanced_probe(definition)
        except ExternalToolError as exc:
            health.warnings.append("advanced-probe-error")
            self._advance(health, ProbeState.ADVANCED_FAILED, sink, f"{basic.message}; {exc}")
            return health
        advanced = interpret_advanced(execution.stdout, definition.parse_mode)
        health.data["advanced"] = {"tool_count": advanced.tool_count}
        health.warnings.extend(advanced.warnings)
        if advanced.ok:
            self._advance(health, ProbeState.ADVANCED_OK, sink, advanced.message)
        else:
            self._advance(health, ProbeState.ADVANCED_FAILED, sink, f"{basic.message}; {advanced.message}")
        return health

    def verify_many(
        self,
        definitions: Iterable[ServerDefinition],
        sink: LogSink | None = None,
    ) -> list[ServerHealth]:
        """Verify each definition in order."""
        return [self.verify(definition, sink) for definition in definitions]

    def advanced_gate_open(self, definition: ServerDefinition) -> bool:
        """Return ``True`` when every required variable holds a real value."""
        names = definition.variable_names
        if not names:
            return False
        return all(self.snapshot.has_real_value(name) for name in names)

    # ------------------------------------------------------------------
    def _basic_probe(self, definition: ServerDefinition) -> ProbeExecution:
        name = f"{PROBE_NAME_PREFIX}-{definition.id}-{secrets.token_hex(4)}"
        args = ["run", "--rm", "-i", "--name", name]
        for variable in definition.variable_names:
            args.extend(["-e", f"{variable}={BASIC_PROBE_TOKEN}"])
        args.extend(self._tail_args(definition))
        timeout = self._timeout(definition, self.timeouts.basic)
        execution = self.runtime.run_probe(
            args,
            stdin=encode_messages(initialize_request()),
            timeout=timeout,
        )
        if execution.timed_out:
            self.runtime.remove_container(name)
        return execution

    def _advanced_probe(self, definition: ServerDefinition) -> ProbeExecution:
        name = f"{PROBE_NAME_PREFIX}-{definition.id}-{secrets.token_hex(4)}"
        args = ["run", "--rm", "-i", "--name", name]
        env = dict(self._base_env)
        for variable in definition.variable_names:
            # Only the name goes on the command line; docker reads the value from env.
            args.extend(["-e", variable])
            env[variable] = self.snapshot.lookup(variable) or ""
        args.extend(self._tail_args(definition))
        timeout = self._timeout(definition, self.timeouts.advanced)
        execution = self.runtime.run_probe(
            args,
            stdin=encode_messages(
                initialize_request(),
                initialized_notification(),
                tools_list_request(),
            ),
            timeout=timeout,
            env=env,
        )
        if execution.timed_out:
            self.runtime.remove_container(name)
        return execution

    @staticmethod
    def _tail_args(definition: ServerDefinition) -> list[str]:
        args: list[str] = []
        if definition.entrypoint:
            args.extend(["--entrypoint", definition.entrypoint])
        args.append(definition.source.image or "")
        args.extend(definition.cmd)
        return args

    @staticmethod
    def _timeout(definition: ServerDefinition, default: float) -> float:
        if definition.health_test is not None and definition.health_test.timeout:
            return definition.health_test.timeout
        return default

    @staticmethod
    def _advance(
        health: ServerHealth,
        state: ProbeState,
        sink: LogSink,
        message: str | None = None,
    ) -> None:
        health.transitions.append(state)
        if message is not None:
            health.message = message
        status = "error" if state is ProbeState.BASIC_FAILED else "ok"
        if state is ProbeState.ADVANCED_FAILED:
            status = "warning"
        sink.add_step(f"test.{health.server_id}.{state.value}", status=status, detail=message)


__all__ = ["BASIC_PROBE_TOKEN", "HealthVerifier", "ProbeTimeouts"]
