"""Realise the container image each server needs.

Every unit walks a small state machine::

    NOT_PRESENT -> PULLING -> PRESENT
    NOT_PRESENT -> CLONING -> BUILDING -> PRESENT
    any step    -> FAILED
    remote      -> SKIPPED

An image that already exists locally short-circuits to ``PRESENT`` without
any pull, clone or build. Failures are recorded on the result; they never
propagate out of :meth:`SetupOrchestrator.setup`.
"""
from __future__ import annotations

import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import ExternalToolError
from .logging import LogSink, NullSink
from .models import ServerDefinition, SourceKind
from .outcomes import UnitOutcome, UnitStatus
from .providers import ContainerRuntime, GitProvider

PINNED_DOCKERFILE = "Dockerfile"


class SetupState(str, Enum):
    """States visited while preparing one server."""

    NOT_PRESENT = "not_present"
    PULLING = "pulling"
    CLONING = "cloning"
    BUILDING = "building"
    PRESENT = "present"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class SetupResult:
    """Outcome of preparing one server, with the states it passed through."""

    server_id: str
    transitions: list[SetupState] = field(default_factory=list)
    detail: str = ""
    error: Exception | None = None

    @property
    def state(self) -> SetupState:
        """Return the final state."""
        return self.transitions[-1] if self.transitions else SetupState.NOT_PRESENT

    def advance(self, state: SetupState, sink: LogSink, detail: str | None = None) -> None:
        """Record a transition to *state*."""
        self.transitions.append(state)
        if detail is not None:
            self.detail = detail
        status = "error" if state is SetupState.FAILED else "ok"
        sink.add_step(f"setup.{self.server_id}.{state.value}", status=status, detail=detail)

    def to_outcome(self) -> UnitOutcome:
        """Convert the result into a reportable outcome."""
        data = {"transitions": [state.value for state in self.transitions]}
        if self.state is SetupState.FAILED:
            return UnitOutcome(
                server_id=self.server_id,
                status=UnitStatus.FAILED,
                detail=self.detail,
                error_class=type(self.error).__name__ if self.error else None,
                data=data,
            )
        status = UnitStatus.SKIPPED if self.state is SetupState.SKIPPED else UnitStatus.SUCCESS
        return UnitOutcome(server_id=self.server_id, status=status, detail=self.detail, data=data)


class SetupOrchestrator:
    """Pull or build images for registry entries, one server at a time."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        git: GitProvider,
        *,
        build_dir: Path,
        dockerfiles_dir: Path | None = None,
        project_root: Path | None = None,
    ) -> None:
        self.runtime = runtime
        self.git = git
        self.build_dir = build_dir
        self.dockerfiles_dir = dockerfiles_dir
        self.project_root = project_root or Path.cwd()

    def setup(self, definition: ServerDefinition, sink: LogSink | None = None) -> SetupResult:
        """Make the image for *definition* available locally."""
        sink = sink or NullSink()
        result = SetupResult(server_id=definition.id)
        source = definition.source

        if source.kind is SourceKind.REMOTE_ENDPOINT:
            result.advance(SetupState.SKIPPED, sink, "remote endpoint; nothing to set up")
            return result

        image = source.image or ""
        if self.runtime.image_exists(image):
            result.advance(SetupState.PRESENT, sink, f"image {image} already present")
            return result
        result.advance(SetupState.NOT_PRESENT, sink)

        try:
            if source.kind is SourceKind.REGISTRY_IMAGE:
                result.advance(SetupState.PULLING, sink, f"pulling {image}")
                self.runtime.pull(image)
                result.advance(SetupState.PRESENT, sink, f"pulled {image}")
            else:
                self._build(definition, result, sink)
        except (ExternalToolError, OSError) as exc:
            result.error = exc
            result.advance(SetupState.FAILED, sink, str(exc))
        return result

    def setup_many(
        self,
        definitions: Iterable[ServerDefinition],
        sink: LogSink | None = None,
    ) -> list[SetupResult]:
        """Set up each definition in order; failures do not stop the run."""
        return [self.setup(definition, sink) for definition in definitions]

    def ensure_network(self, name: str, sink: LogSink | None = None) -> bool:
        """Create the shared network *name* if missing; return ``True`` when created."""
        sink = sink or NullSink()
        if self.runtime.network_exists(name):
            sink.add_step("setup.network", detail=f"Network {name} already exists.")
            return False
        self.runtime.create_network(name)
        sink.add_step("setup.network", detail=f"Created network {name}.")
        return True

    def pinned_dockerfile(self, definition: ServerDefinition) -> Path | None:
        """Return the replacement recipe for *definition*, if one exists."""
        if definition.source.dockerfile:
            candidate = Path(definition.source.dockerfile).expanduser()
            if not candidate.is_absolute():
                candidate = self.project_root / candidate
            if not candidate.is_file():
                raise FileNotFoundError(f"Pinned Dockerfile {candidate} does not exist")
            return candidate
        if self.dockerfiles_dir is not None:
            candidate = self.dockerfiles_dir / definition.id / PINNED_DOCKERFILE
            if candidate.is_file():
                return candidate
        return None

    # ------------------------------------------------------------------
    def _build(self, definition: ServerDefinition, result: SetupResult, sink: LogSink) -> None:
        source = definition.source
        image = source.image or ""
        scratch = self.build_dir / definition.id
        try:
            if scratch.exists():
                shutil.rmtree(scratch)
            scratch.parent.mkdir(parents=True, exist_ok=True)
            result.advance(SetupState.CLONING, sink, f"cloning {source.repository}")
            self.git.clone(source.repository or "", scratch)

            context = scratch / (source.build_context or ".")
            if not context.is_dir():
                raise FileNotFoundError(f"Build context {source.build_context} not found in clone")
            pinned = self.pinned_dockerfile(definition)
            if pinned is not None:
                shutil.copyfile(pinned, context / PINNED_DOCKERFILE)
                sink.add_step(
                    f"setup.{definition.id}.dockerfile",
                    detail=f"Replaced upstream Dockerfile with {pinned}.",
                )

            result.advance(SetupState.BUILDING, sink, f"building {image}")
            self.runtime.build(image, context)
            result.advance(SetupState.PRESENT, sink, f"built {image}")
        finally:
            shutil.rmtree(scratch, ignore_errors=True)


__all__ = ["PINNED_DOCKERFILE", "SetupOrchestrator", "SetupResult", "SetupState"]
