"""Data models for server health probes."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..outcomes import UnitOutcome, UnitStatus


class ProbeState(str, Enum):
    """States visited by the two-tier health check."""

    IDLE = "idle"
    SKIPPED = "skipped"
    BASIC_PROBE = "basic_probe"
    BASIC_FAILED = "basic_failed"
    BASIC_OK = "basic_ok"
    ADVANCED_SKIPPED = "advanced_skipped"
    ADVANCED_PROBE = "advanced_probe"
    ADVANCED_FAILED = "advanced_failed"
    ADVANCED_OK = "advanced_ok"


class BasicVerdict(str, Enum):
    """Why a basic probe passed or failed."""

    IDENTITY = "identity"
    AUTH_MESSAGE = "auth_message"
    SILENT = "silent"
    FAILED = "failed"

    @property
    def passed(self) -> bool:
        """Return ``True`` for every verdict except ``FAILED``."""
        return self is not BasicVerdict.FAILED


@dataclass(slots=True, frozen=True)
class BasicInterpretation:
    """Interpretation of a basic probe's output."""

    verdict: BasicVerdict
    message: str
    server_name: str | None = None
    server_version: str | None = None


@dataclass(slots=True, frozen=True)
class AdvancedInterpretation:
    """Interpretation of an advanced probe's output."""

    ok: bool
    message: str
    server_name: str | None = None
    tool_count: int | None = None
    warnings: tuple[str, ...] = ()


@dataclass(slots=True)
class ServerHealth:
    """Health verdict for one server."""

    server_id: str
    transitions: list[ProbeState] = field(default_factory=lambda: [ProbeState.IDLE])
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def state(self) -> ProbeState:
        """Return the final state."""
        return self.transitions[-1]

    @property
    def passed(self) -> bool:
        """Return ``True`` unless the basic probe failed."""
        return ProbeState.BASIC_FAILED not in self.transitions

    @property
    def skipped(self) -> bool:
        """Return ``True`` when no probe ran."""
        return self.state is ProbeState.SKIPPED

    def to_outcome(self) -> UnitOutcome:
        """Convert the verdict into a reportable outcome."""
        data: Mapping[str, Any] = {
            **self.data,
            "transitions": [state.value for state in self.transitions],
            "warnings": list(self.warnings),
        }
        if not self.passed:
            status = UnitStatus.FAILED
        elif self.skipped:
            status = UnitStatus.SKIPPED
        elif self.warnings or self.state is ProbeState.ADVANCED_FAILED:
            status = UnitStatus.WARNING
        else:
            status = UnitStatus.SUCCESS
        error_class = "BasicProbeFailed" if status is UnitStatus.FAILED else None
        return UnitOutcome(
            server_id=self.server_id,
            status=status,
            detail=self.message,
            error_class=error_class,
            data=data,
        )


__all__ = [
    "AdvancedInterpretation",
    "BasicInterpretation",
    "BasicVerdict",
    "ProbeState",
    "ServerHealth",
]
