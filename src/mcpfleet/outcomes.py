"""Per-unit outcomes and run summaries shared by multi-server operations."""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from .exit_codes import ExitCode


class UnitStatus(str, Enum):
    """Result of processing one server."""

    SUCCESS = "success"
    WARNING = "warning"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status counts against the run."""
        return self is UnitStatus.FAILED


@dataclass(frozen=True, slots=True)
class UnitOutcome:
    """What happened to a single server during a run."""

    server_id: str
    status: UnitStatus
    detail: str
    error_class: str | None = None
    data: Mapping[str, object] | None = None

    @classmethod
    def from_error(
        cls,
        server_id: str,
        exc: BaseException,
        *,
        status: UnitStatus = UnitStatus.FAILED,
    ) -> UnitOutcome:
        """Build an outcome describing *exc*."""
        return cls(
            server_id=server_id,
            status=status,
            detail=str(exc),
            error_class=type(exc).__name__,
        )

    def status_line(self) -> str:
        """Return the ``[STATUS] Class id: detail`` line printed for the unit."""
        parts = [f"[{self.status.value.upper()}]"]
        if self.error_class:
            parts.append(self.error_class)
        parts.append(f"{self.server_id}: {self.detail}")
        return " ".join(parts)


@dataclass(frozen=True, slots=True)
class RunSummary:
    """Aggregated tally for a run."""

    totals: Mapping[UnitStatus, int]
    failed: Sequence[str]
    exit_code: int

    @property
    def ok(self) -> bool:
        """Return ``True`` when no unit failed."""
        return not self.failed

    def tally_line(self, noun: str = "server") -> str:
        """Return the final human-readable tally."""
        total = sum(self.totals.values())
        return (
            f"{total} {noun}(s): "
            f"{self.totals.get(UnitStatus.SUCCESS, 0)} succeeded, "
            f"{self.totals.get(UnitStatus.WARNING, 0)} with warnings, "
            f"{self.totals.get(UnitStatus.SKIPPED, 0)} skipped, "
            f"{self.totals.get(UnitStatus.FAILED, 0)} failed"
        )


def summarize(
    outcomes: Iterable[UnitOutcome],
    *,
    failure_code: int = ExitCode.PROVIDER,
) -> RunSummary:
    """Count outcomes by status and derive the exit code."""
    totals = {status: 0 for status in UnitStatus}
    failed: list[str] = []
    for outcome in outcomes:
        totals[outcome.status] += 1
        if outcome.status.is_failure:
            failed.append(outcome.server_id)
    exit_code = int(failure_code) if failed else int(ExitCode.OK)
    return RunSummary(totals=totals, failed=tuple(failed), exit_code=exit_code)


__all__ = ["RunSummary", "UnitOutcome", "UnitStatus", "summarize"]
