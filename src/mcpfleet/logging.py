"""Structured operation logging for mcpfleet.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects progress steps and a final result, then appends one JSON record to
``operations.jsonl`` and a short human-readable line to ``mcpfleet.log``.

Progress never travels on the same channel as data: library functions accept
a :class:`LogSink` and return their results, so a caller can always tell what
was reported apart from what was computed.
"""
from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from . import __version__

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "mcpfleet.log"


class LogSink(Protocol):
    """Destination for progress reporting."""

    def add_step(
        self,
        name: str,
        *,
        status: str = "ok",
        detail: str | None = None,
        data: Mapping[str, object] | None = None,
    ) -> None:
        """Record a progress step."""


class NullSink:
    """Sink that keeps steps in memory and reports nothing."""

    def __init__(self) -> None:
        """Start with an empty step list."""
        self.steps: list[dict[str, object]] = []

    def add_step(
        self,
        name: str,
        *,
        status: str = "ok",
        detail: str | None = None,
        data: Mapping[str, object] | None = None,
    ) -> None:
        """Remember the step."""
        self.steps.append(_step_payload(name, status, detail, data))


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _step_payload(
    name: str,
    status: str,
    detail: str | None,
    data: Mapping[str, object] | None,
) -> dict[str, object]:
    payload: dict[str, object] = {"name": name, "status": status}
    if detail is not None:
        payload["detail"] = detail
    if data:
        payload["data"] = _sanitize(data)
    return payload


def _iso_now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class OperationScope:
    """Collects the steps and outcome of a single CLI operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Initialise the scope; nothing is written until it finishes."""
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_at = _iso_now()
        self._start = time.perf_counter()

    @property
    def finished(self) -> bool:
        """Return ``True`` once a result has been recorded."""
        return self.result is not None

    def add_step(
        self,
        name: str,
        *,
        status: str = "ok",
        detail: str | None = None,
        data: Mapping[str, object] | None = None,
    ) -> None:
        """Append a progress step to the operation."""
        self.steps.append(_step_payload(name, status, detail, data))

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Finish the operation successfully."""
        self._finish(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Finish the operation with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        rc: int | None = None,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Finish the operation with an error."""
        self._finish(
            "error",
            message,
            rc=rc,
            warnings=warnings,
            errors=list(errors) if errors else [message],
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        rc: int | None = None,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        if self.result is not None:
            return
        result: dict[str, object] = {"status": status, "message": message}
        if rc is not None:
            result["rc"] = rc
        if changed is not None:
            result["changed"] = changed
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if context:
            result["context"] = _sanitize(context)
        self.result = result
        self._logger._write(self._record())

    def _record(self) -> dict[str, Any]:
        return {
            "timestamp": self._started_at,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "context": {"mcpfleet_version": __version__, "pid": os.getpid()},
            "steps": list(self.steps),
            "result": self.result,
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
        }


class StructuredLogger:
    """Write operation records to the configured logs directory."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare log paths, disabling the logger if the directory is unusable."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.logs_dir / HUMAN_LOG_NAME
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
        self._human = logging.getLogger(f"mcpfleet.operations.{self._human_log_path}")
        self._human.propagate = False
        self._human.setLevel(logging.INFO)

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run a block of work as a logged operation."""
        scope = OperationScope(self, command, args, target)
        try:
            yield scope
        except Exception as exc:
            if not scope.finished:
                scope.error(f"{type(exc).__name__}: {exc}")
            raise
        if not scope.finished:
            scope.success("Operation completed.")

    def _write(self, record: Mapping[str, Any]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
            self._log_human(record)
        except OSError:
            self._enabled = False

    def _log_human(self, record: Mapping[str, Any]) -> None:
        if not self._human.handlers:
            handler = logging.FileHandler(self._human_log_path, encoding="utf-8", delay=True)
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
            self._human.addHandler(handler)
        result = record.get("result") or {}
        status = str(result.get("status", "success"))
        level = {"success": logging.INFO, "warning": logging.WARNING}.get(status, logging.ERROR)
        self._human.log(
            level,
            "%s: %s (%s ms)",
            record.get("command"),
            result.get("message", ""),
            record.get("duration_ms"),
        )


__all__ = ["LogSink", "NullSink", "OperationScope", "StructuredLogger"]
