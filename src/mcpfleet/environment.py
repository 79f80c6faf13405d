"""Environment file loading and placeholder detection.

The environment file (``.env`` by default) holds the real secrets and host
paths that parameterise server launches. It is only ever read: the one file
mcpfleet regenerates is the example sibling (see :mod:`mcpfleet.clients`).
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .logging import LogSink, NullSink

MISSING_ENV_FILE = "missing-env-file"

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PLACEHOLDER_VALUES = frozenset(
    {
        "changeme",
        "change_me",
        "dummy",
        "example",
        "fake",
        "none",
        "null",
        "placeholder",
        "replace_me",
        "secret",
        "test",
        "test_token",
        "todo",
        "token",
        "xxx",
        "xxxx",
    }
)


@dataclass(frozen=True, slots=True)
class EnvironmentSnapshot:
    """Values loaded from the environment file, layered over the process env."""

    source: Path
    values: Mapping[str, str] = field(default_factory=dict)
    base: Mapping[str, str] = field(default_factory=dict)
    missing: bool = False
    warnings: tuple[str, ...] = ()

    def lookup(self, name: str) -> str | None:
        """Return the value of *name*; empty values count as unset."""
        value = self.values.get(name)
        if value is None:
            value = self.base.get(name)
        if value is None or value == "":
            return None
        return value

    def home(self) -> str:
        """Return the home directory used for ``~`` expansion."""
        return self.lookup("HOME") or str(Path.home())

    def has_real_value(self, name: str) -> bool:
        """Return ``True`` when *name* is set to something other than a placeholder."""
        value = self.lookup(name)
        return value is not None and not is_placeholder(value)


class EnvironmentResolver:
    """Load ``KEY=value`` files into :class:`EnvironmentSnapshot` objects."""

    def __init__(self, base_env: Mapping[str, str] | None = None) -> None:
        """Use *base_env* (defaults to ``os.environ``) for fallback lookups."""
        self._base = dict(os.environ if base_env is None else base_env)

    def resolve(self, env_file: Path, sink: LogSink | None = None) -> EnvironmentSnapshot:
        """Read *env_file*; a missing file yields an empty, flagged snapshot."""
        sink = sink or NullSink()
        path = Path(env_file).expanduser()
        if not path.is_file():
            sink.add_step(
                "env.load",
                status="warning",
                detail=f"Environment file {path} not found; placeholders stay unexpanded.",
            )
            return EnvironmentSnapshot(
                source=path,
                base=self._base,
                missing=True,
                warnings=(MISSING_ENV_FILE,),
            )

        values, ignored = parse_env_text(path.read_text(encoding="utf-8"))
        for line_number in ignored:
            sink.add_step(
                "env.parse",
                status="warning",
                detail=f"Ignored malformed line {line_number} in {path}.",
            )
        sink.add_step(
            "env.load",
            detail=f"Loaded {len(values)} variable(s) from {path}.",
        )
        return EnvironmentSnapshot(source=path, values=values, base=self._base)


def parse_env_text(text: str) -> tuple[dict[str, str], list[int]]:
    """Parse env-file *text*; return values and the numbers of ignored lines."""
    values: dict[str, str] = {}
    ignored: list[int] = []
    for number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not _NAME_PATTERN.match(key):
            ignored.append(number)
            continue
        values[key] = _unquote(value.strip())
    return values, ignored


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    comment = value.find(" #")
    if comment != -1:
        value = value[:comment].rstrip()
    return value


def is_placeholder(value: str | None) -> bool:
    """Return ``True`` when *value* looks like an unfilled template value."""
    if value is None:
        return True
    text = value.strip()
    if not text:
        return True
    lowered = text.lower()
    if lowered in _PLACEHOLDER_VALUES:
        return True
    if lowered.startswith(("your_", "your-", "<")) or lowered.endswith("_here"):
        return True
    return "${" in text


__all__ = [
    "EnvironmentResolver",
    "EnvironmentSnapshot",
    "MISSING_ENV_FILE",
    "is_placeholder",
    "parse_env_text",
]
