"""Git provider used to fetch source-build repositories."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ExternalToolError


@dataclass(slots=True)
class GitProvider:
    """Shallow-clone repositories with a bounded timeout."""

    git_bin: str = "git"
    clone_timeout: float = 300.0

    def clone(self, repository: str, destination: Path) -> subprocess.CompletedProcess[str]:
        """Clone *repository* into *destination* with ``--depth 1``."""
        return self._run_command(
            [self.git_bin, "clone", "--depth", "1", repository, str(destination)],
            error_prefix=f"{self.git_bin} clone {repository}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.clone_timeout,
            )
        except FileNotFoundError as exc:
            raise ExternalToolError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalToolError(
                f"{error_prefix} timed out after {self.clone_timeout:g}s", timed_out=True
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise ExternalToolError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
            )
        return result


__all__ = ["GitProvider"]
