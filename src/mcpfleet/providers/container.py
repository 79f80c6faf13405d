"""Container runtime provider wrapping the ``docker`` CLI."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ExternalToolError


@dataclass(frozen=True, slots=True)
class ProbeExecution:
    """Captured output of a probe container run."""

    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False


@dataclass(slots=True)
class ContainerRuntime:
    """Inspect, pull, build and probe images through the docker CLI."""

    docker_bin: str = "docker"
    pull_timeout: float = 600.0
    build_timeout: float = 1800.0

    def image_exists(self, image: str) -> bool:
        """Return ``True`` when *image* is available locally."""
        try:
            result = self._run_command(
                [self.docker_bin, "image", "inspect", image],
                check=False,
                error_prefix=f"{self.docker_bin} image inspect",
                timeout=30.0,
            )
        except ExternalToolError:
            return False
        return result.returncode == 0

    def pull(self, image: str) -> subprocess.CompletedProcess[str]:
        """Pull *image* from its registry."""
        return self._run_command(
            [self.docker_bin, "pull", image],
            check=True,
            error_prefix=f"{self.docker_bin} pull {image}",
            timeout=self.pull_timeout,
        )

    def build(
        self,
        image: str,
        context: Path,
        *,
        dockerfile: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Build *context* and tag the result as *image*."""
        args = [self.docker_bin, "build", "-t", image]
        if dockerfile is not None:
            args.extend(["-f", str(dockerfile)])
        args.append(str(context))
        return self._run_command(
            args,
            check=True,
            error_prefix=f"{self.docker_bin} build {image}",
            timeout=self.build_timeout,
        )

    def network_exists(self, name: str) -> bool:
        """Return ``True`` when the user-defined network *name* exists."""
        result = self._run_command(
            [self.docker_bin, "network", "inspect", name],
            check=False,
            error_prefix=f"{self.docker_bin} network inspect",
            timeout=30.0,
        )
        return result.returncode == 0

    def create_network(self, name: str) -> subprocess.CompletedProcess[str]:
        """Create the bridge network *name*."""
        return self._run_command(
            [self.docker_bin, "network", "create", name],
            check=True,
            error_prefix=f"{self.docker_bin} network create {name}",
            timeout=30.0,
        )

    def run_probe(
        self,
        args: Sequence[str],
        *,
        stdin: str,
        timeout: float,
        env: Mapping[str, str] | None = None,
    ) -> ProbeExecution:
        """Run ``docker <args>`` feeding *stdin*; never raises on exit status.

        A timeout returns whatever output was captured before the deadline
        with ``timed_out`` set.
        """
        command = [self.docker_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603
                command,
                input=stdin,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
                env=dict(env) if env is not None else None,
            )
        except FileNotFoundError as exc:
            raise ExternalToolError(f"{self.docker_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            return ProbeExecution(
                returncode=None,
                stdout=_as_text(exc.stdout),
                stderr=_as_text(exc.stderr),
                timed_out=True,
            )
        return ProbeExecution(
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )

    def remove_container(self, name: str) -> None:
        """Force-remove the container *name*, ignoring absence."""
        try:
            self._run_command(
                [self.docker_bin, "rm", "-f", name],
                check=False,
                error_prefix=f"{self.docker_bin} rm",
                timeout=30.0,
            )
        except ExternalToolError:
            return

    # ------------------------------------------------------------------
    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise ExternalToolError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalToolError(
                f"{error_prefix} timed out after {timeout:g}s", timed_out=True
            ) from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ExternalToolError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
            )
        return result


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = ["ContainerRuntime", "ProbeExecution"]
