"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from mcpfleet.environment import EnvironmentSnapshot
from mcpfleet.errors import ExternalToolError
from mcpfleet.providers import ContainerRuntime, ProbeExecution


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def make_snapshot(
    values: Mapping[str, str] | None = None,
    *,
    base: Mapping[str, str] | None = None,
    source: Path = Path("/work/.env"),
) -> EnvironmentSnapshot:
    """Build an environment snapshot without touching the filesystem."""
    return EnvironmentSnapshot(
        source=source,
        values=dict(values or {}),
        base=dict(base if base is not None else {"HOME": "/home/tester"}),
    )


@dataclass
class FakeContainerRuntime(ContainerRuntime):
    """Container runtime double that records calls instead of running docker."""

    present: set[str] = field(default_factory=set)
    networks: set[str] = field(default_factory=set)
    fail_pull: set[str] = field(default_factory=set)
    fail_build: set[str] = field(default_factory=set)
    probe_results: list[ProbeExecution] = field(default_factory=list)
    calls: list[tuple[str, ...]] = field(default_factory=list)
    probe_envs: list[dict[str, str] | None] = field(default_factory=list)

    def image_exists(self, image: str) -> bool:
        """Return whether *image* was marked present."""
        self.calls.append(("inspect", image))
        return image in self.present

    def pull(self, image: str) -> subprocess.CompletedProcess[str]:
        """Record a pull; make the image present unless marked to fail."""
        self.calls.append(("pull", image))
        if image in self.fail_pull:
            raise ExternalToolError(f"docker pull {image} failed (exit 1): not found", returncode=1)
        self.present.add(image)
        return subprocess.CompletedProcess(["docker", "pull", image], 0, "", "")

    def build(
        self,
        image: str,
        context: Path,
        *,
        dockerfile: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Record a build and the recipe in the context directory."""
        recipe = context / "Dockerfile"
        content = recipe.read_text(encoding="utf-8") if recipe.exists() else ""
        self.calls.append(("build", image, str(context), content))
        if image in self.fail_build:
            raise ExternalToolError(f"docker build {image} failed (exit 1): boom", returncode=1)
        self.present.add(image)
        return subprocess.CompletedProcess(["docker", "build", "-t", image], 0, "", "")

    def network_exists(self, name: str) -> bool:
        """Return whether *name* was created."""
        return name in self.networks

    def create_network(self, name: str) -> subprocess.CompletedProcess[str]:
        """Record network creation."""
        self.calls.append(("network-create", name))
        self.networks.add(name)
        return subprocess.CompletedProcess(["docker", "network", "create", name], 0, "", "")

    def run_probe(
        self,
        args: Sequence[str],
        *,
        stdin: str,
        timeout: float,
        env: Mapping[str, str] | None = None,
    ) -> ProbeExecution:
        """Return the next queued probe result."""
        self.calls.append(("probe", *args))
        self.probe_envs.append(dict(env) if env is not None else None)
        if not self.probe_results:
            return ProbeExecution(returncode=0, stdout="", stderr="")
        return self.probe_results.pop(0)

    def remove_container(self, name: str) -> None:
        """Record forced removal."""
        self.calls.append(("rm", name))


@pytest.fixture
def fake_runtime() -> FakeContainerRuntime:
    """Return a fresh container runtime double."""
    return FakeContainerRuntime()


@pytest.fixture
def registry_file(tmp_path: Path) -> Path:
    """Return the registry path used by tests (not yet written)."""
    return tmp_path / "mcp_server_registry.yml"
