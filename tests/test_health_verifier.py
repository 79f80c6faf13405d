"""Tests for the two-tier health verifier."""
from __future__ import annotations

import json

from mcpfleet.health import HealthVerifier, ProbeState, ProbeTimeouts
from mcpfleet.logging import NullSink
from mcpfleet.models import ServerDefinition
from mcpfleet.outcomes import UnitStatus
from mcpfleet.providers import ProbeExecution
from mcpfleet.registry import parse_definition

from conftest import FakeContainerRuntime, make_snapshot

IMAGE = "mcp/github:latest"
IDENTITY = json.dumps(
    {"jsonrpc": "2.0", "id": 1, "result": {"serverInfo": {"name": "github", "version": "1.2"}}}
)
TOOLS = json.dumps({"jsonrpc": "2.0", "id": 2, "result": {"tools": [{"name": "search"}]}})


def _github(**extra: object) -> ServerDefinition:
    entry: dict[str, object] = {
        "server_type": "api_based",
        "source": {"type": "registry", "image": IMAGE},
        "environment_variables": ["GITHUB_TOKEN"],
    }
    entry.update(extra)
    return parse_definition("github", entry)


def _probe_args(runtime: FakeContainerRuntime) -> list[tuple[str, ...]]:
    return [call[1:] for call in runtime.calls if call[0] == "probe"]


def test_missing_image_is_skipped(fake_runtime: FakeContainerRuntime) -> None:
    """No probe runs for an image that is not available."""
    health = HealthVerifier(fake_runtime, make_snapshot()).verify(_github())

    assert health.state is ProbeState.SKIPPED
    assert health.to_outcome().status is UnitStatus.SKIPPED
    assert _probe_args(fake_runtime) == []


def test_remote_servers_are_not_probed(fake_runtime: FakeContainerRuntime) -> None:
    """Remote endpoints are outside the container probe."""
    definition = parse_definition(
        "linear",
        {"server_type": "remote", "source": {"type": "remote", "url": "https://mcp.linear.app/sse"}},
    )

    health = HealthVerifier(fake_runtime, make_snapshot()).verify(definition)

    assert health.skipped
    assert fake_runtime.calls == []


def test_basic_probe_uses_stand_in_credentials(fake_runtime: FakeContainerRuntime) -> None:
    """The basic probe passes placeholder values on the command line."""
    fake_runtime.present.add(IMAGE)
    fake_runtime.probe_results.append(ProbeExecution(returncode=0, stdout=IDENTITY + "\n", stderr=""))
    sink = NullSink()

    health = HealthVerifier(fake_runtime, make_snapshot()).verify(_github(), sink)

    args = _probe_args(fake_runtime)[0]
    assert args[:4] == ("run", "--rm", "-i", "--name")
    assert args[4].startswith("mcpfleet-probe-github-")
    assert args[5:7] == ("-e", "GITHUB_TOKEN=test_token")
    assert args[-1] == IMAGE
    assert fake_runtime.probe_envs == [None]
    assert health.transitions == [
        ProbeState.IDLE,
        ProbeState.BASIC_PROBE,
        ProbeState.BASIC_OK,
        ProbeState.ADVANCED_SKIPPED,
    ]
    assert health.passed
    assert health.data["server_name"] == "github"
    assert health.to_outcome().status is UnitStatus.SUCCESS
    assert sink.steps[-1]["name"] == "test.github.advanced_skipped"


def test_placeholder_credentials_never_open_the_advanced_gate(
    fake_runtime: FakeContainerRuntime,
) -> None:
    """Advanced probing is never entered with placeholder values."""
    fake_runtime.present.add(IMAGE)
    fake_runtime.probe_results.append(ProbeExecution(returncode=0, stdout=IDENTITY, stderr=""))
    snapshot = make_snapshot({"GITHUB_TOKEN": "your_github_token_here"})

    health = HealthVerifier(fake_runtime, snapshot).verify(_github())

    assert ProbeState.ADVANCED_PROBE not in health.transitions
    assert len(_probe_args(fake_runtime)) == 1


def test_advanced_probe_passes_secrets_through_env(fake_runtime: FakeContainerRuntime) -> None:
    """Real credentials travel in the process environment, not in argv."""
    fake_runtime.present.add(IMAGE)
    fake_runtime.probe_results.extend(
        [
            ProbeExecution(returncode=0, stdout=IDENTITY, stderr=""),
            ProbeExecution(returncode=0, stdout=IDENTITY + "\n" + TOOLS + "\n", stderr=""),
        ]
    )
    snapshot = make_snapshot({"GITHUB_TOKEN": "ghp_realsecret"})

    health = HealthVerifier(fake_runtime, snapshot).verify(_github())

    advanced_args = _probe_args(fake_runtime)[1]
    assert ("-e", "GITHUB_TOKEN") == advanced_args[5:7]
    assert not any("ghp_realsecret" in arg for arg in advanced_args)
    assert fake_runtime.probe_envs[1] == {"HOME": "/home/tester", "GITHUB_TOKEN": "ghp_realsecret"}
    assert health.state is ProbeState.ADVANCED_OK
    assert health.data["advanced"] == {"tool_count": 1}
    assert health.to_outcome().status is UnitStatus.SUCCESS


def test_advanced_failure_does_not_change_verdict(fake_runtime: FakeContainerRuntime) -> None:
    """A failed advanced probe is reported as a warning only."""
    fake_runtime.present.add(IMAGE)
    fake_runtime.probe_results.extend(
        [
            ProbeExecution(returncode=0, stdout=IDENTITY, stderr=""),
            ProbeExecution(returncode=1, stdout="", stderr="401 Unauthorized"),
        ]
    )

    health = HealthVerifier(fake_runtime, make_snapshot({"GITHUB_TOKEN": "ghp_real"})).verify(_github())

    assert health.state is ProbeState.ADVANCED_FAILED
    assert health.passed
    assert health.to_outcome().status is UnitStatus.WARNING


def test_basic_failure_fails_the_unit(fake_runtime: FakeContainerRuntime) -> None:
    """No identity and no recognised message is a failure."""
    fake_runtime.present.add(IMAGE)
    fake_runtime.probe_results.append(ProbeExecution(returncode=137, stdout="", stderr=""))

    health = HealthVerifier(fake_runtime, make_snapshot({"GITHUB_TOKEN": "ghp_real"})).verify(_github())

    assert health.state is ProbeState.BASIC_FAILED
    outcome = health.to_outcome()
    assert outcome.status is UnitStatus.FAILED
    assert outcome.error_class == "BasicProbeFailed"
    assert len(_probe_args(fake_runtime)) == 1


def test_timed_out_probe_removes_container(fake_runtime: FakeContainerRuntime) -> None:
    """A probe that hits its deadline is force-removed and fails."""
    fake_runtime.present.add(IMAGE)
    fake_runtime.probe_results.append(
        ProbeExecution(returncode=None, stdout="", stderr="", timed_out=True)
    )
    definition = _github(health_test={"parse_mode": "error_only"})

    health = HealthVerifier(fake_runtime, make_snapshot()).verify(definition)

    probe_name = _probe_args(fake_runtime)[0][4]
    assert ("rm", probe_name) in fake_runtime.calls
    assert health.state is ProbeState.BASIC_FAILED
    assert "timed out" in health.message


def test_servers_without_variables_skip_advanced(fake_runtime: FakeContainerRuntime) -> None:
    """Credential-free servers have nothing to authenticate."""
    fake_runtime.present.add(IMAGE)
    fake_runtime.probe_results.append(ProbeExecution(returncode=0, stdout="", stderr=""))
    definition = parse_definition(
        "thinking",
        {
            "server_type": "standalone",
            "source": {"type": "registry", "image": IMAGE},
            "health_test": {"parse_mode": "error_only"},
        },
    )

    health = HealthVerifier(fake_runtime, make_snapshot()).verify(definition)

    assert health.transitions[-2:] == [ProbeState.BASIC_OK, ProbeState.ADVANCED_SKIPPED]
    assert health.message.startswith("No output and no errors")


def test_per_server_timeout_and_entrypoint(fake_runtime: FakeContainerRuntime) -> None:
    """Probe arguments honour entrypoint and command overrides."""
    fake_runtime.present.add(IMAGE)
    fake_runtime.probe_results.append(ProbeExecution(returncode=0, stdout=IDENTITY, stderr=""))
    definition = _github(entrypoint="node", cmd=["dist/index.js", "stdio"], health_test={"timeout": 3})
    verifier = HealthVerifier(fake_runtime, make_snapshot(), timeouts=ProbeTimeouts(basic=1, advanced=2))

    verifier.verify(definition)

    args = _probe_args(fake_runtime)[0]
    assert args[-4:] == ("node", IMAGE, "dist/index.js", "stdio")
    assert args[-5] == "--entrypoint"
    assert verifier._timeout(definition, verifier.timeouts.basic) == 3


def test_verify_many_attempts_every_server(fake_runtime: FakeContainerRuntime) -> None:
    """One failing server does not stop the others."""
    fake_runtime.present.add(IMAGE)
    fake_runtime.probe_results.extend(
        [
            ProbeExecution(returncode=1, stdout="", stderr=""),
            ProbeExecution(returncode=0, stdout=IDENTITY, stderr=""),
        ]
    )

    results = HealthVerifier(fake_runtime, make_snapshot()).verify_many([_github(), _github()])

    assert [r.passed for r in results] == [False, True]


def test_silent_crash_fails_error_only_server(fake_runtime: FakeContainerRuntime) -> None:
    """A container that exits non-zero without output is not healthy."""
    fake_runtime.present.add(IMAGE)
    fake_runtime.probe_results.append(ProbeExecution(returncode=1, stdout="", stderr=""))
    definition = _github(health_test={"parse_mode": "error_only"})

    health = HealthVerifier(fake_runtime, make_snapshot()).verify(definition)

    assert health.state is ProbeState.BASIC_FAILED
    assert health.data["basic"]["verdict"] == "failed"
    assert health.to_outcome().status is UnitStatus.FAILED
