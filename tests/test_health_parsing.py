"""Tests for JSON-RPC probe message handling."""
from __future__ import annotations

import json

import pytest

from mcpfleet.health.models import BasicVerdict
from mcpfleet.health.parsing import (
    encode_messages,
    find_envelope,
    has_auth_message,
    initialize_request,
    initialized_notification,
    interpret_advanced,
    interpret_basic,
    tools_list_request,
)
from mcpfleet.models import ParseMode

IDENTITY = json.dumps(
    {
        "jsonrpc": "2.0",
        "id": 1,
        "result": {
            "protocolVersion": "2024-11-05",
            "serverInfo": {"name": "github-mcp-server", "version": "0.4.0"},
        },
    }
)
TOOLS = json.dumps({"jsonrpc": "2.0", "id": 2, "result": {"tools": [{"name": "a"}, {"name": "b"}]}})


def test_request_envelopes() -> None:
    """Requests follow the protocol handshake sequence."""
    encoded = encode_messages(initialize_request(), initialized_notification(), tools_list_request())
    lines = [json.loads(line) for line in encoded.splitlines()]

    assert [line.get("method") for line in lines] == [
        "initialize",
        "notifications/initialized",
        "tools/list",
    ]
    assert lines[0]["id"] == 1
    assert lines[0]["params"]["clientInfo"]["name"] == "mcpfleet-probe"
    assert "id" not in lines[1]
    assert encoded.endswith("\n")


def test_direct_mode_accepts_whole_output() -> None:
    """A clean handshake response is parsed directly."""
    result = interpret_basic(IDENTITY + "\n", "", ParseMode.DIRECT)

    assert result.verdict is BasicVerdict.IDENTITY
    assert result.message == "MCP protocol: github-mcp-server v0.4.0"
    assert result.server_version == "0.4.0"


def test_filter_json_skips_banner_lines() -> None:
    """Log lines around the envelope are ignored in filter mode."""
    stdout = "Starting server...\nlistening on stdio\n" + IDENTITY + "\n"

    result = interpret_basic(stdout, "", ParseMode.FILTER_JSON)

    assert result.verdict is BasicVerdict.IDENTITY
    assert result.server_name == "github-mcp-server"


def test_find_envelope_by_request_id() -> None:
    """Envelopes can be picked by the request they answer."""
    stdout = IDENTITY + "\n" + TOOLS + "\n"

    assert find_envelope(stdout, ParseMode.DIRECT, request_id=2)["result"]["tools"][0] == {"name": "a"}  # type: ignore[index]
    assert find_envelope(stdout, ParseMode.DIRECT, request_id=9) is None
    assert find_envelope("", ParseMode.DIRECT) is None


def test_auth_message_without_handshake_passes() -> None:
    """Credential complaints prove the protocol layer started."""
    result = interpret_basic("", "Error: GITHUB_PERSONAL_ACCESS_TOKEN not set\n", ParseMode.DIRECT)

    assert result.verdict is BasicVerdict.AUTH_MESSAGE
    assert result.verdict.passed
    assert result.message == "MCP protocol functional (auth required)"


@pytest.mark.parametrize(
    "text",
    ["401 Unauthorized", "Authentication failed for token", "Usage: server [options]", "invalid api key"],
)
def test_auth_patterns(text: str) -> None:
    """Recognised credential and usage messages."""
    assert has_auth_message(text)


def test_silence_fails_outside_error_only_mode() -> None:
    """No output and no recognisable pattern fails the basic probe."""
    result = interpret_basic("", "", ParseMode.DIRECT)

    assert result.verdict is BasicVerdict.FAILED
    assert not result.verdict.passed
    assert result.message == "MCP protocol failed (no identity or recognised message)"


def test_error_only_accepts_clean_silence() -> None:
    """Silent servers that exit 0 pass in error_only mode."""
    result = interpret_basic("", "", ParseMode.ERROR_ONLY, returncode=0)

    assert result.verdict is BasicVerdict.SILENT


def test_error_only_rejects_silent_crash() -> None:
    """No output with a non-zero exit fails even in error_only mode."""
    result = interpret_basic("", "", ParseMode.ERROR_ONLY, returncode=1)

    assert result.verdict is BasicVerdict.FAILED
    assert result.message == "MCP protocol failed (exit 1, no identity or recognised message)"


def test_error_only_needs_an_exit_status() -> None:
    """Silence with an unknown exit status is not accepted."""
    assert interpret_basic("", "", ParseMode.ERROR_ONLY).verdict is BasicVerdict.FAILED


def test_timeout_is_never_silence() -> None:
    """A timed-out probe counts as a non-matching response."""
    result = interpret_basic("", "", ParseMode.ERROR_ONLY, timed_out=True)

    assert result.verdict is BasicVerdict.FAILED
    assert "timed out" in result.message


def test_garbage_output_fails() -> None:
    """Unstructured output without a known message fails."""
    result = interpret_basic("segmentation fault\n", "", ParseMode.FILTER_JSON)

    assert result.verdict is BasicVerdict.FAILED


def test_advanced_counts_tools() -> None:
    """The advanced probe reports the number of tools."""
    result = interpret_advanced(IDENTITY + "\n" + TOOLS + "\n", ParseMode.DIRECT)

    assert result.ok is True
    assert result.tool_count == 2
    assert result.warnings == ()


def test_advanced_without_tools_warns() -> None:
    """A server exposing no tools passes with a warning."""
    result = interpret_advanced(IDENTITY + "\n", ParseMode.DIRECT)

    assert result.ok is True
    assert result.tool_count == 0
    assert result.warnings == ("no-tools",)


def test_advanced_without_identity_fails() -> None:
    """An authenticated run must still identify the server."""
    result = interpret_advanced("unauthorized\n", ParseMode.DIRECT)

    assert result.ok is False
