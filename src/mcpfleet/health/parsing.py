"""Request builders and response interpretation for JSON-RPC probes.

Servers write JSON-RPC envelopes to stdout, one per line, but many also print
banners or logs first. ``filter_json`` mode only considers lines that look
like envelopes; ``direct`` tries the whole output before falling back to a
line scan; ``error_only`` additionally accepts a silent, cleanly exited
server.
"""
from __future__ import annotations

import json
import re
from collections.abc import Iterator, Mapping
from typing import Any

from ..models import ParseMode
from .models import AdvancedInterpretation, BasicInterpretation, BasicVerdict

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "mcpfleet-probe"

# Output matching any of these means the protocol layer ran and rejected us.
AUTH_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"not set", re.IGNORECASE),
    re.compile(r"\binvalid\b", re.IGNORECASE),
    re.compile(r"unauthori[sz]ed", re.IGNORECASE),
    re.compile(r"authentication (?:failed|required)", re.IGNORECASE),
    re.compile(r"Usage:"),
)


def initialize_request(request_id: int = 1, *, client: str = CLIENT_NAME) -> dict[str, object]:
    """Return an ``initialize`` request envelope."""
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "initialize",
        "params": {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": client, "version": "1.0.0"},
        },
    }


def initialized_notification() -> dict[str, object]:
    """Return the ``notifications/initialized`` envelope."""
    return {"jsonrpc": "2.0", "method": "notifications/initialized"}


def tools_list_request(request_id: int = 2) -> dict[str, object]:
    """Return a ``tools/list`` request envelope."""
    return {"jsonrpc": "2.0", "id": request_id, "method": "tools/list", "params": {}}


def encode_messages(*messages: Mapping[str, object]) -> str:
    """Serialise *messages* as newline-delimited JSON."""
    return "".join(json.dumps(message) + "\n" for message in messages)


def iter_envelopes(output: str, mode: ParseMode = ParseMode.DIRECT) -> Iterator[dict[str, Any]]:
    """Yield JSON-RPC envelopes found in *output*."""
    text = output.strip()
    if not text:
        return
    if mode is not ParseMode.FILTER_JSON:
        whole = _load(text)
        if whole is not None:
            yield whole
            return
    for line in text.splitlines():
        candidate = line.strip()
        if not candidate.startswith("{") or '"jsonrpc"' not in candidate:
            continue
        envelope = _load(candidate)
        if envelope is not None:
            yield envelope


def find_envelope(
    output: str,
    mode: ParseMode = ParseMode.DIRECT,
    *,
    request_id: int | None = None,
) -> dict[str, Any] | None:
    """Return the first envelope (optionally answering *request_id*)."""
    for envelope in iter_envelopes(output, mode):
        if request_id is None or envelope.get("id") == request_id:
            return envelope
    return None


def server_identity(envelope: Mapping[str, Any] | None) -> tuple[str, str | None] | None:
    """Return ``(name, version)`` from an initialize response, if present."""
    if not envelope:
        return None
    result = envelope.get("result")
    if not isinstance(result, Mapping):
        return None
    info = result.get("serverInfo")
    if not isinstance(info, Mapping):
        return None
    name = info.get("name")
    if not isinstance(name, str) or not name:
        return None
    version = info.get("version")
    return name, str(version) if version is not None else None


def has_auth_message(output: str) -> bool:
    """Return ``True`` when *output* contains a credentials or usage message."""
    return any(pattern.search(output) for pattern in AUTH_PATTERNS)


def interpret_basic(
    stdout: str,
    stderr: str,
    mode: ParseMode,
    *,
    returncode: int | None = None,
    timed_out: bool = False,
) -> BasicInterpretation:
    """Classify a basic probe's output.

    Silence only counts as a pass in ``error_only`` mode when the container
    exited with status 0 before its deadline.
    """
    identity = server_identity(find_envelope(stdout, mode, request_id=1))
    if identity is None:
        identity = server_identity(find_envelope(stdout, mode))
    if identity is not None:
        name, version = identity
        label = f"{name} v{version}" if version else name
        return BasicInterpretation(
            verdict=BasicVerdict.IDENTITY,
            message=f"MCP protocol: {label}",
            server_name=name,
            server_version=version,
        )

    combined = "\n".join(part for part in (stdout, stderr) if part)
    if has_auth_message(combined):
        return BasicInterpretation(
            verdict=BasicVerdict.AUTH_MESSAGE,
            message="MCP protocol functional (auth required)",
        )

    clean_exit = returncode == 0 and not timed_out
    if mode is ParseMode.ERROR_ONLY and clean_exit and not combined.strip():
        return BasicInterpretation(
            verdict=BasicVerdict.SILENT,
            message="No output and no errors",
        )

    if timed_out:
        reason = "timed out"
    elif returncode:
        reason = f"exit {returncode}, no identity or recognised message"
    else:
        reason = "no identity or recognised message"
    return BasicInterpretation(verdict=BasicVerdict.FAILED, message=f"MCP protocol failed ({reason})")


def interpret_advanced(stdout: str, mode: ParseMode) -> AdvancedInterpretation:
    """Classify the output of an authenticated initialize + tools/list run."""
    identity = server_identity(find_envelope(stdout, mode, request_id=1))
    if identity is None:
        return AdvancedInterpretation(ok=False, message="Authenticated initialize returned no identity")
    name, _version = identity

    tools_envelope = find_envelope(stdout, mode, request_id=2)
    tools: object = None
    if tools_envelope is not None and isinstance(tools_envelope.get("result"), Mapping):
        tools = tools_envelope["result"].get("tools")
    if not isinstance(tools, list) or not tools:
        return AdvancedInterpretation(
            ok=True,
            message=f"Authenticated as {name}; no tools available",
            server_name=name,
            tool_count=0,
            warnings=("no-tools",),
        )
    return AdvancedInterpretation(
        ok=True,
        message=f"Authenticated as {name}; {len(tools)} tool(s) available",
        server_name=name,
        tool_count=len(tools),
    )


def _load(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


__all__ = [
    "AUTH_PATTERNS",
    "encode_messages",
    "find_envelope",
    "has_auth_message",
    "initialize_request",
    "initialized_notification",
    "interpret_advanced",
    "interpret_basic",
    "iter_envelopes",
    "server_identity",
    "tools_list_request",
]
