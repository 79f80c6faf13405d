"""Protocol health verification for MCP servers."""
from __future__ import annotations

from .engine import BASIC_PROBE_TOKEN, HealthVerifier, ProbeTimeouts
from .models import (
    AdvancedInterpretation,
    BasicInterpretation,
    BasicVerdict,
    ProbeState,
    ServerHealth,
)

__all__ = [
    "AdvancedInterpretation",
    "BASIC_PROBE_TOKEN",
    "BasicInterpretation",
    "BasicVerdict",
    "HealthVerifier",
    "ProbeState",
    "ProbeTimeouts",
    "ServerHealth",
]
