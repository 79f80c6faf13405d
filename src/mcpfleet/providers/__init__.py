"""Provider interfaces for mcpfleet."""
from __future__ import annotations

from .container import ContainerRuntime, ProbeExecution
from .git import GitProvider

__all__ = [
    "ContainerRuntime",
    "GitProvider",
    "ProbeExecution",
]
