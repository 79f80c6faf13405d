"""Error taxonomy shared by every mcpfleet component.

Multi-server operations never let one of these escape a single unit: they are
captured into :class:`~mcpfleet.outcomes.UnitOutcome` records and surfaced in
the run summary. Only :class:`EmitError` and :class:`RenderError` abort the
step that raised them, because a half-written client configuration is worse
than none.
"""
from __future__ import annotations


class FleetError(RuntimeError):
    """Base class for mcpfleet errors."""


class ConfigurationError(FleetError):
    """Raised when a registry entry is malformed. Fatal to that server only."""

    def __init__(self, message: str, *, server_id: str | None = None) -> None:
        """Record the affected server alongside the message."""
        super().__init__(message)
        self.server_id = server_id


class UnknownTopologyError(ConfigurationError):
    """Raised when ``server_type`` is not one of the recognised topologies."""


class UnresolvedReferenceError(FleetError):
    """A volume mapping referenced a variable that has no value."""

    def __init__(self, variable: str, *, server_id: str | None = None) -> None:
        """Remember which variable could not be resolved."""
        super().__init__(f"Variable '{variable}' is not set")
        self.variable = variable
        self.server_id = server_id


class ExternalToolError(FleetError):
    """An external process (docker, git) failed or timed out."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        timed_out: bool = False,
    ) -> None:
        """Capture exit status details for reporting."""
        super().__init__(message)
        self.returncode = returncode
        self.timed_out = timed_out


class RenderError(FleetError):
    """Rendered client configuration failed to render or validate."""


class EmitError(OSError):
    """Client configuration could not be written; nothing was changed."""


__all__ = [
    "ConfigurationError",
    "EmitError",
    "ExternalToolError",
    "FleetError",
    "RenderError",
    "UnknownTopologyError",
    "UnresolvedReferenceError",
]
