"""Map registry entries to deployment topologies."""
from __future__ import annotations

from .errors import UnknownTopologyError
from .models import TOPOLOGY_VALUES, ServerDefinition, Topology


def classify(definition: ServerDefinition) -> Topology:
    """Return the topology declared by *definition*.

    There is no fallback: an unrecognised ``server_type`` raises
    :class:`UnknownTopologyError` for this server only.
    """
    raw = (definition.topology or "").strip().lower()
    try:
        return Topology(raw)
    except ValueError:
        allowed = ", ".join(TOPOLOGY_VALUES)
        raise UnknownTopologyError(
            f"Unknown server_type '{definition.topology}'. Allowed: {allowed}.",
            server_id=definition.id,
        ) from None


__all__ = ["classify"]
