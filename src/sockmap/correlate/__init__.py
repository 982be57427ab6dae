"""Correlation engine: inventories -> connection graph."""

from sockmap.correlate.engine import AddressOwnership, correlate
from sockmap.correlate.models import (
    ConnectionEdge,
    ConnectionGraph,
    DanglingClient,
    MatchRule,
    ProcessRef,
)

__all__ = [
    "AddressOwnership",
    "ConnectionEdge",
    "ConnectionGraph",
    "DanglingClient",
    "MatchRule",
    "ProcessRef",
    "correlate",
]
