"""Canonical model and the per-host inventory store."""

from sockmap.inventory.models import (
    CaptureSnapshot,
    Endpoint,
    Family,
    HostInventory,
    InterfaceRecord,
    ProcessRecord,
    Protocol,
    SocketRecord,
    SocketState,
)
from sockmap.inventory.store import InventoryStore, InventoryView

__all__ = [
    "CaptureSnapshot",
    "Endpoint",
    "Family",
    "HostInventory",
    "InterfaceRecord",
    "InventoryStore",
    "InventoryView",
    "ProcessRecord",
    "Protocol",
    "SocketRecord",
    "SocketState",
]
