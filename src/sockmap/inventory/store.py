"""Inventory store — keyed, mergeable collection of per-host inventories.

Thread-safe: writes to one host are serialized by that host's lock, so a
recording window's union is atomic with respect to concurrent snapshots,
while different hosts proceed in parallel. The host table itself is swapped
under a short global lock, which is also what makes :meth:`snapshot` a
consistent point-in-time view.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, replace
from types import MappingProxyType

from sockmap.errors import Diagnostic, StoreError
from sockmap.inventory.models import CaptureSnapshot, HostInventory

logger = logging.getLogger(__name__)


class InventoryView(Mapping[str, HostInventory]):
    """Immutable point-in-time view of the store, iterated in host-name order."""

    def __init__(self, hosts: Mapping[str, HostInventory]) -> None:
        self._hosts = MappingProxyType(dict(hosts))
        self.taken_at = time.time()

    def __getitem__(self, name: str) -> HostInventory:
        return self._hosts[name]

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._hosts))

    def __len__(self) -> int:
        return len(self._hosts)

    @property
    def inventories(self) -> list[HostInventory]:
        return [self._hosts[name] for name in self]


@dataclass
class _RecordingWindow:
    started: float
    snapshots: int = 0


class InventoryStore:
    """Owns every :class:`HostInventory` of an analysis run."""

    def __init__(self) -> None:
        self._hosts: dict[str, HostInventory] = {}
        self._host_locks: dict[str, threading.Lock] = {}
        self._windows: dict[str, _RecordingWindow] = {}
        self._lock = threading.Lock()

    def _host_lock(self, host: str) -> threading.Lock:
        with self._lock:
            return self._host_locks.setdefault(host, threading.Lock())

    def _commit(self, inventory: HostInventory) -> None:
        with self._lock:
            self._hosts[inventory.name] = inventory

    def get(self, host: str) -> HostInventory | None:
        with self._lock:
            return self._hosts.get(host)

    def hosts(self) -> list[str]:
        with self._lock:
            return sorted(self._hosts)

    def __contains__(self, host: object) -> bool:
        with self._lock:
            return host in self._hosts

    def __len__(self) -> int:
        with self._lock:
            return len(self._hosts)

    def put_partial(self, host: str, partial: HostInventory) -> list[Diagnostic]:
        """Merge a partial inventory (e.g. one capture file) into ``host``."""
        if partial.name != host:
            partial = replace(partial, name=host)
        with self._host_lock(host):
            current = self.get(host)
            if current is None:
                merged, diagnostics = partial, []
            else:
                merged, diagnostics = current.merge(partial)
            self._commit(merged)
        for diag in diagnostics:
            logger.warning("%s", diag)
        logger.debug(
            "%s now has %d interfaces, %d sockets",
            host,
            len(merged.interfaces),
            len(merged.sockets),
        )
        return diagnostics

    def begin_recording(self, host: str) -> None:
        """Open a recording window: snapshots are unioned until it ends."""
        with self._host_lock(host):
            if host in self._windows:
                raise StoreError(f"{host}: a recording window is already open")
            self._windows[host] = _RecordingWindow(started=time.time())
        logger.info("Recording window opened for %s", host)

    def end_recording(self, host: str) -> HostInventory:
        """Close the window and return the host's merged inventory."""
        with self._host_lock(host):
            window = self._windows.pop(host, None)
            if window is None:
                raise StoreError(f"{host}: no recording window is open")
            inventory = self.get(host) or HostInventory(name=host)
        logger.info(
            "Recording window closed for %s after %d snapshot(s), %d sockets",
            host,
            window.snapshots,
            len(inventory.sockets),
        )
        return inventory

    def is_recording(self, host: str) -> bool:
        with self._host_lock(host):
            return host in self._windows

    def add_snapshot(self, snapshot: CaptureSnapshot) -> list[Diagnostic]:
        """Store an agent snapshot.

        Outside a recording window the snapshot replaces the host's record.
        Inside one, the first snapshot replaces it and later ones are unioned
        (sockets accumulate, interfaces come from the latest snapshot).
        """
        host = snapshot.host
        diagnostics: list[Diagnostic] = []
        with self._host_lock(host):
            window = self._windows.get(host)
            current = self.get(host)
            if window is None or window.snapshots == 0 or current is None:
                merged = snapshot.inventory
            else:
                merged, diagnostics = current.union_sockets(snapshot.inventory)
            if window is not None:
                window.snapshots += 1
            self._commit(merged)
        for diag in diagnostics:
            logger.warning("%s", diag)
        return diagnostics

    def snapshot(self) -> InventoryView:
        """Consistent read-only view for the correlation engine."""
        with self._lock:
            return InventoryView(self._hosts)
