"""Canonical model — immutable dataclasses used across the entire codebase.

Everything downstream of the parsers and the live agents operates only on
these types. Inventories are immutable values; merging returns a new one.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field, replace

from sockmap.errors import Diagnostic, MergeConflict
from sockmap.inventory.addresses import (
    Family,
    family_of,
    format_endpoint,
    is_loopback,
    is_wildcard,
    parse_endpoint,
)

__all__ = [
    "CaptureSnapshot",
    "Endpoint",
    "Family",
    "HostInventory",
    "InterfaceRecord",
    "ProcessRecord",
    "Protocol",
    "SocketRecord",
    "SocketState",
]


class Protocol(enum.Enum):
    TCP = "tcp"
    UDP = "udp"

    @classmethod
    def parse(cls, text: str) -> Protocol:
        """Case-insensitive, accepts the ``tcp6``/``udp6`` netstat spelling."""
        return cls(text.strip().lower().rstrip("6"))


class SocketState(enum.Enum):
    """LISTENING also covers bound-but-unconnected UDP sockets."""

    LISTENING = "LISTENING"
    ESTABLISHED = "ESTABLISHED"


@dataclass(frozen=True)
class Endpoint:
    """An (address, port) pair. The address is normalized, zone-less text."""

    address: str
    port: int

    @classmethod
    def parse(cls, text: str) -> Endpoint:
        parsed = parse_endpoint(text)
        if parsed.port is None:
            raise ValueError(f"endpoint {text!r} has no port")
        return cls(parsed.address, parsed.port)

    @property
    def family(self) -> Family:
        return family_of(self.address)

    @property
    def is_wildcard(self) -> bool:
        return is_wildcard(self.address)

    @property
    def is_loopback(self) -> bool:
        return is_loopback(self.address)

    def __str__(self) -> str:
        return format_endpoint(self.address, self.port)


@dataclass(frozen=True)
class InterfaceRecord:
    """One address configured on a host. Link-local IPv6 keeps its zone."""

    address: str
    scope: str = ""
    interface: str = ""

    @property
    def family(self) -> Family:
        return family_of(self.address)


@dataclass(frozen=True)
class ProcessRecord:
    """A pid→name fact, e.g. from a Windows ``tasklist`` capture."""

    pid: int
    name: str


@dataclass(frozen=True)
class SocketRecord:
    """A listening or established socket and the process that owns it.

    ``pid`` 0 and an empty ``process_name`` mean unknown (handed-over sockets,
    captures made without root).
    """

    protocol: Protocol
    local: Endpoint
    state: SocketState
    foreign: Endpoint | None = None
    v6_only: bool = True
    pid: int = 0
    process_name: str = ""

    def __post_init__(self) -> None:
        if self.state is SocketState.LISTENING and self.foreign is not None:
            raise ValueError(f"listening socket {self.local} has a foreign endpoint")
        if self.state is SocketState.ESTABLISHED and self.foreign is None:
            raise ValueError(f"established socket {self.local} has no foreign endpoint")

    @property
    def family(self) -> Family:
        return self.local.family

    @property
    def is_listening(self) -> bool:
        return self.state is SocketState.LISTENING

    @property
    def dual_stack(self) -> bool:
        """An IPv6 socket that also accepts IPv4-mapped clients."""
        return self.family is Family.V6 and not self.v6_only

    def sort_key(self) -> tuple:
        foreign = (
            (self.foreign.address, self.foreign.port) if self.foreign else ("", -1)
        )
        return (
            self.protocol.value,
            self.state.value,
            self.local.address,
            self.local.port,
            *foreign,
            self.pid,
            self.process_name,
            self.v6_only,
        )

    def __str__(self) -> str:
        local = format_endpoint(self.local.address, self.local.port, self.dual_stack)
        peer = f" -> {self.foreign}" if self.foreign else ""
        owner = self.process_name or "?"
        return f"{self.protocol.value} {local}{peer} ({owner}/{self.pid})"


@dataclass(frozen=True)
class HostInventory:
    """All interfaces, sockets and known processes of one host."""

    name: str
    interfaces: frozenset[InterfaceRecord] = frozenset()
    sockets: frozenset[SocketRecord] = frozenset()
    processes: frozenset[ProcessRecord] = frozenset()

    @property
    def listening(self) -> list[SocketRecord]:
        return sorted(
            (s for s in self.sockets if s.is_listening), key=SocketRecord.sort_key
        )

    @property
    def established(self) -> list[SocketRecord]:
        return sorted(
            (s for s in self.sockets if not s.is_listening), key=SocketRecord.sort_key
        )

    @property
    def addresses(self) -> set[str]:
        return {i.address for i in self.interfaces}

    def merge(self, other: HostInventory) -> tuple[HostInventory, list[Diagnostic]]:
        """Union with another partial inventory of the same host.

        Process names learned from either side fill in sockets that only had
        a pid. When both sides name the same pid differently, ``other`` wins
        and a merge-conflict diagnostic is returned.
        """
        if other.name != self.name:
            raise ValueError(f"cannot merge {other.name!r} into {self.name!r}")

        names = _process_names(self)
        diagnostics: list[Diagnostic] = []
        for pid, name in sorted(_process_names(other).items()):
            old = names.get(pid)
            if old and old != name:
                diagnostics.append(MergeConflict(self.name, pid, old, name).diagnostic())
            names[pid] = name

        merged = HostInventory(
            name=self.name,
            interfaces=self.interfaces | other.interfaces,
            sockets=_enrich(self.sockets | other.sockets, names),
            processes=frozenset(ProcessRecord(p, n) for p, n in names.items()),
        )
        return merged, diagnostics

    def union_sockets(
        self, other: HostInventory
    ) -> tuple[HostInventory, list[Diagnostic]]:
        """Recorder-mode merge: union of sockets, interfaces from ``other``."""
        merged, diagnostics = self.merge(replace(other, interfaces=frozenset()))
        return replace(merged, interfaces=other.interfaces), diagnostics

    def exclude_processes(self, prefixes: tuple[str, ...] | list[str]) -> HostInventory:
        """Drop sockets owned by processes whose name starts with a prefix."""
        if not prefixes:
            return self
        kept = frozenset(
            s
            for s in self.sockets
            if not any(s.process_name.startswith(p) for p in prefixes)
        )
        return replace(self, sockets=kept)


@dataclass(frozen=True)
class CaptureSnapshot:
    """A host inventory as reported by a live agent at one instant."""

    inventory: HostInventory
    timestamp: float = field(default_factory=time.time)
    final: bool = False

    @property
    def host(self) -> str:
        return self.inventory.name


def _process_names(inventory: HostInventory) -> dict[int, str]:
    names: dict[int, str] = {}
    for sock in sorted(inventory.sockets, key=SocketRecord.sort_key):
        if sock.pid and sock.process_name:
            names.setdefault(sock.pid, sock.process_name)
    # Explicit process lists are authoritative over names seen on sockets
    for proc in inventory.processes:
        if proc.pid and proc.name:
            names[proc.pid] = proc.name
    return names


def _enrich(
    sockets: frozenset[SocketRecord], names: dict[int, str]
) -> frozenset[SocketRecord]:
    enriched = set()
    for sock in sockets:
        name = names.get(sock.pid) if sock.pid else None
        if name and name != sock.process_name:
            sock = replace(sock, process_name=name)
        enriched.add(sock)
    return frozenset(enriched)
