"""Connection graph types produced by the correlation engine."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from sockmap.errors import Diagnostic
from sockmap.inventory.models import Protocol, SocketRecord

UNKNOWN_PROCESS = "unknown"


class MatchRule(enum.Enum):
    """Why two sockets were paired, in priority order."""

    DIRECT = "direct"
    V4_MAPPED = "v4-mapped"
    UDP_MUTUAL = "udp-mutual"
    UDP_V4_MAPPED = "udp-v4-mapped"
    ACCEPTED_PEER = "accepted-peer"

    @property
    def reciprocal(self) -> bool:
        """Rules that pair two connected sockets instead of client and listener."""
        return self in (
            MatchRule.UDP_MUTUAL,
            MatchRule.UDP_V4_MAPPED,
            MatchRule.ACCEPTED_PEER,
        )


@dataclass(frozen=True, order=True)
class ProcessRef:
    host: str
    pid: int
    name: str

    @classmethod
    def of(cls, host: str, sock: SocketRecord) -> ProcessRef:
        return cls(host, sock.pid, sock.process_name or UNKNOWN_PROCESS)

    def __str__(self) -> str:
        pid = f"/{self.pid}" if self.pid else ""
        return f"{self.host}:{self.name}{pid}"


@dataclass(frozen=True)
class ConnectionEdge:
    """Client socket -> server socket, possibly on the same host."""

    client: ProcessRef
    server: ProcessRef
    client_socket: SocketRecord
    server_socket: SocketRecord
    rule: MatchRule

    @property
    def protocol(self) -> Protocol:
        return self.client_socket.protocol

    @property
    def same_host(self) -> bool:
        return self.client.host == self.server.host

    def sort_key(self) -> tuple:
        return (
            self.client.host,
            self.client_socket.sort_key(),
            self.server.host,
            self.server_socket.sort_key(),
            self.rule.value,
        )

    def to_dict(self) -> dict:
        return {
            "client": {
                "host": self.client.host,
                "pid": self.client.pid,
                "process": self.client.name,
                "socket": str(self.client_socket.local),
            },
            "server": {
                "host": self.server.host,
                "pid": self.server.pid,
                "process": self.server.name,
                "socket": str(self.server_socket.local),
            },
            "protocol": self.protocol.value,
            "rule": self.rule.value,
        }

    def __str__(self) -> str:
        return f"{self.client} -> {self.server} [{self.protocol.value}, {self.rule.value}]"


@dataclass(frozen=True, order=True)
class DanglingClient:
    """An established socket for which no peer was found in any inventory."""

    host: str
    socket: SocketRecord = field(compare=False)
    key: tuple = field(default=(), repr=False)

    @classmethod
    def of(cls, host: str, sock: SocketRecord) -> DanglingClient:
        return cls(host, sock, sock.sort_key())


@dataclass(frozen=True)
class ConnectionGraph:
    """Result of one correlation run. Read-only."""

    edges: tuple[ConnectionEdge, ...] = ()
    dangling: tuple[DanglingClient, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()

    @property
    def hosts(self) -> list[str]:
        names = {e.client.host for e in self.edges} | {e.server.host for e in self.edges}
        return sorted(names)

    @property
    def processes(self) -> list[ProcessRef]:
        refs = {e.client for e in self.edges} | {e.server for e in self.edges}
        return sorted(refs)

    def __len__(self) -> int:
        return len(self.edges)

    def to_dict(self) -> dict:
        return {
            "hosts": self.hosts,
            "processes": [
                {"host": p.host, "pid": p.pid, "name": p.name} for p in self.processes
            ],
            "edges": [e.to_dict() for e in self.edges],
            "dangling": [
                {"host": d.host, "socket": str(d.socket)} for d in self.dangling
            ],
            "diagnostics": [
                {
                    "kind": d.kind.value,
                    "severity": d.severity.value,
                    "location": d.location,
                    "message": d.message,
                }
                for d in self.diagnostics
            ],
        }
