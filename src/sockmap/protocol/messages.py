"""Live collection wire messages and framing.

Every message is one frame: a 4-byte big-endian length followed by a UTF-8
JSON object ``{"type": <name>, "data": {...}}``. There is no authentication
or encryption; run agents over a trusted network path (e.g. a VPN).
"""

from __future__ import annotations

import enum
import json
import socket
import struct
from dataclasses import dataclass, field
from typing import ClassVar, Union

from sockmap.errors import ProtocolDecodeError
from sockmap.inventory.addresses import format_endpoint, normalize_address
from sockmap.inventory.models import (
    CaptureSnapshot,
    Endpoint,
    HostInventory,
    InterfaceRecord,
    ProcessRecord,
    Protocol,
    SocketRecord,
    SocketState,
)

MAX_FRAME = 16 * 1024 * 1024
_LENGTH = struct.Struct(">I")


class CaptureMode(enum.Enum):
    SINGLE = "single"
    START_RECORD = "start-record"
    STOP_RECORD = "stop-record"


@dataclass
class Register:
    """First message of an agent: who it is."""

    TYPE: ClassVar[str] = "register"

    hostname: str
    pretty_name: str = ""
    addresses: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "hostname": self.hostname,
            "pretty_name": self.pretty_name,
            "addresses": list(self.addresses),
        }

    @classmethod
    def from_dict(cls, d: dict) -> Register:
        hostname = str(d["hostname"]).strip()
        if not hostname:
            raise ValueError("empty hostname")
        return cls(
            hostname=hostname,
            pretty_name=str(d.get("pretty_name", "")),
            addresses=[normalize_address(str(a))[0] for a in d.get("addresses", [])],
        )


@dataclass
class CaptureRequest:
    TYPE: ClassVar[str] = "capture-request"

    mode: CaptureMode
    interval: float = 1.0

    def to_dict(self) -> dict:
        return {"mode": self.mode.value, "interval": self.interval}

    @classmethod
    def from_dict(cls, d: dict) -> CaptureRequest:
        return cls(mode=CaptureMode(d["mode"]), interval=float(d.get("interval", 1.0)))


@dataclass
class SnapshotMessage:
    """A CaptureSnapshot on the wire. ``final`` closes a recording."""

    TYPE: ClassVar[str] = "capture-snapshot"

    snapshot: CaptureSnapshot

    def to_dict(self) -> dict:
        inventory = self.snapshot.inventory
        return {
            "host": inventory.name,
            "interfaces": [
                interface_to_dict(i)
                for i in sorted(inventory.interfaces, key=lambda i: i.address)
            ],
            "sockets": [
                socket_to_dict(s)
                for s in sorted(inventory.sockets, key=SocketRecord.sort_key)
            ],
            "processes": [
                {"pid": p.pid, "name": p.name}
                for p in sorted(inventory.processes, key=lambda p: p.pid)
            ],
            "timestamp": self.snapshot.timestamp,
            "final": self.snapshot.final,
        }

    @classmethod
    def from_dict(cls, d: dict) -> SnapshotMessage:
        inventory = HostInventory(
            name=str(d["host"]),
            interfaces=frozenset(interface_from_dict(i) for i in d["interfaces"]),
            sockets=frozenset(socket_from_dict(s) for s in d["sockets"]),
            processes=frozenset(
                ProcessRecord(int(p["pid"]), str(p["name"]))
                for p in d.get("processes", [])
            ),
        )
        return cls(
            CaptureSnapshot(
                inventory,
                timestamp=float(d["timestamp"]),
                final=bool(d.get("final", False)),
            )
        )


@dataclass
class Exit:
    """Either side is going away."""

    TYPE: ClassVar[str] = "exit"

    def to_dict(self) -> dict:
        return {}

    @classmethod
    def from_dict(cls, d: dict) -> Exit:
        return cls()


Message = Union[Register, CaptureRequest, SnapshotMessage, Exit]

MESSAGE_TYPES: dict[str, type] = {
    cls.TYPE: cls for cls in (Register, CaptureRequest, SnapshotMessage, Exit)
}


def interface_to_dict(interface: InterfaceRecord) -> dict:
    return {
        "address": interface.address,
        "scope": interface.scope,
        "interface": interface.interface,
    }


def interface_from_dict(d: dict) -> InterfaceRecord:
    address, zone = normalize_address(str(d["address"]))
    return InterfaceRecord(
        address=address,
        scope=str(d.get("scope") or zone),
        interface=str(d.get("interface", "")),
    )


def socket_to_dict(sock: SocketRecord) -> dict:
    return {
        "protocol": sock.protocol.value,
        "local": format_endpoint(sock.local.address, sock.local.port),
        "foreign": str(sock.foreign) if sock.foreign else None,
        "state": sock.state.value,
        "v6_only": sock.v6_only,
        "pid": sock.pid,
        "process": sock.process_name,
    }


def socket_from_dict(d: dict) -> SocketRecord:
    foreign = d.get("foreign")
    return SocketRecord(
        protocol=Protocol(d["protocol"]),
        local=Endpoint.parse(d["local"]),
        state=SocketState(d["state"]),
        foreign=Endpoint.parse(foreign) if foreign else None,
        v6_only=bool(d.get("v6_only", True)),
        pid=int(d.get("pid", 0)),
        process_name=str(d.get("process", "")),
    )


def encode(message: Message) -> bytes:
    body = json.dumps(
        {"type": message.TYPE, "data": message.to_dict()}, separators=(",", ":")
    ).encode("utf-8")
    if len(body) > MAX_FRAME:
        raise ValueError(f"{message.TYPE} message of {len(body)} bytes exceeds frame limit")
    return _LENGTH.pack(len(body)) + body


def decode(body: bytes, peer: str = "") -> Message:
    """Decode one frame body. Raises ProtocolDecodeError on anything malformed."""
    try:
        envelope = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolDecodeError(f"bad JSON frame: {exc}", peer) from exc
    if not isinstance(envelope, dict) or not isinstance(envelope.get("data"), dict):
        raise ProtocolDecodeError("frame is not a {type, data} object", peer)

    cls = MESSAGE_TYPES.get(envelope.get("type"))
    if cls is None:
        raise ProtocolDecodeError(f"unknown message type {envelope.get('type')!r}", peer)
    try:
        return cls.from_dict(envelope["data"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ProtocolDecodeError(f"bad {cls.TYPE} message: {exc!r}", peer) from exc


def _recv_exactly(sock: socket.socket, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = sock.recv(min(remaining, 65536))
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_message(sock: socket.socket, peer: str = "") -> Message | None:
    """Block until one message arrives. Returns None on a clean end of stream."""
    header = _recv_exactly(sock, _LENGTH.size)
    if not header:
        return None
    if len(header) < _LENGTH.size:
        raise ProtocolDecodeError("connection closed inside a frame header", peer)
    (length,) = _LENGTH.unpack(header)
    if length > MAX_FRAME:
        raise ProtocolDecodeError(f"frame of {length} bytes exceeds the limit", peer)
    body = _recv_exactly(sock, length)
    if len(body) < length:
        raise ProtocolDecodeError("connection closed inside a frame", peer)
    return decode(body, peer)


def write_message(sock: socket.socket, message: Message) -> None:
    sock.sendall(encode(message))
