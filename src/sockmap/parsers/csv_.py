"""Parser for the hand-authored CSV table pair of a simulated host.

``<host>_ip.csv`` has a single ``IP`` column. ``<host>_network.csv`` has the
columns in :data:`NETWORK_COLUMNS`; sockets are ``IP:port`` with IPv6
literals bracketed, ``*:port`` being the dual-stack IPv6 wildcard.
"""

from __future__ import annotations

import csv
import logging

from sockmap.inventory.addresses import normalize_address, parse_endpoint
from sockmap.inventory.models import (
    Endpoint,
    InterfaceRecord,
    Protocol,
    SocketRecord,
    SocketState,
)
from sockmap.parsers.base import LineCollector, ParseResult

logger = logging.getLogger(__name__)

IP_COLUMNS = ("IP",)
NETWORK_COLUMNS = (
    "protocol",
    "local_socket",
    "foreign_socket",
    "state",
    "pid",
    "process_name",
)


def _rows(text: str) -> list[tuple[int, list[str]]]:
    lines = text.splitlines()
    return [
        (line_no, row)
        for line_no, row in enumerate(csv.reader(lines), start=1)
        if row and any(cell.strip() for cell in row)
    ]


def parse_ip_csv(text: str, host: str, source: str = "") -> ParseResult:
    out = LineCollector(host, source)
    rows = _rows(text)
    if not rows:
        return out.result()

    header_no, header = rows[0]
    if [cell.strip().lower() for cell in header] != ["ip"]:
        raise out.fail(f"expected a single 'IP' column, got {header!r}", header_no)

    for line_no, row in rows[1:]:
        if len(row) != 1:
            out.error(line_no, f"expected 1 column, got {len(row)}")
            continue
        try:
            address, zone = normalize_address(row[0])
        except ValueError:
            out.error(line_no, f"bad address {row[0].strip()!r}")
            continue
        out.interfaces.append(InterfaceRecord(address, scope=zone))

    return out.result()


def parse_network_csv(text: str, host: str, source: str = "") -> ParseResult:
    out = LineCollector(host, source)
    rows = _rows(text)
    if not rows:
        return out.result()

    header_no, header = rows[0]
    names = [cell.strip().lower() for cell in header]
    if sorted(names) != sorted(NETWORK_COLUMNS):
        raise out.fail(
            f"expected columns {', '.join(NETWORK_COLUMNS)}, got {', '.join(names)}",
            header_no,
        )
    index = {name: i for i, name in enumerate(names)}

    for line_no, row in rows[1:]:
        if len(row) != len(NETWORK_COLUMNS):
            out.error(line_no, f"expected {len(NETWORK_COLUMNS)} columns, got {len(row)}")
            continue
        cell = {name: row[i].strip() for name, i in index.items()}
        try:
            record = _network_record(cell)
        except ValueError as exc:
            out.error(line_no, str(exc))
            continue
        out.sockets.append(record)

    return out.result()


def _network_record(cell: dict[str, str]) -> SocketRecord:
    protocol = Protocol.parse(cell["protocol"])

    local = parse_endpoint(cell["local_socket"])
    if local.port is None:
        raise ValueError(f"local socket {cell['local_socket']!r} has no port")

    foreign = Endpoint.parse(cell["foreign_socket"]) if cell["foreign_socket"] else None
    raw_state = cell["state"].upper()
    if not raw_state:
        state = SocketState.ESTABLISHED if foreign else SocketState.LISTENING
    elif raw_state in ("LISTENING", "ESTABLISHED"):
        state = SocketState(raw_state)
    else:
        raise ValueError(f"state must be LISTENING or ESTABLISHED, got {cell['state']!r}")
    if state is SocketState.ESTABLISHED and foreign is None:
        raise ValueError("ESTABLISHED socket without a foreign_socket")
    if state is SocketState.LISTENING and foreign is not None:
        raise ValueError("LISTENING socket with a foreign_socket")

    pid_text = cell["pid"] or "0"
    if not pid_text.isdigit():
        raise ValueError(f"bad pid {cell['pid']!r}")

    return SocketRecord(
        protocol=protocol,
        local=Endpoint(local.address, local.port),
        state=state,
        foreign=foreign,
        v6_only=not local.dual_stack,
        pid=int(pid_text),
        process_name=cell["process_name"],
    )


def parse_csv_pair(
    ip_text: str,
    network_text: str,
    host: str,
    ip_source: str = "",
    network_source: str = "",
) -> ParseResult:
    """Parse both tables of one host into a single inventory."""
    ips = parse_ip_csv(ip_text, host, ip_source)
    network = parse_network_csv(network_text, host, network_source)
    merged, diagnostics = ips.inventory.merge(network.inventory)
    return ParseResult(merged, ips.diagnostics + network.diagnostics + diagnostics)
