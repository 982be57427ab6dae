"""Writers for inventories and connection graphs.

``write_inventory_csv`` produces the same table pair that
:mod:`sockmap.parsers.csv_` reads, so a re-parsed export yields the same
interfaces and sockets.
"""

from __future__ import annotations

import csv
import json
import logging
from pathlib import Path

from sockmap.correlate.models import ConnectionGraph
from sockmap.inventory.addresses import format_endpoint
from sockmap.inventory.models import HostInventory, SocketRecord
from sockmap.parsers.csv_ import IP_COLUMNS, NETWORK_COLUMNS

logger = logging.getLogger(__name__)

CONNECTION_COLUMNS = (
    "Source host",
    "Dest host",
    "Source process",
    "Dest process",
    "Source PID",
    "Dest PID",
    "Source process socket",
    "Dest process socket",
    "Protocol",
    "Rule",
)


def _local_socket(sock: SocketRecord) -> str:
    return format_endpoint(sock.local.address, sock.local.port, sock.dual_stack)


def write_inventory_csv(inventory: HostInventory, directory: str | Path) -> tuple[Path, Path]:
    """Write ``<host>_ip.csv`` and ``<host>_network.csv`` into ``directory``."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    ip_path = directory / f"{inventory.name}_ip.csv"
    network_path = directory / f"{inventory.name}_network.csv"

    with ip_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(IP_COLUMNS)
        for interface in sorted(inventory.interfaces, key=lambda i: i.address):
            zone = f"%{interface.scope}" if interface.scope else ""
            writer.writerow([f"{interface.address}{zone}"])

    with network_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(NETWORK_COLUMNS)
        for sock in inventory.listening + inventory.established:
            writer.writerow(
                [
                    sock.protocol.value,
                    _local_socket(sock),
                    str(sock.foreign) if sock.foreign else "",
                    sock.state.value,
                    sock.pid,
                    sock.process_name,
                ]
            )

    logger.info("Wrote %s and %s", ip_path, network_path)
    return ip_path, network_path


def write_connections_csv(graph: ConnectionGraph, path: str | Path) -> Path:
    """One row per edge, client first."""
    path = Path(path)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(CONNECTION_COLUMNS)
        for edge in graph.edges:
            writer.writerow(
                [
                    edge.client.host,
                    edge.server.host,
                    edge.client.name,
                    edge.server.name,
                    edge.client.pid,
                    edge.server.pid,
                    _local_socket(edge.client_socket),
                    _local_socket(edge.server_socket),
                    edge.protocol.value.upper(),
                    edge.rule.value,
                ]
            )
    logger.info("Wrote %d connection(s) to %s", len(graph.edges), path)
    return path


def write_graph_json(graph: ConnectionGraph, path: str | Path) -> Path:
    path = Path(path)
    path.write_text(json.dumps(graph.to_dict(), indent=2) + "\n", encoding="utf-8")
    logger.info("Wrote graph JSON to %s", path)
    return path
