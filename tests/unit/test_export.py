"""Tests for the CSV and JSON writers."""

from __future__ import annotations

import csv
import json
from pathlib import Path

from sockmap.correlate import correlate
from sockmap.export import (
    CONNECTION_COLUMNS,
    write_connections_csv,
    write_graph_json,
    write_inventory_csv,
)
from sockmap.parsers import load_directory


def test_connections_csv(loaded, tmp_path: Path):
    graph = correlate(loaded.store.snapshot())
    path = write_connections_csv(graph, tmp_path / "connections.csv")

    with path.open(newline="") as f:
        rows = list(csv.reader(f))
    assert tuple(rows[0]) == CONNECTION_COLUMNS
    assert len(rows) == 1 + len(graph.edges)
    remmina = next(r for r in rows[1:] if r[2] == "Remmina-rdp")
    assert remmina == [
        "debian",
        "centos",
        "Remmina-rdp",
        "sshd",
        "4242",
        "712",
        "10.0.0.11:53293",
        "0.0.0.0:22",
        "TCP",
        "direct",
    ]
    nginx = next(r for r in rows[1:] if r[3] == "nginx")
    assert nginx[7] == "*:80"


def test_graph_json(loaded, tmp_path: Path):
    graph = correlate(loaded.store.snapshot())
    path = write_graph_json(graph, tmp_path / "graph.json")
    data = json.loads(path.read_text())
    assert data["hosts"] == ["centos", "debian", "printer", "sim", "win10"]
    assert len(data["edges"]) == 7
    assert data["dangling"][0]["host"] == "debian"
    assert data["diagnostics"][0]["kind"] == "dangling-client"


def test_inventory_csv_reloads_to_same_graph(loaded, tmp_path: Path):
    view = loaded.store.snapshot()
    for inventory in view.inventories:
        write_inventory_csv(inventory, tmp_path)

    reloaded = load_directory(tmp_path)
    assert reloaded.diagnostics == []
    assert reloaded.store.hosts() == list(view)
    for name in view:
        assert reloaded.store.get(name).sockets == view[name].sockets
    assert correlate(reloaded.store.snapshot()).edges == correlate(view).edges


def test_inventory_csv_names(tmp_path: Path, loaded):
    ip_path, network_path = write_inventory_csv(loaded.store.get("centos"), tmp_path / "out")
    assert ip_path.name == "centos_ip.csv"
    assert network_path.name == "centos_network.csv"
    assert ip_path.read_text().splitlines()[0] == "IP"
