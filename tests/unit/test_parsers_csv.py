"""Tests for the simulated-host CSV tables."""

from __future__ import annotations

from pathlib import Path

import pytest

from sockmap.errors import ParseError
from sockmap.export import write_inventory_csv
from sockmap.inventory.models import (
    Endpoint,
    HostInventory,
    InterfaceRecord,
    Protocol,
    SocketRecord,
    SocketState,
)
from sockmap.parsers.csv_ import parse_csv_pair, parse_ip_csv, parse_network_csv

HEADER = "protocol,local_socket,foreign_socket,state,pid,process_name\n"


class TestIpCsv:
    def test_fixture(self, captures_dir: Path):
        result = parse_ip_csv((captures_dir / "sim_ip.csv").read_text(), "sim")
        assert result.inventory.addresses == {"10.0.0.40"}

    def test_zone_kept_as_scope(self):
        result = parse_ip_csv("IP\nfe80::1%eth0\n", "sim")
        (interface,) = result.inventory.interfaces
        assert (interface.address, interface.scope) == ("fe80::1", "eth0")

    def test_bad_header(self):
        with pytest.raises(ParseError):
            parse_ip_csv("address\n10.0.0.1\n", "sim")

    def test_bad_row(self):
        result = parse_ip_csv("IP\nnot-an-ip\n10.0.0.1\n", "sim")
        assert result.inventory.addresses == {"10.0.0.1"}
        assert [d.line for d in result.diagnostics] == [2]


class TestNetworkCsv:
    def test_fixture(self, captures_dir: Path):
        result = parse_network_csv((captures_dir / "sim_network.csv").read_text(), "sim")
        assert result.diagnostics == []
        assert len(result.inventory.sockets) == 4
        (dnsmasq,) = [s for s in result.inventory.sockets if s.process_name == "dnsmasq"]
        assert dnsmasq.protocol is Protocol.UDP
        assert dnsmasq.dual_stack
        assert dnsmasq.foreign == Endpoint("10.0.0.11", 5353)

    def test_columns_in_any_order_and_case(self):
        text = "PID,Process_Name,Protocol,State,Local_Socket,Foreign_Socket\n7,app,tcp,,0.0.0.0:80,\n"
        result = parse_network_csv(text, "sim")
        (sock,) = result.inventory.sockets
        assert sock.state is SocketState.LISTENING
        assert (sock.pid, sock.process_name) == (7, "app")

    def test_state_derived_from_foreign(self):
        result = parse_network_csv(HEADER + "tcp,10.0.0.1:5000,10.0.0.2:22,,9,ssh\n", "sim")
        (sock,) = result.inventory.sockets
        assert sock.state is SocketState.ESTABLISHED

    @pytest.mark.parametrize(
        "row",
        [
            "tcp,10.0.0.1:5000,,ESTABLISHED,9,ssh",
            "tcp,0.0.0.0:22,10.0.0.2:5000,LISTENING,9,sshd",
            "tcp,0.0.0.0:22,,TIME_WAIT,9,sshd",
            "sctp,0.0.0.0:22,,LISTENING,9,sshd",
            "tcp,0.0.0.0:*,,LISTENING,9,sshd",
            "tcp,0.0.0.0:22,,LISTENING,x,sshd",
            "tcp,0.0.0.0:22,,LISTENING",
        ],
    )
    def test_bad_rows_are_line_errors(self, row):
        result = parse_network_csv(HEADER + row + "\ntcp,0.0.0.0:80,,LISTENING,1,web\n", "sim")
        assert len(result.inventory.sockets) == 1
        assert [d.line for d in result.diagnostics] == [2]

    def test_missing_column_rejected(self):
        with pytest.raises(ParseError):
            parse_network_csv("protocol,local_socket,state\n", "sim")


def test_pair(captures_dir: Path):
    result = parse_csv_pair(
        (captures_dir / "sim_ip.csv").read_text(),
        (captures_dir / "sim_network.csv").read_text(),
        "sim",
    )
    assert result.host == "sim"
    assert result.inventory.addresses == {"10.0.0.40"}
    assert len(result.inventory.sockets) == 4


def test_exported_tables_parse_back(tmp_path: Path):
    inventory = HostInventory(
        "lab",
        interfaces=frozenset(
            {InterfaceRecord("10.0.0.5"), InterfaceRecord("fe80::1", scope="eth0")}
        ),
        sockets=frozenset(
            {
                SocketRecord(Protocol.TCP, Endpoint("::", 80), SocketState.LISTENING,
                             v6_only=False, pid=10, process_name="nginx"),
                SocketRecord(Protocol.TCP, Endpoint("::1", 9000), SocketState.LISTENING,
                             pid=11, process_name="metrics"),
                SocketRecord(Protocol.UDP, Endpoint("10.0.0.5", 5353), SocketState.ESTABLISHED,
                             foreign=Endpoint("10.0.0.40", 53), pid=12, process_name="resolver"),
            }
        ),
    )
    ip_path, network_path = write_inventory_csv(inventory, tmp_path)
    result = parse_csv_pair(ip_path.read_text(), network_path.read_text(), "lab")

    assert result.diagnostics == []
    assert result.inventory.interfaces == inventory.interfaces
    assert result.inventory.sockets == inventory.sockets
