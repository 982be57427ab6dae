"""Tests for the Linux capture parsers."""

from __future__ import annotations

from pathlib import Path

import pytest

from sockmap.errors import ParseError, Severity
from sockmap.inventory.models import Endpoint, Protocol, SocketState
from sockmap.parsers import linux


def _by_port(result, port: int):
    return [s for s in result.inventory.sockets if s.local.port == port]


class TestIpAddress:
    def test_fixture(self, captures_dir: Path):
        result = linux.parse_ip_address(
            (captures_dir / "centos.linux_ip").read_text(), "centos", "centos.linux_ip"
        )
        assert result.diagnostics == []
        assert result.inventory.addresses == {
            "127.0.0.1",
            "::1",
            "10.0.0.13",
            "fe80::a00:27ff:fe3a:1b2c",
        }
        by_address = {i.address: i for i in result.inventory.interfaces}
        assert by_address["10.0.0.13"].interface == "enp0s3"
        assert by_address["fe80::a00:27ff:fe3a:1b2c"].scope == "enp0s3"
        assert by_address["::1"].scope == ""

    def test_veth_suffix_stripped(self, captures_dir: Path):
        result = linux.parse_ip_address(
            (captures_dir / "debian.linux_ip").read_text(), "debian"
        )
        interfaces = {i.interface for i in result.inventory.interfaces}
        assert interfaces == {"lo", "eth0"}

    def test_bad_address_is_line_error(self):
        text = "2: eth0: <UP>\n    inet 10.0.0.300/24 scope global eth0\n    inet 10.0.0.5/24 scope global eth0\n"
        result = linux.parse_ip_address(text, "h", "h.linux_ip")
        assert result.inventory.addresses == {"10.0.0.5"}
        (diag,) = result.diagnostics
        assert diag.line == 2
        assert diag.severity is Severity.ERROR

    def test_not_ip_output(self):
        with pytest.raises(ParseError):
            linux.parse_ip_address("hello world\n", "h")

    def test_empty_file(self):
        result = linux.parse_ip_address("", "h")
        assert result.inventory.interfaces == frozenset()


class TestSs:
    @pytest.fixture
    def centos(self, captures_dir: Path):
        return linux.parse_ss(
            (captures_dir / "centos.linux_ss").read_text(), "centos", "centos.linux_ss"
        )

    def test_only_tcp_and_udp_kept(self, centos):
        assert len(centos.inventory.sockets) == 8
        assert centos.diagnostics == []

    def test_listener(self, centos):
        (sshd,) = [s for s in _by_port(centos, 22) if s.is_listening]
        assert sshd.local == Endpoint("0.0.0.0", 22)
        assert sshd.pid == 712
        assert sshd.process_name == "sshd"

    def test_dual_stack_wildcard(self, centos):
        (nginx,) = _by_port(centos, 80)
        assert nginx.local.address == "::"
        assert nginx.dual_stack
        assert nginx.pid == 900

    def test_established(self, centos):
        (curl,) = _by_port(centos, 40000)
        assert curl.state is SocketState.ESTABLISHED
        assert curl.foreign == Endpoint("127.0.0.1", 631)

    def test_udp_unconn_is_listening(self, centos):
        (dhclient,) = _by_port(centos, 68)
        assert dhclient.protocol is Protocol.UDP
        assert dhclient.state is SocketState.LISTENING
        assert dhclient.foreign is None

    def test_zone_stripped(self, centos):
        (resolver,) = _by_port(centos, 53)
        assert resolver.local.address == "127.0.0.53"

    def test_time_wait_skipped(self, centos):
        assert not [s for s in centos.inventory.sockets if s.local.port == 22 and s.foreign
                    and s.foreign.address == "10.0.0.20"]

    def test_missing_process_warns_once(self):
        text = (
            "Netid State Recv-Q Send-Q Local Address:Port Peer Address:Port Process\n"
            "tcp LISTEN 0 128 0.0.0.0:22 0.0.0.0:*\n"
            "tcp LISTEN 0 128 0.0.0.0:80 0.0.0.0:*\n"
        )
        result = linux.parse_ss(text, "h", "h.ss")
        assert len(result.inventory.sockets) == 2
        assert all(s.pid == 0 for s in result.inventory.sockets)
        (diag,) = result.diagnostics
        assert diag.severity is Severity.WARNING

    def test_bad_endpoint_is_line_error(self):
        text = (
            "Netid State Recv-Q Send-Q Local Address:Port Peer Address:Port Process\n"
            "tcp LISTEN 0 128 nonsense 0.0.0.0:* users:((\"x\",pid=1,fd=3))\n"
            "tcp LISTEN 0 128 0.0.0.0:22 0.0.0.0:* users:((\"sshd\",pid=712,fd=3))\n"
        )
        result = linux.parse_ss(text, "h", "h.ss")
        assert len(result.inventory.sockets) == 1
        assert [d.line for d in result.diagnostics] == [2]

    def test_without_netid_column_rejected(self):
        text = "State Recv-Q Send-Q Local Address:Port Peer Address:Port\nLISTEN 0 128 0.0.0.0:22 0.0.0.0:*\n"
        with pytest.raises(ParseError, match="Netid"):
            linux.parse_ss(text, "h", "h.ss")

    def test_not_ss_output(self):
        with pytest.raises(ParseError):
            linux.parse_ss("Proto Recv-Q Send-Q Local Address\n", "h")


class TestNetstat:
    @pytest.fixture
    def debian(self, captures_dir: Path):
        return linux.parse_netstat(
            (captures_dir / "debian.linux_netstat").read_text(),
            "debian",
            "debian.linux_netstat",
        )

    def test_records(self, debian):
        assert debian.diagnostics == []
        assert len(debian.inventory.sockets) == 9

    def test_program_name(self, debian):
        (remmina,) = _by_port(debian, 53293)
        assert remmina.pid == 4242
        assert remmina.process_name == "Remmina-rdp"
        assert remmina.foreign == Endpoint("10.0.0.13", 22)

    def test_tcp6_is_v6_only(self, debian):
        (listener,) = [s for s in _by_port(debian, 111) if s.protocol is Protocol.TCP
                       and s.local.address == "::"]
        assert listener.v6_only
        assert not listener.dual_stack

    def test_udp_states(self, debian):
        (resolver,) = _by_port(debian, 5353)
        assert resolver.state is SocketState.ESTABLISHED
        (dhclient,) = _by_port(debian, 68)
        assert dhclient.state is SocketState.LISTENING

    def test_without_pid_column_rejected(self):
        text = "Proto Recv-Q Send-Q Local Address Foreign Address State\n"
        with pytest.raises(ParseError, match="PID"):
            linux.parse_netstat(text, "h")

    def test_dash_process_warns(self):
        text = (
            "Proto Recv-Q Send-Q Local Address Foreign Address State PID/Program name\n"
            "tcp 0 0 0.0.0.0:22 0.0.0.0:* LISTEN -\n"
        )
        result = linux.parse_netstat(text, "h")
        (sock,) = result.inventory.sockets
        assert sock.pid == 0
        assert len(result.diagnostics) == 1

    def test_short_line(self):
        text = "Proto Recv-Q Send-Q Local Address Foreign Address State PID/Program name\ntcp 0 0\n"
        result = linux.parse_netstat(text, "h")
        assert [d.line for d in result.diagnostics] == [2]
