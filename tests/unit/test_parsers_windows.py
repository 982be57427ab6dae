"""Tests for the Windows capture parsers."""

from __future__ import annotations

from pathlib import Path

import pytest

from sockmap.errors import ParseError
from sockmap.inventory.models import Endpoint, Protocol, SocketState
from sockmap.parsers import windows
from sockmap.parsers.base import decode_text

IPCONFIG = """\
Windows IP Configuration


Ethernet adapter Ethernet 2:

   Connection-specific DNS Suffix  . : lan
   Link-local IPv6 Address . . . . . : fe80::5c1:2b3c:4d5e:6f70%7
   IPv4 Address. . . . . . . . . . . : 192.168.1.23(Preferred)
   Subnet Mask . . . . . . . . . . . : 255.255.255.0
   Default Gateway . . . . . . . . . : 192.168.1.1
"""


class TestIp:
    def test_get_netipaddress(self, captures_dir: Path):
        result = windows.parse_ip(
            (captures_dir / "win10.windows_ip").read_text(), "win10", "win10.windows_ip"
        )
        assert result.diagnostics == []
        by_address = {i.address: i for i in result.inventory.interfaces}
        assert set(by_address) == {"fe80::1c2d:3e4f:5a6b:7c8d", "10.0.0.20", "127.0.0.1"}
        assert by_address["fe80::1c2d:3e4f:5a6b:7c8d"].scope == "12"
        assert by_address["10.0.0.20"].interface == "Ethernet"
        assert by_address["127.0.0.1"].interface == "Loopback Pseudo-Interface 1"

    def test_ipconfig(self):
        result = windows.parse_ip(IPCONFIG, "laptop")
        by_address = {i.address: i for i in result.inventory.interfaces}
        assert set(by_address) == {"fe80::5c1:2b3c:4d5e:6f70", "192.168.1.23"}
        assert by_address["192.168.1.23"].interface == "Ethernet 2"
        assert by_address["fe80::5c1:2b3c:4d5e:6f70"].scope == "7"

    def test_utf16_capture(self, captures_dir: Path):
        raw = (captures_dir / "win10.windows_ip").read_text().encode("utf-16")
        result = windows.parse_ip(decode_text(raw), "win10")
        assert "10.0.0.20" in result.inventory.addresses

    def test_nothing_found(self):
        with pytest.raises(ParseError):
            windows.parse_ip("Windows IP Configuration\n", "h")


class TestNetstat:
    @pytest.fixture
    def win10(self, captures_dir: Path):
        return windows.parse_netstat(
            (captures_dir / "win10.windows_netstat").read_text(),
            "win10",
            "win10.windows_netstat",
        )

    def test_records(self, win10):
        assert win10.diagnostics == []
        # TIME_WAIT is dropped
        assert len(win10.inventory.sockets) == 7

    def test_established_has_pid_only(self, win10):
        (ssh,) = [s for s in win10.inventory.established]
        assert ssh.local == Endpoint("10.0.0.20", 49700)
        assert ssh.foreign == Endpoint("10.0.0.13", 22)
        assert ssh.pid == 4321
        assert ssh.process_name == ""

    def test_udp_is_listening(self, win10):
        udp = [s for s in win10.inventory.sockets if s.protocol is Protocol.UDP]
        assert len(udp) == 2
        assert all(s.state is SocketState.LISTENING for s in udp)

    def test_v6_wildcard_is_v6_only(self, win10):
        v6 = [s for s in win10.inventory.listening if s.local.address == "::"]
        assert v6
        assert all(s.v6_only for s in v6)

    def test_bad_pid(self):
        text = "  Proto  Local Address  Foreign Address  State  PID\n  TCP 0.0.0.0:135 0.0.0.0:0 LISTENING abc\n"
        result = windows.parse_netstat(text, "h")
        assert result.inventory.sockets == frozenset()
        assert [d.line for d in result.diagnostics] == [2]

    def test_without_pid_column_rejected(self):
        with pytest.raises(ParseError):
            windows.parse_netstat("  Proto  Local Address  Foreign Address  State\n", "h")


class TestTasklist:
    def test_fixture(self, captures_dir: Path):
        result = windows.parse_tasklist(
            (captures_dir / "win10.windows_tasklist").read_text(), "win10"
        )
        names = {p.pid: p.name for p in result.inventory.processes}
        assert names[1100] == "svchost.exe"
        assert names[4321] == "ssh.exe"
        assert len(names) == 5

    def test_without_header(self):
        result = windows.parse_tasklist('"ssh.exe","4321","Console","1","6,000 K"\n', "h")
        assert {(p.pid, p.name) for p in result.inventory.processes} == {(4321, "ssh.exe")}

    def test_bad_pid_after_header(self):
        text = '"Image Name","PID"\n"a.exe","12"\n"b.exe","x"\n'
        result = windows.parse_tasklist(text, "h")
        assert len(result.inventory.processes) == 1
        assert [d.line for d in result.diagnostics] == [3]

    def test_table_format_rejected(self):
        text = "Image Name                     PID Session Name\n========================= ======== ==========\n"
        with pytest.raises(ParseError, match="CSV"):
            windows.parse_tasklist(text, "h")
