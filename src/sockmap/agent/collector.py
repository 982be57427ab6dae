"""Local socket/interface collection for the live agent.

``CommandCollector`` runs the same commands an operator would capture by hand
and feeds their output to the format parsers. ``PsutilCollector`` works where
those commands are missing (macOS, Windows, minimal containers).
"""

from __future__ import annotations

import logging
import os
import shutil
import socket
import subprocess
import sys
from typing import Protocol, runtime_checkable

import psutil

from sockmap.errors import Diagnostic, ParseError
from sockmap.inventory.addresses import normalize_address
from sockmap.inventory.models import (
    Endpoint,
    HostInventory,
    InterfaceRecord,
    Protocol as SocketProtocol,
    SocketRecord,
    SocketState,
)
from sockmap.parsers import linux
from sockmap.parsers.base import ParseResult

logger = logging.getLogger(__name__)

_PROTO_MAP = {
    socket.SOCK_STREAM: SocketProtocol.TCP,
    socket.SOCK_DGRAM: SocketProtocol.UDP,
}


@runtime_checkable
class Collector(Protocol):
    """Anything that can take an inventory of the local host."""

    def collect(self, hostname: str) -> HostInventory:
        """Return the current interfaces and sockets of this machine."""
        ...


class CommandCollector:
    """Runs ``ip address`` and ``ss -apn`` (or ``netstat -tulpn``) with LC_ALL=C."""

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout
        self.diagnostics: list[Diagnostic] = []

    def _run(self, args: list[str]) -> str | None:
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env={**os.environ, "LC_ALL": "C"},
            )
        except (subprocess.TimeoutExpired, FileNotFoundError) as exc:
            logger.debug("Cannot run %s: %s", args[0], exc)
            return None
        if result.returncode != 0:
            logger.debug(
                "%s exited with %d: %s", args[0], result.returncode, result.stderr.strip()
            )
            return None
        return result.stdout

    def _parse(self, parser, text: str, hostname: str, source: str) -> HostInventory:
        try:
            parsed: ParseResult = parser(text, hostname, source)
        except ParseError as exc:
            logger.warning("%s", exc)
            self.diagnostics.append(exc.diagnostic())
            return HostInventory(name=hostname)
        self.diagnostics.extend(parsed.diagnostics)
        return parsed.inventory

    def collect(self, hostname: str) -> HostInventory:
        self.diagnostics = []
        inventory = HostInventory(name=hostname)

        ip_text = self._run(["ip", "address"])
        if ip_text is not None:
            inventory = self._parse(linux.parse_ip_address, ip_text, hostname, "ip address")
        else:
            logger.warning("`ip address` unavailable; no interfaces collected")

        ss_text = self._run(["ss", "-apn"])
        if ss_text is not None:
            sockets = self._parse(linux.parse_ss, ss_text, hostname, "ss -apn")
        else:
            netstat_text = self._run(["netstat", "-tulpn"])
            if netstat_text is None:
                logger.warning("Neither ss nor netstat is available; no sockets collected")
                return inventory
            sockets = self._parse(
                linux.parse_netstat, netstat_text, hostname, "netstat -tulpn"
            )

        merged, conflicts = inventory.merge(sockets)
        self.diagnostics.extend(conflicts)
        return merged


class PsutilCollector:
    """Collects through ``psutil.net_if_addrs`` and ``psutil.net_connections``."""

    def __init__(self) -> None:
        self._names: dict[int, str] = {}

    def _process_name(self, pid: int | None) -> str:
        if not pid:
            return ""
        if pid not in self._names:
            try:
                self._names[pid] = psutil.Process(pid).name()
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                self._names[pid] = ""
        return self._names[pid]

    def interfaces(self) -> list[InterfaceRecord]:
        records = []
        for name, addrs in psutil.net_if_addrs().items():
            for addr in addrs:
                if addr.family not in (socket.AF_INET, socket.AF_INET6):
                    continue
                try:
                    address, zone = normalize_address(addr.address)
                except ValueError:
                    logger.debug("Skipping address %r of %s", addr.address, name)
                    continue
                scope = (zone or name) if address.startswith("fe80:") else ""
                records.append(InterfaceRecord(address, scope, name))
        return records

    def sockets(self) -> list[SocketRecord]:
        try:
            conns = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            logger.warning("Not allowed to list sockets; run the agent as root")
            return []

        records = []
        for conn in conns:
            protocol = _PROTO_MAP.get(conn.type)
            if protocol is None or not conn.laddr:
                continue
            if protocol is SocketProtocol.TCP:
                if conn.status == psutil.CONN_LISTEN:
                    state = SocketState.LISTENING
                elif conn.status == psutil.CONN_ESTABLISHED:
                    state = SocketState.ESTABLISHED
                else:
                    continue
            else:
                state = SocketState.ESTABLISHED if conn.raddr else SocketState.LISTENING

            try:
                local_ip, _ = normalize_address(conn.laddr.ip)
                foreign = None
                if state is SocketState.ESTABLISHED:
                    remote_ip, _ = normalize_address(conn.raddr.ip)
                    foreign = Endpoint(remote_ip, conn.raddr.port)
            except ValueError:
                logger.debug("Skipping connection with bad address: %r", conn)
                continue

            records.append(
                SocketRecord(
                    protocol=protocol,
                    local=Endpoint(local_ip, conn.laddr.port),
                    state=state,
                    foreign=foreign,
                    pid=conn.pid or 0,
                    process_name=self._process_name(conn.pid),
                )
            )
        return records

    def collect(self, hostname: str) -> HostInventory:
        self._names.clear()
        return HostInventory(
            name=hostname,
            interfaces=frozenset(self.interfaces()),
            sockets=frozenset(self.sockets()),
        )


def default_collector() -> Collector:
    """Command collector on Linux when ss or netstat exists, psutil otherwise."""
    if sys.platform.startswith("linux") and (
        shutil.which("ss") or shutil.which("netstat")
    ):
        return CommandCollector()
    return PsutilCollector()


def check_privileges() -> bool:
    """True when process ownership of every socket is visible to us."""
    if not hasattr(os, "geteuid"):
        return True
    return os.geteuid() == 0
