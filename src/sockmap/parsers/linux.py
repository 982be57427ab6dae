"""Parsers for Linux capture output: ``ip address``, ``ss -apn``, ``netstat -tulpn``.

Captures are expected to be made with ``LC_ALL=C`` so that headers and state
names are the untranslated English ones.
"""

from __future__ import annotations

import logging
import re

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

_IFACE_HEADER = re.compile(r"^\d+:\s+([^:@\s]+)")
_INET_LINE = re.compile(r"^\s*(inet6?)\s+(\S+)")
_SS_PROCESS = re.compile(r'users:\(\("(?P<name>[^"]*)",pid=(?P<pid>\d+)')
_NETSTAT_STATE = re.compile(r"^[A-Z][A-Z0-9_]*$")

# Netids printed by ``ss -a``; only tcp and udp are inventoried
_SS_NETIDS = frozenset(
    {
        "tcp",
        "udp",
        "raw",
        "nl",
        "p_raw",
        "p_dgr",
        "u_str",
        "u_dgr",
        "u_seq",
        "v_str",
        "v_dgr",
        "icmp6",
        "sctp",
        "mptcp",
        "tipc",
        "xdp",
    }
)

_SS_STATES = {
    (Protocol.TCP, "LISTEN"): SocketState.LISTENING,
    (Protocol.TCP, "ESTAB"): SocketState.ESTABLISHED,
    (Protocol.UDP, "UNCONN"): SocketState.LISTENING,
    (Protocol.UDP, "ESTAB"): SocketState.ESTABLISHED,
}

_NO_PROCESS_WARNING = (
    "some sockets have no owning process; this is normal for some lines but "
    "usually means the capture was not made as root"
)


def parse_ip_address(text: str, host: str, source: str = "") -> ParseResult:
    """Parse ``ip address`` output into InterfaceRecords."""
    out = LineCollector(host, source)
    interface = ""
    recognized = False

    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        header = _IFACE_HEADER.match(line)
        if header:
            interface = header.group(1)
            recognized = True
            continue
        inet = _INET_LINE.match(line)
        if not inet:
            continue
        recognized = True
        literal = inet.group(2).split("/", 1)[0]
        try:
            address, zone = normalize_address(literal)
        except ValueError:
            out.error(line_no, f"bad {inet.group(1)} address {literal!r}")
            continue
        scope = ""
        if inet.group(1) == "inet6" and address.lower().startswith("fe80:"):
            scope = zone or interface
        out.interfaces.append(InterfaceRecord(address, scope, interface))
        logger.debug("%s: interface %s %s", host, interface or "?", address)

    if text.strip() and not recognized:
        raise out.fail("no interface or address lines found; not `ip address` output")
    return out.result()


def parse_ss(text: str, host: str, source: str = "") -> ParseResult:
    """Parse ``ss -apn`` (or ``ss -tuapn``) output into SocketRecords."""
    out = LineCollector(host, source)
    warned = False
    recognized = False

    for line_no, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped:
            continue
        first = stripped.split(None, 1)[0].lower()
        if first == "state":
            raise out.fail(
                "ss output without a Netid column; capture with `ss -apn`", line_no
            )
        if first == "netid":
            recognized = True
            continue
        if first not in _SS_NETIDS:
            if not recognized:
                raise out.fail(f"unexpected netid {first!r}; not ss output", line_no)
            out.error(line_no, f"unknown netid {first!r}")
            continue
        recognized = True
        if first not in ("tcp", "udp"):
            continue

        columns = stripped.split(None, 6)
        if len(columns) < 6:
            out.error(line_no, f"expected at least 6 columns, got {len(columns)}")
            continue
        protocol = Protocol.parse(columns[0])
        state = _SS_STATES.get((protocol, columns[1]))
        if state is None:
            logger.debug(
                "%s: skipping %s socket in state %s", host, protocol.value, columns[1]
            )
            continue

        try:
            local = parse_endpoint(columns[4])
            peer = parse_endpoint(columns[5])
        except ValueError as exc:
            out.error(line_no, str(exc))
            continue
        if local.port is None:
            out.error(line_no, f"local endpoint {columns[4]!r} has no port")
            continue

        pid, name = 0, ""
        process = _SS_PROCESS.search(columns[6]) if len(columns) > 6 else None
        if process:
            pid, name = int(process.group("pid")), process.group("name")
        elif not warned:
            warned = True
            out.warn(line_no, _NO_PROCESS_WARNING)

        foreign = None
        if state is SocketState.ESTABLISHED:
            if peer.port is None:
                out.error(line_no, f"established socket with peer {columns[5]!r}")
                continue
            foreign = Endpoint(peer.address, peer.port)
        out.sockets.append(
            SocketRecord(
                protocol=protocol,
                local=Endpoint(local.address, local.port),
                state=state,
                foreign=foreign,
                v6_only=not local.dual_stack,
                pid=pid,
                process_name=name,
            )
        )

    return out.result()


def parse_netstat(text: str, host: str, source: str = "") -> ParseResult:
    """Parse ``netstat -tulpn`` (or ``-Wtuapn``) output into SocketRecords."""
    out = LineCollector(host, source)
    warned = False

    for line_no, line in enumerate(text.splitlines(), start=1):
        tokens = line.split()
        if not tokens:
            continue
        head = tokens[0].lower()
        if head == "proto":
            if "pid" not in line.lower():
                raise out.fail(
                    "netstat header has no PID/Program column; capture with -p",
                    line_no,
                )
            continue
        if head not in ("tcp", "tcp6", "udp", "udp6"):
            continue
        if len(tokens) < 5:
            out.error(line_no, f"expected at least 5 columns, got {len(tokens)}")
            continue

        protocol = Protocol.parse(head)
        if len(tokens) > 5 and _NETSTAT_STATE.match(tokens[5]):
            raw_state, process_tokens = tokens[5], tokens[6:]
        else:
            raw_state, process_tokens = "", tokens[5:]

        try:
            local = parse_endpoint(tokens[3])
            peer = parse_endpoint(tokens[4])
        except ValueError as exc:
            out.error(line_no, str(exc))
            continue
        if local.port is None:
            out.error(line_no, f"local endpoint {tokens[3]!r} has no port")
            continue

        if raw_state == "LISTEN" and protocol is Protocol.TCP:
            state = SocketState.LISTENING
        elif raw_state == "ESTABLISHED":
            state = SocketState.ESTABLISHED
        elif not raw_state and protocol is Protocol.UDP:
            state = (
                SocketState.LISTENING if peer.port is None else SocketState.ESTABLISHED
            )
        else:
            logger.debug("%s: skipping %s socket in state %s", host, head, raw_state)
            continue

        pid, name = _netstat_process(process_tokens)
        if not pid and not warned:
            warned = True
            out.warn(line_no, _NO_PROCESS_WARNING)

        foreign = None
        if state is SocketState.ESTABLISHED:
            if peer.port is None:
                out.error(line_no, f"established socket with peer {tokens[4]!r}")
                continue
            foreign = Endpoint(peer.address, peer.port)
        out.sockets.append(
            SocketRecord(
                protocol=protocol,
                local=Endpoint(local.address, local.port),
                state=state,
                foreign=foreign,
                # netstat cannot tell; assume v6-only so nothing is invented
                v6_only=not local.dual_stack,
                pid=pid,
                process_name=name,
            )
        )

    return out.result()


def _netstat_process(tokens: list[str]) -> tuple[int, str]:
    """``['712/sshd:', '/usr/sbin']`` -> ``(712, 'sshd')``; ``['-']`` -> ``(0, '')``."""
    if not tokens:
        return 0, ""
    pid_text, _, name = tokens[0].partition("/")
    if not pid_text.isdigit():
        return 0, ""
    return int(pid_text), name.rstrip(":")
