"""Parsers for Windows capture output.

- ``Get-NetIPAddress`` or ``ipconfig`` for interfaces
- ``netstat -ano`` for sockets (pid only)
- ``tasklist /FO CSV`` for pid -> image name

The three files of one host are merged by the inventory store; tasklist
names fill in the sockets that netstat only knows by pid.
"""

from __future__ import annotations

import csv
import logging
import re
from dataclasses import replace

from sockmap.inventory.addresses import normalize_address, parse_endpoint
from sockmap.inventory.models import (
    Endpoint,
    InterfaceRecord,
    ProcessRecord,
    Protocol,
    SocketRecord,
    SocketState,
)
from sockmap.parsers.base import LineCollector, ParseResult

logger = logging.getLogger(__name__)

_ADDRESS_LINE = re.compile(
    r"^\s*(?P<key>IPAddress|(?:Link-local |Temporary )?IPv[46] Address)"
    r"[\s.]*:\s*(?P<value>\S+)"
)
_ALIAS_LINE = re.compile(r"^\s*InterfaceAlias\s*:\s*(?P<alias>.+?)\s*$")
_ADAPTER_LINE = re.compile(r"^\S.*? adapter (?P<name>.+?):\s*$")


def parse_ip(text: str, host: str, source: str = "") -> ParseResult:
    """Parse ``Get-NetIPAddress`` or ``ipconfig`` output into InterfaceRecords."""
    out = LineCollector(host, source)
    adapter = ""
    block_start = 0  # first record of the current Get-NetIPAddress block

    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            block_start = len(out.interfaces)
            continue
        header = _ADAPTER_LINE.match(line)
        if header:
            adapter = header.group("name")
            continue
        alias = _ALIAS_LINE.match(line)
        if alias:
            for i in range(block_start, len(out.interfaces)):
                out.interfaces[i] = replace(
                    out.interfaces[i], interface=alias.group("alias")
                )
            continue
        match = _ADDRESS_LINE.match(line)
        if not match:
            continue
        literal = match.group("value")
        if "(" in literal:
            literal = literal.split("(", 1)[0]  # "10.0.0.20(Preferred)"
        try:
            address, zone = normalize_address(literal)
        except ValueError:
            out.error(line_no, f"bad address {literal!r}")
            continue
        scope = zone if address.lower().startswith("fe80:") else ""
        out.interfaces.append(InterfaceRecord(address, scope, adapter))

    if text.strip() and not out.interfaces and not out.diagnostics:
        raise out.fail("no IPAddress or IPv4/IPv6 Address lines found")
    return out.result()


def parse_netstat(text: str, host: str, source: str = "") -> ParseResult:
    """Parse ``netstat -ano`` output into SocketRecords."""
    out = LineCollector(host, source)

    for line_no, line in enumerate(text.splitlines(), start=1):
        tokens = line.split()
        if not tokens:
            continue
        head = tokens[0].upper()
        if head == "PROTO":
            if tokens[-1].upper() != "PID":
                raise out.fail("netstat header has no PID column; capture with -ano", line_no)
            continue
        if head not in ("TCP", "UDP"):
            continue

        protocol = Protocol.parse(head)
        if protocol is Protocol.TCP:
            if len(tokens) != 5:
                out.error(line_no, f"expected 5 columns, got {len(tokens)}")
                continue
            raw_state = tokens[3]
            if raw_state == "LISTENING":
                state = SocketState.LISTENING
            elif raw_state == "ESTABLISHED":
                state = SocketState.ESTABLISHED
            else:
                logger.debug("%s: skipping TCP socket in state %s", host, raw_state)
                continue
        else:
            if len(tokens) != 4:
                out.error(line_no, f"expected 4 columns, got {len(tokens)}")
                continue
            state = SocketState.LISTENING

        if not tokens[-1].isdigit():
            out.error(line_no, f"bad PID {tokens[-1]!r}")
            continue
        try:
            local = Endpoint.parse(tokens[1])
            foreign = (
                Endpoint.parse(tokens[2])
                if state is SocketState.ESTABLISHED
                else None
            )
        except ValueError as exc:
            out.error(line_no, str(exc))
            continue

        out.sockets.append(
            SocketRecord(
                protocol=protocol,
                local=local,
                state=state,
                foreign=foreign,
                # Windows v6 sockets are IPV6_V6ONLY unless the owner says otherwise
                v6_only=not parse_endpoint(tokens[1]).dual_stack,
                pid=int(tokens[-1]),
            )
        )

    return out.result()


def parse_tasklist(text: str, host: str, source: str = "") -> ParseResult:
    """Parse ``tasklist /FO CSV`` output into ProcessRecords.

    The header row, when present, is recognized by its non-numeric PID cell
    so that localized headers are accepted as well.
    """
    out = LineCollector(host, source)
    lines = text.splitlines()
    first = next((line for line in lines if line.strip()), "")
    if first and not first.lstrip().startswith('"'):
        raise out.fail("not CSV output; capture with `tasklist /FO CSV`")

    seen_row = False
    for line_no, row in enumerate(csv.reader(lines), start=1):
        if not row or not any(cell.strip() for cell in row):
            continue
        if len(row) < 2:
            out.error(line_no, f"expected at least 2 columns, got {len(row)}")
            continue
        name, pid_text = row[0].strip(), row[1].strip()
        if not pid_text.isdigit():
            if not seen_row:
                seen_row = True
                continue  # header
            out.error(line_no, f"bad PID {pid_text!r}")
            continue
        seen_row = True
        out.processes.append(ProcessRecord(int(pid_text), name))

    return out.result()
