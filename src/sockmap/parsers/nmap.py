"""Parser for ``nmap -4 <ip>`` / ``nmap -6 <ip>`` port-scan output.

A scan only tells us which ports answer, so every open port becomes a
LISTENING socket bound to the scanned address, owned by a process named
after nmap's service guess with a ``?`` suffix to mark it as estimated.
"""

from __future__ import annotations

import logging
import re

from sockmap.inventory.addresses import normalize_address
from sockmap.inventory.models import (
    Endpoint,
    InterfaceRecord,
    Protocol,
    SocketRecord,
    SocketState,
)
from sockmap.parsers.base import LineCollector, ParseResult

logger = logging.getLogger(__name__)

_PORT_LINE = re.compile(
    r"^(?P<port>\d+)/(?P<proto>\w+)\s+(?P<state>\S+)(?:\s+(?P<service>\S+))?"
)
_OPEN_STATES = ("open", "open|filtered")


def parse_nmap(text: str, host: str, target: str, source: str = "") -> ParseResult:
    """Parse scan output for ``target``, the address taken from the file name."""
    out = LineCollector(host, source)
    try:
        address, _ = normalize_address(target)
    except ValueError:
        raise out.fail(f"scanned address {target!r} is not an IP address") from None
    out.interfaces.append(InterfaceRecord(address))

    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line[:1].isdigit():
            continue
        match = _PORT_LINE.match(line.strip())
        if not match:
            out.error(line_no, f"unrecognized port line {line.strip()!r}")
            continue
        if match.group("state") not in _OPEN_STATES:
            continue
        try:
            protocol = Protocol.parse(match.group("proto"))
        except ValueError:
            logger.debug("%s: skipping %s port", host, match.group("proto"))
            continue
        port = int(match.group("port"))
        if port > 65535:
            out.error(line_no, f"port {port} out of range")
            continue
        service = match.group("service") or "unknown"
        out.sockets.append(
            SocketRecord(
                protocol=protocol,
                local=Endpoint(address, port),
                state=SocketState.LISTENING,
                v6_only=True,
                process_name=f"{service.rstrip('?')}?",
            )
        )

    return out.result()
