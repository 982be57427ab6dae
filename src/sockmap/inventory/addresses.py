"""Address and endpoint literal handling shared by parsers, model and engine.

Tools print endpoints in several shapes:

- ``10.0.0.1:22`` and ``[::1]:631`` (ss, RFC 2732)
- ``:::22`` and ``fe80::1%eth0:123`` (netstat, unbracketed IPv6)
- ``127.0.0.53%lo:53`` and ``[fe80::1]%eth0:546`` (ss, with interface zone)
- ``*:22`` (ss dual-stack wildcard) and ``0.0.0.0:*`` (unset peer)

Addresses are normalized to ``ipaddress`` compressed text with the zone
stripped, so that the same address always compares equal as a string.
"""

from __future__ import annotations

import enum
import ipaddress
from typing import NamedTuple

WILDCARD_V4 = "0.0.0.0"
WILDCARD_V6 = "::"


class Family(enum.Enum):
    """IP protocol family, derived from the address literal shape."""

    V4 = "v4"
    V6 = "v6"


class ParsedEndpoint(NamedTuple):
    address: str
    port: int | None  # None for a '*' port
    zone: str
    dual_stack: bool


def normalize_address(text: str) -> tuple[str, str]:
    """Return ``(address, zone)`` for an address literal.

    Raises ValueError when the text is not an IPv4 or IPv6 address.
    """
    text = text.strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    address, _, zone = text.partition("%")
    ip = ipaddress.ip_address(address)
    return ip.compressed, zone


def family_of(address: str) -> Family:
    return Family.V6 if ":" in address else Family.V4


def unmap(address: str) -> str:
    """Collapse an IPv4-mapped IPv6 address to its IPv4 form."""
    if ":" not in address:
        return address
    mapped = ipaddress.IPv6Address(address).ipv4_mapped
    return str(mapped) if mapped is not None else address


def mapped_v6(address: str) -> str:
    """The ``::ffff:a.b.c.d`` form of an IPv4 address."""
    return ipaddress.IPv6Address(f"::ffff:{address}").compressed


def is_wildcard(address: str) -> bool:
    return address in (WILDCARD_V4, WILDCARD_V6)


def is_loopback(address: str) -> bool:
    return ipaddress.ip_address(unmap(address)).is_loopback


def same_address(a: str, b: str) -> bool:
    """Compare two normalized addresses, treating v4-mapped v6 as its v4 form."""
    return unmap(a) == unmap(b)


def parse_endpoint(text: str) -> ParsedEndpoint:
    """Parse any of the endpoint shapes listed in the module docstring.

    Raises ValueError on anything else.
    """
    text = text.strip()
    if not text or ":" not in text:
        raise ValueError(f"not an endpoint: {text!r}")

    host, _, port_text = text.rpartition(":")
    if port_text == "*":
        port = None
    else:
        if not port_text.isdigit():
            raise ValueError(f"bad port in endpoint {text!r}")
        port = int(port_text)
        if port > 65535:
            raise ValueError(f"port out of range in endpoint {text!r}")

    if host == "*":
        return ParsedEndpoint(WILDCARD_V6, port, "", True)

    # '[fe80::1]%eth0' puts the zone outside the brackets
    zone = ""
    if host.startswith("[") and "]%" in host:
        host, _, zone = host.partition("]%")
        host += "]"
    address, inner_zone = normalize_address(host)
    zone = zone or inner_zone

    dual_stack = False
    if ":" in address and ipaddress.IPv6Address(address).ipv4_mapped is not None:
        dual_stack = True
    return ParsedEndpoint(address, port, zone, dual_stack)


def format_endpoint(address: str, port: int, dual_stack: bool = False) -> str:
    """Inverse of :func:`parse_endpoint` for the RFC 2732 shape."""
    if dual_stack and address == WILDCARD_V6:
        return f"*:{port}"
    if ":" in address:
        return f"[{address}]:{port}"
    return f"{address}:{port}"
