"""Cross-host correlation: pair every established socket with its peer.

The engine is a pure function of the inventories it is given. It builds an
address ownership map from the hosts' interfaces, indexes candidate sockets,
then tries the match rules of :class:`MatchRule` in order for each
established socket. The first rule with a qualifying candidate wins.

Listener rules (``direct``, ``v4-mapped``) pair a TCP client with a LISTENING
socket. Reciprocal rules pair two connected sockets that name each other:
connected UDP sockets (``udp-mutual``, ``udp-v4-mapped``) and, as a last
resort when no listener was captured, the accepted side of a TCP connection
(``accepted-peer``). A reciprocal pair yields a single edge.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from sockmap.correlate.models import (
    ConnectionEdge,
    ConnectionGraph,
    DanglingClient,
    MatchRule,
    ProcessRef,
)
from sockmap.errors import (
    AmbiguousOwnershipWarning,
    Diagnostic,
    DiagnosticKind,
    Severity,
)
from sockmap.inventory.addresses import (
    WILDCARD_V4,
    WILDCARD_V6,
    Family,
    family_of,
    is_loopback,
    is_wildcard,
    same_address,
    unmap,
)
from sockmap.inventory.models import (
    Endpoint,
    HostInventory,
    Protocol,
    SocketRecord,
)

logger = logging.getLogger(__name__)


class AddressOwnership:
    """Concrete address -> owning host, with ambiguous addresses set aside.

    IPv4-mapped IPv6 literals resolve like their IPv4 form. Loopback and
    wildcard interface addresses are never entered in the map.
    """

    def __init__(self, inventories: Iterable[HostInventory]) -> None:
        claims: dict[str, set[str]] = defaultdict(set)
        for inventory in inventories:
            for interface in inventory.interfaces:
                address = unmap(interface.address)
                if is_wildcard(address) or is_loopback(address):
                    continue
                claims[address].add(inventory.name)
        self.owners = {a: next(iter(h)) for a, h in claims.items() if len(h) == 1}
        self.ambiguous = {a: sorted(h) for a, h in claims.items() if len(h) > 1}

    def diagnostics(self) -> list[Diagnostic]:
        return [
            AmbiguousOwnershipWarning(address, hosts).diagnostic()
            for address, hosts in sorted(self.ambiguous.items())
        ]

    def owner_of(self, address: str, observer: str) -> str | None:
        """Host that ``address`` designates when seen from ``observer``."""
        address = unmap(address)
        if is_wildcard(address):
            return None
        if is_loopback(address):
            return observer
        if address in self.ambiguous:
            # Still usable from one of the claimants, never across hosts
            return observer if observer in self.ambiguous[address] else None
        return self.owners.get(address)


def _effective_family(address: str) -> Family:
    return family_of(unmap(address))


def _is_mapped_literal(address: str) -> bool:
    return family_of(address) is Family.V6 and unmap(address) != address


def _local_accepts(candidate: SocketRecord, address: str, family: Family) -> bool:
    """Can ``candidate``'s local address receive traffic sent to ``address``?"""
    local = candidate.local.address
    if local == WILDCARD_V4:
        return family is Family.V4
    if local == WILDCARD_V6:
        return family is Family.V6 or candidate.dual_stack
    return same_address(local, address)


def _names(endpoint: Endpoint, other: Endpoint) -> bool:
    return endpoint.port == other.port and same_address(endpoint.address, other.address)


def _preference(candidate: SocketRecord) -> tuple:
    # Captured owners beat scan guesses (pid 0, name ending in "?")
    estimated = candidate.pid == 0 or candidate.process_name.endswith("?")
    return (
        estimated,
        candidate.local.is_wildcard,
        candidate.pid,
        candidate.process_name,
        candidate.sort_key(),
    )


@dataclass
class _Index:
    listeners: dict[tuple, list[SocketRecord]] = field(
        default_factory=lambda: defaultdict(list)
    )
    connected: dict[tuple, list[SocketRecord]] = field(
        default_factory=lambda: defaultdict(list)
    )

    def add(self, host: str, sock: SocketRecord) -> None:
        if sock.is_listening:
            key = (sock.protocol, sock.family, sock.local.port, host)
            self.listeners[key].append(sock)
        else:
            key = (sock.protocol, sock.local.port, host)
            self.connected[key].append(sock)

    def listening(
        self, protocol: Protocol, family: Family, port: int, host: str
    ) -> list[SocketRecord]:
        return self.listeners.get((protocol, family, port, host), [])

    def bound(self, protocol: Protocol, port: int, host: str) -> list[SocketRecord]:
        return self.connected.get((protocol, port, host), [])

    def has_listener(self, host: str, protocol: Protocol, port: int) -> bool:
        return any(
            self.listeners.get((protocol, family, port, host)) for family in Family
        )


@dataclass(frozen=True)
class _Match:
    client_host: str
    client: SocketRecord
    server_host: str
    server: SocketRecord
    rule: MatchRule


class _Matcher:
    def __init__(self, inventories: list[HostInventory]) -> None:
        self.ownership = AddressOwnership(inventories)
        self.index = _Index()
        for inventory in inventories:
            for sock in inventory.sockets:
                self.index.add(inventory.name, sock)

    def match(self, host: str, sock: SocketRecord) -> _Match | None:
        assert sock.foreign is not None
        foreign = sock.foreign
        if is_wildcard(unmap(foreign.address)):
            logger.debug("%s: %s has a wildcard peer, not matchable", host, sock)
            return None
        target = self.ownership.owner_of(foreign.address, host)
        if target is None:
            return None

        family = _effective_family(foreign.address)
        for rule in MatchRule:
            candidates = [
                c
                for c in self._pool(rule, sock.protocol, family, foreign.port, target)
                if (target, c) != (host, sock)
                and self._qualifies(rule, host, sock, family, c)
            ]
            if candidates:
                best = min(candidates, key=_preference)
                return _Match(host, sock, target, best, rule)
        return None

    def _pool(
        self,
        rule: MatchRule,
        protocol: Protocol,
        family: Family,
        port: int,
        target: str,
    ) -> list[SocketRecord]:
        if rule is MatchRule.DIRECT and protocol is Protocol.TCP:
            return self.index.listening(protocol, family, port, target)
        if rule is MatchRule.V4_MAPPED and protocol is Protocol.TCP:
            if family is Family.V4:
                return self.index.listening(protocol, Family.V6, port, target)
        if rule in (MatchRule.UDP_MUTUAL, MatchRule.UDP_V4_MAPPED):
            if protocol is Protocol.UDP:
                return self.index.bound(protocol, port, target)
        if rule is MatchRule.ACCEPTED_PEER and protocol is Protocol.TCP:
            return self.index.bound(protocol, port, target)
        return []

    def _qualifies(
        self,
        rule: MatchRule,
        host: str,
        sock: SocketRecord,
        family: Family,
        candidate: SocketRecord,
    ) -> bool:
        assert sock.foreign is not None
        address = sock.foreign.address
        if rule is MatchRule.DIRECT:
            return candidate.family is family and _local_accepts(
                candidate, address, family
            )
        if rule is MatchRule.V4_MAPPED:
            return candidate.dual_stack and _local_accepts(candidate, address, family)
        if rule is MatchRule.ACCEPTED_PEER:
            return (
                candidate.foreign is not None
                and same_address(candidate.local.address, address)
                and _names(candidate.foreign, sock.local)
            )

        # Connected UDP: the candidate must be bound to exactly this client
        if candidate.foreign is None or not _names(candidate.foreign, sock.local):
            return False
        if not _local_accepts(candidate, address, family):
            return False
        mapped = _is_mapped_literal(candidate.foreign.address)
        if rule is MatchRule.UDP_MUTUAL:
            return not mapped
        return family is Family.V4 and mapped and candidate.dual_stack


def _orient(match: _Match, index: _Index) -> _Match:
    """Choose the server side of a reciprocal pair."""

    def rank(host: str, sock: SocketRecord) -> tuple:
        listens = index.has_listener(host, sock.protocol, sock.local.port)
        return (not listens, sock.local.port, host, sock.local.address)

    if rank(match.client_host, match.client) < rank(match.server_host, match.server):
        return _Match(
            match.server_host, match.server, match.client_host, match.client, match.rule
        )
    return match


def correlate(
    view: Mapping[str, HostInventory],
    include_loopback: bool = True,
    exclude_processes: Iterable[str] = (),
) -> ConnectionGraph:
    """Build the connection graph of every inventory in ``view``.

    Deterministic: the result does not depend on iteration order of the
    view or of the socket sets.
    """
    prefixes = tuple(exclude_processes)
    inventories = [view[name].exclude_processes(prefixes) for name in sorted(view)]
    matcher = _Matcher(inventories)
    diagnostics = matcher.ownership.diagnostics()
    for diag in diagnostics:
        logger.warning("%s", diag)

    listener_matches: list[_Match] = []
    reciprocal: dict[frozenset, _Match] = {}
    unmatched: list[tuple[str, SocketRecord]] = []
    for inventory in inventories:
        for sock in inventory.established:
            found = matcher.match(inventory.name, sock)
            if found is None:
                unmatched.append((inventory.name, sock))
            elif found.rule.reciprocal:
                pair = frozenset(
                    {(found.client_host, found.client), (found.server_host, found.server)}
                )
                reciprocal.setdefault(pair, _orient(found, matcher.index))
            else:
                listener_matches.append(found)

    # A connection whose client already reached a listener is not repeated
    # through its accepted side
    paired = {(m.client_host, m.client) for m in listener_matches}
    matches = listener_matches + [
        m
        for pair, m in reciprocal.items()
        if not any(side in paired for side in pair)
    ]

    edges = []
    for m in matches:
        if not include_loopback and m.client_host == m.server_host:
            continue
        edges.append(
            ConnectionEdge(
                client=ProcessRef.of(m.client_host, m.client),
                server=ProcessRef.of(m.server_host, m.server),
                client_socket=m.client,
                server_socket=m.server,
                rule=m.rule,
            )
        )
    edges.sort(key=ConnectionEdge.sort_key)

    used = {(m.client_host, m.client) for m in matches} | {
        (m.server_host, m.server) for m in matches
    }
    dangling = []
    for host, sock in unmatched:
        if (host, sock) in used:
            continue
        if matcher.index.has_listener(host, sock.protocol, sock.local.port):
            logger.debug("%s: %s is the accepted side of a local listener", host, sock)
            continue
        dangling.append(DanglingClient.of(host, sock))
        diag = Diagnostic(
            kind=DiagnosticKind.DANGLING_CLIENT,
            message=f"no peer found for {sock}",
            host=host,
            severity=Severity.INFO,
        )
        logger.info("%s", diag)
        diagnostics.append(diag)
    dangling.sort()

    logger.info(
        "Correlated %d host(s): %d edge(s), %d dangling client(s)",
        len(inventories),
        len(edges),
        len(dangling),
    )
    return ConnectionGraph(
        edges=tuple(edges), dangling=tuple(dangling), diagnostics=tuple(diagnostics)
    )
