"""Error taxonomy and diagnostic records.

Only a missing input directory or a broken internal invariant is fatal to a
run. Everything else is reported as a :class:`Diagnostic` attributed to a
host, file or line.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class Severity(enum.Enum):
    """How loudly a diagnostic should be surfaced."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class DiagnosticKind(enum.Enum):
    PARSE_ERROR = "parse-error"
    AMBIGUOUS_OWNERSHIP = "ambiguous-ownership"
    MERGE_CONFLICT = "merge-conflict"
    DANGLING_CLIENT = "dangling-client"
    AGENT_TIMEOUT = "agent-timeout"
    AGENT_DISCONNECTED = "agent-disconnected"
    PROTOCOL_DECODE = "protocol-decode"


@dataclass(frozen=True)
class Diagnostic:
    """A non-fatal problem attributed to a host, a file and possibly a line."""

    kind: DiagnosticKind
    message: str
    host: str = ""
    source: str = ""
    line: int | None = None
    severity: Severity = Severity.WARNING

    @property
    def location(self) -> str:
        parts = [p for p in (self.host, self.source) if p]
        where = ":".join(parts)
        if self.line is not None:
            where = f"{where}:{self.line}" if where else f"line {self.line}"
        return where

    def __str__(self) -> str:
        where = self.location
        return f"{where}: {self.message}" if where else self.message


class SockMapError(Exception):
    """Base class for all sockmap errors."""


class InputError(SockMapError):
    """The input directory is missing or unreadable."""


class ParseError(SockMapError):
    """A malformed line (collected) or an unreadable file (raised)."""

    def __init__(
        self,
        message: str,
        source: str = "",
        line: int | None = None,
        host: str = "",
    ) -> None:
        self.message = message
        self.source = source
        self.line = line
        self.host = host
        super().__init__(str(self.diagnostic()))

    def diagnostic(self) -> Diagnostic:
        return Diagnostic(
            kind=DiagnosticKind.PARSE_ERROR,
            message=self.message,
            host=self.host,
            source=self.source,
            line=self.line,
            severity=Severity.ERROR,
        )


class StoreError(SockMapError):
    """Recording window misuse on the inventory store."""


class AgentError(SockMapError):
    """Base class for errors about one live agent."""

    kind = DiagnosticKind.AGENT_DISCONNECTED

    def __init__(self, host: str, message: str) -> None:
        self.host = host
        self.message = message
        super().__init__(f"{host}: {message}")

    def diagnostic(self) -> Diagnostic:
        return Diagnostic(kind=self.kind, message=self.message, host=self.host)


class AgentTimeout(AgentError):
    """No snapshot arrived within the capture timeout."""

    kind = DiagnosticKind.AGENT_TIMEOUT


class AgentDisconnected(AgentError):
    """The agent connection was lost or closed."""


class UnknownAgentError(AgentError):
    """No active agent is registered under that name."""


class AgentStateError(AgentError):
    """The requested transition is not allowed from the agent's current state."""


class ProtocolDecodeError(SockMapError):
    """A malformed frame or message was received on the wire."""

    def __init__(self, message: str, peer: str = "") -> None:
        self.message = message
        self.peer = peer
        super().__init__(f"{peer}: {message}" if peer else message)

    def diagnostic(self) -> Diagnostic:
        return Diagnostic(
            kind=DiagnosticKind.PROTOCOL_DECODE,
            message=self.message,
            source=self.peer,
            severity=Severity.ERROR,
        )


class MergeConflict(UserWarning):
    """Two partial inventories disagree on a process name for the same pid."""

    def __init__(self, host: str, pid: int, old_name: str, new_name: str) -> None:
        self.host = host
        self.pid = pid
        self.old_name = old_name
        self.new_name = new_name
        super().__init__(
            f"pid {pid} was {old_name!r}, now {new_name!r} (keeping {new_name!r})"
        )

    def diagnostic(self) -> Diagnostic:
        return Diagnostic(
            kind=DiagnosticKind.MERGE_CONFLICT, message=str(self), host=self.host
        )


class AmbiguousOwnershipWarning(UserWarning):
    """An address is claimed by more than one host."""

    def __init__(self, address: str, hosts: list[str]) -> None:
        self.address = address
        self.hosts = sorted(hosts)
        super().__init__(
            f"address {address} is claimed by {', '.join(self.hosts)}; "
            "excluded from cross-host matching"
        )

    def diagnostic(self) -> Diagnostic:
        return Diagnostic(
            kind=DiagnosticKind.AMBIGUOUS_OWNERSHIP,
            message=str(self),
            host=",".join(self.hosts),
        )
