"""Shared parser plumbing — results, diagnostics collection, text decoding."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path

from sockmap.errors import Diagnostic, ParseError, Severity
from sockmap.inventory.models import (
    HostInventory,
    InterfaceRecord,
    ProcessRecord,
    SocketRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class ParseResult:
    """A (possibly partial) host inventory plus per-line diagnostics."""

    inventory: HostInventory
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def host(self) -> str:
        return self.inventory.name


class LineCollector:
    """Accumulates records and line-level errors while walking a file."""

    def __init__(self, host: str, source: str) -> None:
        self.host = host
        self.source = source
        self.interfaces: list[InterfaceRecord] = []
        self.sockets: list[SocketRecord] = []
        self.processes: list[ProcessRecord] = []
        self.diagnostics: list[Diagnostic] = []

    def error(self, line_no: int, message: str) -> None:
        diag = ParseError(message, self.source, line_no, self.host).diagnostic()
        logger.warning("%s", diag)
        self.diagnostics.append(diag)

    def warn(self, line_no: int | None, message: str) -> None:
        diag = replace(
            ParseError(message, self.source, line_no, self.host).diagnostic(),
            severity=Severity.WARNING,
        )
        logger.warning("%s", diag)
        self.diagnostics.append(diag)

    def fail(self, message: str, line_no: int | None = None) -> ParseError:
        return ParseError(message, self.source, line_no, self.host)

    def result(self) -> ParseResult:
        inventory = HostInventory(
            name=self.host,
            interfaces=frozenset(self.interfaces),
            sockets=frozenset(self.sockets),
            processes=frozenset(self.processes),
        )
        logger.debug(
            "%s: parsed %d interfaces, %d sockets, %d processes from %s",
            self.host,
            len(inventory.interfaces),
            len(inventory.sockets),
            len(inventory.processes),
            self.source,
        )
        return ParseResult(inventory, self.diagnostics)


def decode_text(data: bytes) -> str:
    """Decode a capture file.

    PowerShell redirections produce UTF-16; everything else is expected to
    be UTF-8 (captures must be made with ``LC_ALL=C``).
    """
    if data.startswith((b"\xff\xfe", b"\xfe\xff")):
        return data.decode("utf-16")
    if b"\x00" in data[:200]:
        return data.decode("utf-16-le", errors="replace")
    return data.decode("utf-8-sig", errors="replace")


def read_capture(path: str | Path) -> str:
    return decode_text(Path(path).read_bytes())

