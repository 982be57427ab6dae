"""Load a directory of capture files into an InventoryStore.

The host name and the parser are taken from the file name::

    <host>.linux_ip       <host>.linux_ss (.ss)    <host>.linux_netstat (.netstat)
    <host>.windows_ip     <host>.windows_netstat   <host>.windows_tasklist
    <host>.nmap_<ip>      <host>_ip.csv            <host>_network.csv

Extensions are case-sensitive. Host names may contain dots.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from sockmap.errors import Diagnostic, InputError, ParseError
from sockmap.inventory.store import InventoryStore
from sockmap.parsers import csv_, linux, nmap, windows
from sockmap.parsers.base import ParseResult, read_capture

logger = logging.getLogger(__name__)

Parser = Callable[[str, str, str], ParseResult]

EXTENSION_PARSERS: dict[str, Parser] = {
    "linux_ip": linux.parse_ip_address,
    "linux_ss": linux.parse_ss,
    "ss": linux.parse_ss,
    "linux_netstat": linux.parse_netstat,
    "netstat": linux.parse_netstat,
    "windows_ip": windows.parse_ip,
    "windows_netstat": windows.parse_netstat,
    "windows_tasklist": windows.parse_tasklist,
}

CSV_SUFFIXES: dict[str, Parser] = {
    "_ip.csv": csv_.parse_ip_csv,
    "_network.csv": csv_.parse_network_csv,
}

NMAP_MARKER = ".nmap_"


@dataclass
class LoadResult:
    store: InventoryStore
    diagnostics: list[Diagnostic] = field(default_factory=list)
    files: int = 0


def classify(filename: str) -> tuple[str, Parser] | None:
    """Return ``(host, parser)`` for a capture file name, or None to skip it."""
    if NMAP_MARKER in filename:
        host, _, target = filename.rpartition(NMAP_MARKER)
        if not host:
            return None

        def parse_scan(text: str, host: str, source: str) -> ParseResult:
            return nmap.parse_nmap(text, host, target, source)

        return host, parse_scan

    for suffix, parser in CSV_SUFFIXES.items():
        if filename.endswith(suffix) and len(filename) > len(suffix):
            return filename[: -len(suffix)], parser

    host, dot, extension = filename.rpartition(".")
    if not dot or not host:
        return None
    parser = EXTENSION_PARSERS.get(extension)
    if parser is None:
        return None
    return host, parser


def parse_file(path: str | Path) -> ParseResult | None:
    """Parse one capture file. Raises ParseError if the file is unreadable."""
    path = Path(path)
    match = classify(path.name)
    if match is None:
        return None
    host, parser = match
    try:
        text = read_capture(path)
    except OSError as exc:
        message = f"cannot read file: {exc.strerror or exc}"
        raise ParseError(message, path.name, host=host) from exc
    return parser(text, host, path.name)


def load_directory(path: str | Path, store: InventoryStore | None = None) -> LoadResult:
    """Parse every recognized file of ``path`` into ``store``.

    Raises InputError when ``path`` is not a readable directory; every other
    problem is returned as a diagnostic.
    """
    directory = Path(path)
    if not directory.is_dir():
        raise InputError(f"input directory {directory} does not exist")
    try:
        entries = sorted(p for p in directory.iterdir() if p.is_file())
    except OSError as exc:
        raise InputError(f"cannot read input directory {directory}: {exc}") from exc

    result = LoadResult(store if store is not None else InventoryStore())
    for entry in entries:
        try:
            parsed = parse_file(entry)
        except ParseError as exc:
            diag = exc.diagnostic()
            logger.warning("%s", diag)
            result.diagnostics.append(diag)
            continue
        if parsed is None:
            logger.debug("Skipping unrecognized file %s", entry.name)
            continue
        result.files += 1
        result.diagnostics.extend(parsed.diagnostics)
        result.diagnostics.extend(result.store.put_partial(parsed.host, parsed.inventory))

    logger.info(
        "Loaded %d file(s) from %s: %d host(s), %d diagnostic(s)",
        result.files,
        directory,
        len(result.store),
        len(result.diagnostics),
    )
    return result
