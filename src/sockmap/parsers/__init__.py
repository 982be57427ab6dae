"""Format parsers: raw capture text -> (partial) HostInventory."""

from sockmap.parsers.base import ParseResult
from sockmap.parsers.directory import LoadResult, classify, load_directory, parse_file

__all__ = ["LoadResult", "ParseResult", "classify", "load_directory", "parse_file"]
