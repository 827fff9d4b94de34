"""Parsing of Buildkite job logs into entries with group tracking."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import IO, Iterable, Iterator, Union

from bklogs.scanner import ByteParser, strip_ansi

MAX_LINE_BYTES = 64 * 1024
# Milliseconds since the epoch of 0001-01-01T00:00:00Z, used for entries
# that carry no timestamp.
ZERO_TIME_MILLIS = -62135596800000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_GROUP_PREFIXES = ("~~~", "---", "+++")

Reader = Union[IO[str], IO[bytes], Iterable[str], Iterable[bytes]]


class LineTooLongError(ValueError):
    """Raised when a log line exceeds the maximum line length."""


@dataclass
class LogEntry:
    """A single parsed log line."""

    timestamp: datetime | None
    content: str
    raw_line: bytes = b""
    group: str = ""

    @property
    def unix_millis(self) -> int:
        """Timestamp in milliseconds since the Unix epoch."""
        if self.timestamp is None:
            return ZERO_TIME_MILLIS
        return (self.timestamp - _EPOCH) // timedelta(milliseconds=1)

    def clean_content(self) -> str:
        return strip_ansi(self.content)

    def has_timestamp(self) -> bool:
        return self.timestamp is not None

    def is_command(self) -> bool:
        return self.clean_content().startswith("$ ")

    def is_progress(self) -> bool:
        """True for terminal progress updates such as git transfer counters."""
        if "[K" not in self.content:
            return False
        clean = self.clean_content()
        return "objects" in clean or "deltas" in clean or "%" in clean

    def is_group(self) -> bool:
        return self.clean_content().startswith(_GROUP_PREFIXES)

    def is_section(self) -> bool:
        """Alias of :meth:`is_group`."""
        return self.is_group()


def _iter_lines(reader: Reader) -> Iterator[str]:
    for item in reader:
        if isinstance(item, bytes):
            item = item.decode("utf-8", "surrogateescape")
        line = item[:-1] if item.endswith("\n") else item
        if line.endswith("\r"):
            line = line[:-1]
        if len(line) * 4 > MAX_LINE_BYTES and len(
            line.encode("utf-8", "surrogateescape")
        ) > MAX_LINE_BYTES:
            raise LineTooLongError("token too long")
        yield line


class Parser:
    """Stateful parser that tracks the current group across lines."""

    def __init__(self) -> None:
        self._byte_parser = ByteParser()
        self.current_group = ""

    def parse_line(self, line: str) -> LogEntry:
        entry = self._byte_parser.parse_line(line)
        if entry.is_group():
            self.current_group = entry.clean_content()
        entry.group = self.current_group
        return entry

    def new_iterator(self, reader: Reader) -> LogIterator:
        return LogIterator(reader, self)

    def all(self, reader: Reader) -> Iterator[LogEntry]:
        """Yield every entry of ``reader``; parse errors propagate."""
        for line in _iter_lines(reader):
            yield self.parse_line(line)

    def strip_ansi(self, content: str) -> str:
        return strip_ansi(content)


class LogIterator:
    """Iterator over entries that stops on the first error and keeps it."""

    def __init__(self, reader: Reader, parser: Parser) -> None:
        self._lines = _iter_lines(reader)
        self._parser = parser
        self._err: Exception | None = None
        self.current: LogEntry | None = None

    def __iter__(self) -> LogIterator:
        return self

    def __next__(self) -> LogEntry:
        if self._err is not None:
            raise StopIteration
        try:
            line = next(self._lines)
            entry = self._parser.parse_line(line)
        except StopIteration:
            raise
        except (ValueError, OSError) as exc:
            self._err = exc
            raise StopIteration from None
        self.current = entry
        return entry

    def err(self) -> Exception | None:
        """The error that ended iteration, if any."""
        return self._err