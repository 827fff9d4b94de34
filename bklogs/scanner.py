"""Decoding of single Buildkite log lines and removal of ANSI sequences."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bklogs.parser import LogEntry

_OSC_PREFIX = "\x1b_bk;t="
# Shortest line that can carry a timestamp: ESC _bk;t=1 BEL
_MIN_OSC_BYTES = 10
_BEL = "\x07"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_INTEGER = re.compile(r"[+-]?[0-9]+")
# Either a full CSI sequence introduced by ESC[, or a bare "[" followed by at
# most eight digits/semicolons and a letter (a CSI sequence whose ESC was lost).
_ANSI = re.compile(r"\x1b\[[^A-Za-z]*[A-Za-z]?|\[[0-9;]{0,8}[A-Za-z]")


def strip_ansi(content: str) -> str:
    """Return ``content`` with ANSI escape sequences removed."""
    return _ANSI.sub("", content)


def _parse_millis(text: str) -> datetime:
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"invalid timestamp {text!r}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"timestamp {text!r} is out of range")
    try:
        return _EPOCH + timedelta(milliseconds=value)
    except OverflowError as exc:
        raise ValueError(f"timestamp {text!r} is out of range") from exc


class ByteParser:
    """Splits a raw log line into its timestamp and content."""

    def parse_line(self, line: str) -> LogEntry:
        """Parse one line; raise ValueError if its timestamp is malformed."""
        from bklogs.parser import LogEntry

        raw = line.encode("utf-8", "surrogateescape")
        if len(raw) < _MIN_OSC_BYTES or not line.startswith(_OSC_PREFIX):
            return LogEntry(timestamp=None, content=line, raw_line=raw)

        bel = line.find(_BEL, len(_OSC_PREFIX))
        if bel == -1:
            return LogEntry(timestamp=None, content=line, raw_line=raw)

        timestamp = _parse_millis(line[len(_OSC_PREFIX):bel])
        return LogEntry(timestamp=timestamp, content=line[bel + 1:], raw_line=raw)

    def strip_ansi(self, content: str) -> str:
        """Return ``content`` with ANSI escape sequences removed."""
        return strip_ansi(content)