"""The ``query`` command: list groups, filter, tail and seek in Parquet log files."""

from __future__ import annotations

import json
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import IO, Iterable, Optional

from bklogs.query import NO_GROUP, GroupInfo, ParquetLogEntry, ParquetReader

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MIN_TIME = datetime.min.replace(tzinfo=timezone.utc)
DEFAULT_TAIL_LINES = 10

_JSON_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


@dataclass
class QueryConfig:
    """Options of a query run."""

    parquet_file: str = ""
    operation: str = "list-groups"
    group_name: str = ""
    format: str = "text"
    show_stats: bool = True
    limit_entries: int = 0
    tail_lines: int = DEFAULT_TAIL_LINES
    seek_to_row: int = 0


def truncate_string(s: str, max_len: int) -> str:
    """Shorten ``s`` to ``max_len`` characters, ending in "..." when there is room."""
    if len(s) <= max_len:
        return s
    if max_len <= 3:
        return s[:max_len]
    return s[: max_len - 3] + "..."


def _local_time(millis: int) -> datetime:
    try:
        moment = _EPOCH + timedelta(milliseconds=millis)
    except OverflowError:
        return _MIN_TIME
    try:
        return moment.astimezone()
    except (OverflowError, ValueError, OSError):
        return moment


def _format_time(moment: datetime, millis: bool = True) -> str:
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d} "
        f"{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if millis:
        text += f".{moment.microsecond // 1000:03d}"
    return text


def _write_json(out: IO[str], obj: object) -> None:
    text = json.dumps(obj, indent=2, ensure_ascii=False)
    for char, escape in _JSON_ESCAPES:
        text = text.replace(char, escape)
    out.write(text + "\n")


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


def _entries_json(entries: list) -> Optional[list]:
    return [entry.to_dict() for entry in entries] or None


def _print_entries(entries: Iterable[ParquetLogEntry], out: IO[str]) -> None:
    for entry in entries:
        markers = [
            label
            for label, flag in (
                ("CMD", entry.is_command),
                ("GRP", entry.is_group),
                ("PROG", entry.is_progress),
            )
            if flag
        ]
        marker_text = f" [{','.join(markers)}]" if markers else ""
        stamp = _format_time(_local_time(entry.timestamp))
        out.write(f"[{stamp}]{marker_text} {entry.content}\n")


def _read_failure(action: str, exc: Exception) -> ValueError:
    error = ValueError(f"{action}: {exc}")
    error.__cause__ = exc
    return error


def _list_groups(reader: ParquetReader, config: QueryConfig, start: float, out: IO[str]) -> None:
    groups: dict = {}
    total_entries = 0
    try:
        for entry in reader.read_entries_iter():
            total_entries += 1
            name = entry.group or NO_GROUP
            moment = _local_time(entry.timestamp)
            info = groups.get(name)
            if info is None:
                info = GroupInfo(name=name, first_seen=moment, last_seen=moment)
                groups[name] = info
            info.entry_count += 1
            info.first_seen = min(info.first_seen, moment)
            info.last_seen = max(info.last_seen, moment)
            if entry.is_command:
                info.commands += 1
            if entry.is_progress:
                info.progress += 1
    except (OSError, ValueError) as exc:
        raise _read_failure("error reading entries", exc) from exc

    ordered = sorted(groups.values(), key=lambda info: info.first_seen)
    query_time = _elapsed_ms(start)

    if config.format == "json":
        stats = {"total_entries": 0, "total_groups": 0, "query_time_ms": 0.0}
        if config.show_stats:
            stats = {
                "total_entries": total_entries,
                "total_groups": len(ordered),
                "query_time_ms": query_time,
            }
        _write_json(out, {"groups": [g.to_dict() for g in ordered], "stats": stats})
        return

    out.write(f"Groups found: {len(ordered)}\n\n")
    if not ordered:
        out.write("No groups found.\n")
        return

    out.write(
        f"{'GROUP NAME':<40} {'ENTRIES':>8} {'COMMANDS':>8} {'PROGRESS':>8} "
        f"{'FIRST SEEN':>19} {'LAST SEEN':>19}\n"
    )
    out.write("-" * 120 + "\n")
    for group in ordered:
        out.write(
            f"{truncate_string(group.name, 40):<40} {group.entry_count:>8} "
            f"{group.commands:>8} {group.progress:>8} "
            f"{_format_time(group.first_seen, millis=False):>19} "
            f"{_format_time(group.last_seen, millis=False):>19}\n"
        )

    if config.show_stats:
        out.write("\n--- Query Statistics (Streaming) ---\n")
        out.write(f"Total entries: {total_entries}\n")
        out.write(f"Total groups: {len(ordered)}\n")
        out.write(f"Query time: {query_time:.2f} ms\n")


def _by_group(reader: ParquetReader, config: QueryConfig, start: float, out: IO[str]) -> None:
    entries: list = []
    total_entries = 0
    try:
        for entry in reader.filter_by_group_iter(config.group_name):
            total_entries += 1
            entries.append(entry)
            if 0 < config.limit_entries <= len(entries):
                break
    except (OSError, ValueError) as exc:
        raise _read_failure("error filtering entries", exc) from exc
    matched_entries = len(entries)

    if config.show_stats:
        try:
            total_entries += sum(1 for _ in reader.read_entries_iter())
        except (OSError, ValueError) as exc:
            raise _read_failure("error reading entries", exc) from exc

    query_time = _elapsed_ms(start)

    if config.format == "json":
        stats = {"total_entries": 0, "matched_entries": 0, "query_time_ms": 0.0}
        if config.show_stats:
            stats = {
                "total_entries": total_entries,
                "matched_entries": matched_entries,
                "query_time_ms": query_time,
            }
        _write_json(out, {"entries": _entries_json(entries), "stats": stats})
        return

    limit_text = ""
    if 0 < config.limit_entries <= matched_entries:
        limit_text = f" (limited to {config.limit_entries})"
    out.write(
        f"Entries in group matching '{config.group_name}': {matched_entries}{limit_text}\n\n"
    )
    if not entries:
        out.write("No entries found for the specified group.\n")
        return

    _print_entries(entries, out)

    if config.show_stats:
        out.write("\n--- Query Statistics (Streaming) ---\n")
        if total_entries > 0:
            out.write(f"Total entries: {total_entries}\n")
        out.write(f"Matched entries: {matched_entries}\n")
        out.write(f"Query time: {query_time:.2f} ms\n")


def _file_info(reader: ParquetReader, config: QueryConfig, out: IO[str]) -> None:
    try:
        info = reader.get_file_info()
    except (OSError, ValueError) as exc:
        raise _read_failure("failed to get file info", exc) from exc

    if config.format == "json":
        _write_json(out, info.to_dict())
        return

    out.write("Parquet File Information:\n")
    out.write(f"  File:         {config.parquet_file}\n")
    out.write(f"  Rows:         {info.row_count}\n")
    out.write(f"  Columns:      {info.column_count}\n")
    out.write(
        f"  File Size:    {info.file_size} bytes ({info.file_size / (1024 * 1024):.2f} MB)\n"
    )
    out.write(f"  Row Groups:   {info.num_row_groups}\n")


def _read_from(reader: ParquetReader, start_row: int, limit: int) -> list:
    entries: list = []
    try:
        for entry in reader.seek_to_row(start_row):
            entries.append(entry)
            if 0 < limit <= len(entries):
                break
    except (OSError, ValueError) as exc:
        raise _read_failure("error reading entries", exc) from exc
    return entries


def _tail(reader: ParquetReader, config: QueryConfig, start: float, out: IO[str]) -> None:
    try:
        info = reader.get_file_info()
    except (OSError, ValueError) as exc:
        raise _read_failure("failed to get file info", exc) from exc

    tail_lines = config.tail_lines if config.tail_lines > 0 else DEFAULT_TAIL_LINES
    start_row = max(info.row_count - tail_lines, 0)
    entries = _read_from(reader, start_row, tail_lines)
    query_time = _elapsed_ms(start)

    if config.format == "json":
        stats = {"total_rows": 0, "entries_shown": 0, "query_time_ms": 0.0}
        if config.show_stats:
            stats = {
                "total_rows": info.row_count,
                "entries_shown": len(entries),
                "query_time_ms": query_time,
            }
        _write_json(out, {"entries": _entries_json(entries), "stats": stats})
        return

    out.write(f"Last {len(entries)} entries:\n\n")
    _print_entries(entries, out)

    if config.show_stats:
        out.write("\n--- Tail Statistics ---\n")
        out.write(f"Total rows in file: {info.row_count}\n")
        out.write(f"Entries shown: {len(entries)}\n")
        out.write(f"Query time: {query_time:.2f} ms\n")


def _seek(reader: ParquetReader, config: QueryConfig, start: float, out: IO[str]) -> None:
    entries = _read_from(reader, config.seek_to_row, config.limit_entries)
    query_time = _elapsed_ms(start)

    if config.format == "json":
        stats = {"start_row": 0, "entries_shown": 0, "query_time_ms": 0.0}
        if config.show_stats:
            stats = {
                "start_row": config.seek_to_row,
                "entries_shown": len(entries),
                "query_time_ms": query_time,
            }
        _write_json(out, {"entries": _entries_json(entries), "stats": stats})
        return

    limit_text = ""
    if 0 < config.limit_entries <= len(entries):
        limit_text = f" (limited to {config.limit_entries})"
    out.write(
        f"Entries starting from row {config.seek_to_row}: {len(entries)}{limit_text}\n\n"
    )
    _print_entries(entries, out)

    if config.show_stats:
        out.write("\n--- Seek Statistics ---\n")
        out.write(f"Start row: {config.seek_to_row}\n")
        out.write(f"Entries shown: {len(entries)}\n")
        out.write(f"Query time: {query_time:.2f} ms\n")


def run_query(config: QueryConfig, out: Optional[IO[str]] = None) -> None:
    """Run the query described by ``config``, writing its report to ``out``.

    Raises ValueError for an unknown operation, a missing group pattern or
    a file that cannot be read.
    """
    stream = sys.stdout if out is None else out
    reader = ParquetReader(config.parquet_file)
    start = time.perf_counter()

    if config.operation == "list-groups":
        _list_groups(reader, config, start, stream)
    elif config.operation == "by-group":
        if not config.group_name:
            raise ValueError("group pattern is required for by-group operation")
        _by_group(reader, config, start, stream)
    elif config.operation == "info":
        _file_info(reader, config, stream)
    elif config.operation == "tail":
        _tail(reader, config, start, stream)
    elif config.operation == "seek":
        _seek(reader, config, start, stream)
    else:
        raise ValueError(f"unknown operation: {config.operation}")