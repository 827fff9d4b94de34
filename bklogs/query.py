"""Reading and filtering of log entries stored in Parquet files."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from itertools import repeat
from typing import Iterable, Iterator, Optional, Sequence, Union

from bklogs.parquet_format import Field, ParquetFileReader, ParquetFormatError

NO_GROUP = "<no group>"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

PathLike = Union[str, "os.PathLike[str]"]


def _format_time(moment: datetime) -> str:
    text = moment.isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


@dataclass
class ParquetLogEntry:
    """One log entry as stored in a Parquet file."""

    timestamp: int = 0
    content: str = ""
    group: str = ""
    has_time: bool = False
    is_command: bool = False
    is_group: bool = False
    is_progress: bool = False

    @property
    def time(self) -> datetime:
        """The timestamp as an aware UTC datetime."""
        return _EPOCH + timedelta(milliseconds=self.timestamp)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "content": self.content,
            "group": self.group,
            "has_timestamp": self.has_time,
            "is_command": self.is_command,
            "is_group": self.is_group,
            "is_progress": self.is_progress,
        }


@dataclass
class GroupInfo:
    """Statistics about the entries of one log group."""

    name: str = ""
    entry_count: int = 0
    first_seen: datetime = field(default_factory=lambda: _ZERO_TIME)
    last_seen: datetime = field(default_factory=lambda: _ZERO_TIME)
    commands: int = 0
    progress: int = 0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "entry_count": self.entry_count,
            "first_seen": _format_time(self.first_seen),
            "last_seen": _format_time(self.last_seen),
            "commands": self.commands,
            "progress": self.progress,
        }


@dataclass
class QueryStats:
    """Result counts and timing of a query."""

    total_entries: int = 0
    matched_entries: int = 0
    total_groups: int = 0
    query_time: float = 0.0


@dataclass
class QueryResult:
    """Groups or entries returned by a query, with its statistics."""

    groups: list = field(default_factory=list)
    entries: list = field(default_factory=list)
    stats: QueryStats = field(default_factory=QueryStats)


@dataclass
class ParquetFileInfo:
    """Metadata about a Parquet file."""

    row_count: int
    column_count: int
    file_size: int
    num_row_groups: int

    def to_dict(self) -> dict:
        return {
            "row_count": self.row_count,
            "column_count": self.column_count,
            "file_size_bytes": self.file_size,
            "num_row_groups": self.num_row_groups,
        }


def _map_columns(fields: Sequence[Field]) -> dict:
    kinds = {f.name: f.kind for f in fields}
    if "timestamp" not in kinds or "content" not in kinds:
        raise ParquetFormatError("required columns 'timestamp' and 'content' not found")
    return kinds


def _text_values(kind: str, values: list) -> Optional[list]:
    if kind == "string":
        return values
    if kind == "binary":
        return [value.decode("utf-8", "surrogateescape") for value in values]
    return None


def _bool_values(columns: dict, kinds: dict, name: str) -> Iterable[bool]:
    if kinds.get(name) == "boolean":
        return columns[name]
    return repeat(False)


def _convert(columns: dict, kinds: dict, offset: int) -> Iterator[ParquetLogEntry]:
    if offset:
        columns = {name: values[offset:] for name, values in columns.items()}
    timestamps = columns["timestamp"]
    if not timestamps:
        return
    if kinds["timestamp"] != "int64":
        raise ParquetFormatError(
            f"unexpected timestamp column type: {kinds['timestamp']}"
        )
    contents = _text_values(kinds["content"], columns["content"])
    if contents is None:
        raise ParquetFormatError(f"unexpected content column type: {kinds['content']}")
    groups: Iterable[str] = repeat("")
    if "group" in kinds:
        groups = _text_values(kinds["group"], columns["group"]) or repeat("")

    rows = zip(
        timestamps,
        contents,
        groups,
        _bool_values(columns, kinds, "has_timestamp"),
        _bool_values(columns, kinds, "is_command"),
        _bool_values(columns, kinds, "is_group"),
        _bool_values(columns, kinds, "is_progress"),
    )
    for timestamp, content, group, has_time, is_command, is_group, is_progress in rows:
        yield ParquetLogEntry(
            timestamp=timestamp,
            content=content,
            group=group,
            has_time=bool(has_time),
            is_command=bool(is_command),
            is_group=bool(is_group),
            is_progress=bool(is_progress),
        )


def _read_entries(filename: PathLike, start_row: Optional[int] = None) -> Iterator[ParquetLogEntry]:
    with ParquetFileReader(filename) as reader:
        metadata = reader.metadata
        if start_row is not None and start_row >= metadata.num_rows:
            raise ValueError(
                f"start row {start_row} is beyond file bounds "
                f"(total rows: {metadata.num_rows})"
            )
        skip = max(start_row or 0, 0)
        kinds: Optional[dict] = None
        for index, count in enumerate(metadata.row_group_num_rows):
            if skip >= count:
                skip -= count
                continue
            columns = reader.read_row_group(index)
            if kinds is None:
                kinds = _map_columns(metadata.fields)
            yield from _convert(columns, kinds, skip)
            skip = 0


def read_parquet_file_iter(filename: PathLike) -> Iterator[ParquetLogEntry]:
    """Stream every entry of a Parquet log file, row group by row group."""
    return _read_entries(filename)


def filter_by_group_iter(
    entries: Iterable[ParquetLogEntry], group_pattern: str
) -> Iterator[ParquetLogEntry]:
    """Yield entries whose group contains ``group_pattern``, ignoring case.

    Entries without a group are matched under the name ``<no group>``.
    """
    pattern = group_pattern.lower()
    for entry in entries:
        group = entry.group or NO_GROUP
        if pattern in group.lower():
            yield entry


def get_parquet_file_info(filename: PathLike) -> ParquetFileInfo:
    """Return row, column, size and row-group counts of a Parquet file."""
    with open(filename, "rb") as handle:
        size = os.fstat(handle.fileno()).st_size
        with ParquetFileReader(handle) as reader:
            metadata = reader.metadata
    return ParquetFileInfo(
        row_count=metadata.num_rows,
        column_count=len(metadata.fields),
        file_size=size,
        num_row_groups=metadata.num_row_groups,
    )


class ParquetReader:
    """Queries a Parquet log file by streaming its entries."""

    def __init__(self, filename: PathLike) -> None:
        self.filename = filename

    def read_entries_iter(self) -> Iterator[ParquetLogEntry]:
        return read_parquet_file_iter(self.filename)

    def filter_by_group_iter(self, group_pattern: str) -> Iterator[ParquetLogEntry]:
        return filter_by_group_iter(self.read_entries_iter(), group_pattern)

    def seek_to_row(self, start_row: int) -> Iterator[ParquetLogEntry]:
        """Stream entries from the 0-based row ``start_row`` onwards.

        Raises ValueError on iteration if the row lies past the end of the file.
        """
        return _read_entries(self.filename, start_row)

    def get_file_info(self) -> ParquetFileInfo:
        return get_parquet_file_info(self.filename)