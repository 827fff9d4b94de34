"""Export of parsed log entries to Parquet files."""

from __future__ import annotations

import itertools
import os
from typing import Any, BinaryIO, Callable, Iterable, Iterator, Optional, Sequence, Union

from bklogs.parquet_format import Compression, Field, ParquetFileWriter
from bklogs.parser import LogEntry, LogIterator

BATCH_SIZE = 1000

SCHEMA = (
    Field("timestamp", "int64"),
    Field("content", "string"),
    Field("group", "string"),
    Field("has_timestamp", "boolean"),
    Field("is_command", "boolean"),
    Field("is_group", "boolean"),
    Field("is_progress", "boolean"),
)

# Sorted by timestamp, then group.
_SORTING = ((0, False, True), (2, False, True))

Sink = Union[str, "os.PathLike[str]", BinaryIO]


def _entries_to_columns(entries: Sequence[LogEntry]) -> list:
    return [
        [entry.unix_millis for entry in entries],
        [entry.content for entry in entries],
        [entry.group for entry in entries],
        [entry.has_timestamp() for entry in entries],
        [entry.is_command() for entry in entries],
        [entry.is_group() for entry in entries],
        [entry.is_progress() for entry in entries],
    ]


def _batched(entries: Iterable[LogEntry]) -> Iterator[list]:
    iterator = iter(entries)
    while batch := list(itertools.islice(iterator, BATCH_SIZE)):
        yield batch


class ParquetWriter:
    """Streams batches of log entries into a Parquet file, one row group each."""

    def __init__(
        self,
        sink: Sink,
        compression: Compression = Compression.UNCOMPRESSED,
        compression_level: int = 3,
        sorting_columns: Sequence[tuple] = (),
    ) -> None:
        self._writer = ParquetFileWriter(
            sink,
            SCHEMA,
            compression=compression,
            compression_level=compression_level,
            sorting_columns=sorting_columns,
        )

    def write_batch(self, entries: Sequence[LogEntry]) -> None:
        """Write ``entries`` as one row group; an empty batch writes nothing."""
        if not entries:
            return
        self._writer.write_row_group(_entries_to_columns(entries))

    def close(self) -> None:
        self._writer.close()

    def __enter__(self) -> ParquetWriter:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def export_to_parquet(entries: Sequence[LogEntry], filename: Sink) -> None:
    """Write all ``entries`` as one zstd-compressed row group."""
    with ParquetFileWriter(
        filename,
        SCHEMA,
        compression=Compression.ZSTD,
        compression_level=3,
        sorting_columns=_SORTING,
    ) as writer:
        writer.write_row_group(_entries_to_columns(list(entries)))


def export_iterator_to_parquet(iterator: LogIterator, filename: Sink) -> None:
    """Export every entry of ``iterator``; re-raise the error that stopped it."""
    with ParquetWriter(filename) as writer:
        for batch in _batched(iterator):
            writer.write_batch(batch)
    error = iterator.err()
    if error is not None:
        raise error


def export_seq_to_parquet(seq: Iterable[LogEntry], filename: Sink) -> None:
    """Export every entry produced by ``seq`` in batches."""
    export_seq_to_parquet_with_filter(seq, filename, None)


def export_seq_to_parquet_with_filter(
    seq: Iterable[LogEntry],
    filename: Sink,
    filter_func: Optional[Callable[[LogEntry], bool]],
) -> None:
    """Export the entries of ``seq`` accepted by ``filter_func`` (all if None)."""
    selected = seq if filter_func is None else filter(filter_func, seq)
    with ParquetWriter(filename) as writer:
        for batch in _batched(selected):
            writer.write_batch(batch)