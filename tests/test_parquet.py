import io
from datetime import datetime, timezone

import pytest

from bklogs.parquet import (
    ParquetWriter,
    export_iterator_to_parquet,
    export_seq_to_parquet,
    export_seq_to_parquet_with_filter,
    export_to_parquet,
)
from bklogs.parquet_format import ParquetFileReader
from bklogs.parser import ZERO_TIME_MILLIS, LogEntry, Parser


def _ts(ms):
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _read(path):
    with ParquetFileReader(path) as reader:
        meta = reader.metadata
        rows = {}
        for group in reader.iter_row_groups():
            for name, values in group.items():
                rows.setdefault(name, []).extend(values)
    return meta, rows


def _broken_entries():
    yield LogEntry(timestamp=None, content="ok")
    raise ValueError("boom")


def test_export_to_parquet(tmp_path):
    entries = [
        LogEntry(
            timestamp=_ts(1745322209921),
            content="~~~ Running global environment hook",
            raw_line=b"raw",
            group="~~~ Running global environment hook",
        ),
        LogEntry(
            timestamp=_ts(1745322209922),
            content="$ /buildkite/agent/hooks/environment",
            raw_line=b"raw",
            group="~~~ Running global environment hook",
        ),
    ]
    path = tmp_path / "test_output.parquet"
    export_to_parquet(entries, path)
    assert path.stat().st_size > 0
    meta, rows = _read(path)
    assert [f.name for f in meta.fields] == [
        "timestamp", "content", "group", "has_timestamp",
        "is_command", "is_group", "is_progress",
    ]
    assert meta.sorting_columns == ((0, False, True), (2, False, True))
    assert rows["timestamp"] == [1745322209921, 1745322209922]
    assert rows["is_command"] == [False, True]
    assert rows["is_group"] == [True, False]
    assert rows["has_timestamp"] == [True, True]


def test_export_iterator_to_parquet(tmp_path):
    data = (
        "\\x1b_bk;t=1745322209921\\x07~~~ Running global environment hook\n"
        "\\x1b_bk;t=1745322209922\\x07$ /buildkite/agent/hooks/environment\n"
        "\\x1b_bk;t=1745322209923\\x07Some regular output"
    )
    iterator = Parser().new_iterator(io.StringIO(data))
    path = tmp_path / "test_iterator_output.parquet"
    export_iterator_to_parquet(iterator, path)
    _, rows = _read(path)
    assert rows["has_timestamp"] == [False, False, False]
    assert rows["timestamp"] == [ZERO_TIME_MILLIS] * 3


def test_export_iterator_reraises_parse_error(tmp_path):
    data = "\x1b_bk;t=999999999999999999999999999999\x07content"
    iterator = Parser().new_iterator(io.StringIO(data))
    with pytest.raises(ValueError):
        export_iterator_to_parquet(iterator, tmp_path / "bad.parquet")


def test_parquet_writer(tmp_path):
    path = tmp_path / "test_writer.parquet"
    with open(path, "wb") as sink:
        writer = ParquetWriter(sink)
        writer.write_batch([
            LogEntry(
                timestamp=_ts(1745322209921),
                content="test content",
                raw_line=b"test raw line",
                group="test group",
            )
        ])
        writer.close()
    _, rows = _read(path)
    assert rows["content"] == ["test content"]
    assert rows["group"] == ["test group"]


def test_parquet_writer_ignores_empty_batch(tmp_path):
    path = tmp_path / "empty.parquet"
    with ParquetWriter(path) as writer:
        writer.write_batch([])
    meta, _ = _read(path)
    assert meta.num_row_groups == 0
    assert meta.num_rows == 0


def test_export_seq_to_parquet(tmp_path):
    data = (
        "\x1b_bk;t=1745322209921\x07~~~ Running global environment hook\n"
        "\x1b_bk;t=1745322209922\x07$ /buildkite/agent/hooks/environment\n"
        "\x1b_bk;t=1745322209923\x07Some regular output"
    )
    path = tmp_path / "test_seq2_output.parquet"
    export_seq_to_parquet(Parser().all(io.StringIO(data)), path)
    _, rows = _read(path)
    assert rows["content"] == [
        "~~~ Running global environment hook",
        "$ /buildkite/agent/hooks/environment",
        "Some regular output",
    ]
    assert rows["group"] == ["~~~ Running global environment hook"] * 3


def test_export_seq_to_parquet_with_filter(tmp_path):
    data = (
        "\x1b_bk;t=1745322209921\x07~~~ Running global environment hook\n"
        "\x1b_bk;t=1745322209922\x07$ /buildkite/agent/hooks/environment\n"
        "\x1b_bk;t=1745322209923\x07Some regular output\n"
        "\x1b_bk;t=1745322209924\x07$ git clone repo"
    )
    path = tmp_path / "test_seq2_filtered.parquet"
    export_seq_to_parquet_with_filter(
        Parser().all(io.StringIO(data)), path, lambda e: e.is_command()
    )
    _, rows = _read(path)
    assert rows["content"] == ["$ /buildkite/agent/hooks/environment", "$ git clone repo"]
    assert rows["is_command"] == [True, True]


def test_export_seq_batches_into_row_groups(tmp_path):
    entries = [LogEntry(timestamp=None, content=f"line {i}") for i in range(2500)]
    path = tmp_path / "batched.parquet"
    export_seq_to_parquet(entries, path)
    meta, rows = _read(path)
    assert meta.row_group_num_rows == (1000, 1000, 500)
    assert rows["content"] == [e.content for e in entries]


def test_export_seq_propagates_errors(tmp_path):
    with pytest.raises(ValueError, match="boom"):
        export_seq_to_parquet(_broken_entries(), tmp_path / "x.parquet")