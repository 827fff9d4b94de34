import io

import pytest

from bklogs.parquet_format import (
    Compression,
    Field,
    ParquetFileReader,
    ParquetFileWriter,
    ParquetFormatError,
)

FIELDS = [
    Field("timestamp", "int64"),
    Field("content", "string"),
    Field("flag", "boolean"),
]

COLUMNS = [
    [1745322209921, -62135596800000, 0],
    ["~~~ Running global environment hook", "héllo ✓", ""],
    [True, False, True],
]


def _write(path, groups, **kwargs):
    with ParquetFileWriter(path, FIELDS, **kwargs) as writer:
        for columns in groups:
            writer.write_row_group(columns)


@pytest.mark.parametrize("compression", list(Compression))
def test_round_trip(tmp_path, compression):
    path = tmp_path / "out.parquet"
    _write(path, [COLUMNS], compression=compression)
    with ParquetFileReader(path) as reader:
        assert reader.metadata.fields == tuple(FIELDS)
        assert reader.metadata.num_rows == 3
        group = reader.read_row_group(0)
    assert group == {"timestamp": COLUMNS[0], "content": COLUMNS[1], "flag": COLUMNS[2]}


def test_magic_bytes(tmp_path):
    sink = io.BytesIO()
    with ParquetFileWriter(sink, FIELDS) as writer:
        writer.write_row_group(COLUMNS)
    data = sink.getvalue()
    assert data[:4] == b"PAR1"
    assert data[-4:] == b"PAR1"
    reader = ParquetFileReader(io.BytesIO(data))
    assert reader.metadata.num_rows == 3


def test_many_booleans_round_trip(tmp_path):
    flags = [i % 3 == 0 for i in range(21)]
    path = tmp_path / "b.parquet"
    _write(path, [[list(range(21)), [str(i) for i in range(21)], flags]])
    with ParquetFileReader(path) as reader:
        assert reader.read_row_group(0)["flag"] == flags


def test_multiple_row_groups(tmp_path):
    path = tmp_path / "m.parquet"
    first = [c[:2] for c in COLUMNS]
    _write(path, [first, COLUMNS])
    with ParquetFileReader(path) as reader:
        assert reader.metadata.row_group_num_rows == (2, 3)
        assert reader.metadata.num_row_groups == 2
        assert reader.metadata.num_rows == 5
        contents = [v for g in reader.iter_row_groups() for v in g["content"]]
    assert contents == first[1] + COLUMNS[1]


def test_empty_row_group(tmp_path):
    path = tmp_path / "e.parquet"
    _write(path, [[[], [], []]])
    with ParquetFileReader(path) as reader:
        assert reader.metadata.row_group_num_rows == (0,)
        assert reader.read_row_group(0) == {"timestamp": [], "content": [], "flag": []}


def test_sorting_columns_round_trip(tmp_path):
    path = tmp_path / "s.parquet"
    sorting = [(0, False, True), (2, True, False)]
    _write(path, [COLUMNS], sorting_columns=sorting)
    with ParquetFileReader(path) as reader:
        assert reader.metadata.sorting_columns == tuple(sorting)


def test_file_objects(tmp_path):
    sink = io.BytesIO()
    with ParquetFileWriter(sink, FIELDS, compression=Compression.ZSTD) as writer:
        writer.write_row_group(COLUMNS)
    reader = ParquetFileReader(io.BytesIO(sink.getvalue()))
    assert reader.read_row_group(0)["timestamp"] == COLUMNS[0]


def test_surrogate_escaped_strings(tmp_path):
    raw = b"bad \xff byte".decode("utf-8", "surrogateescape")
    path = tmp_path / "x.parquet"
    _write(path, [[[1], [raw], [False]]])
    with ParquetFileReader(path) as reader:
        assert reader.read_row_group(0)["content"] == [raw]


def test_mismatched_lengths(tmp_path):
    with ParquetFileWriter(tmp_path / "a.parquet", FIELDS) as writer:
        with pytest.raises(ParquetFormatError):
            writer.write_row_group([[1, 2], ["a"], [True]])


def test_wrong_column_count(tmp_path):
    with ParquetFileWriter(tmp_path / "a.parquet", FIELDS) as writer:
        with pytest.raises(ParquetFormatError):
            writer.write_row_group([[1]])


def test_write_after_close(tmp_path):
    writer = ParquetFileWriter(tmp_path / "a.parquet", FIELDS)
    writer.close()
    with pytest.raises(ParquetFormatError):
        writer.write_row_group(COLUMNS)


def test_not_parquet(tmp_path):
    path = tmp_path / "plain.txt"
    path.write_bytes(b"this is not a parquet file at all")
    with pytest.raises(ParquetFormatError):
        ParquetFileReader(path)


def test_too_small():
    with pytest.raises(ParquetFormatError):
        ParquetFileReader(io.BytesIO(b"PAR1"))


def test_invalid_field_kind():
    with pytest.raises(ValueError):
        Field("x", "float128")