"""A small reader and writer for flat Parquet files with PLAIN-encoded columns."""

from __future__ import annotations

import enum
import gzip
import os
import struct
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterator, Sequence, Union

import zstandard

MAGIC = b"PAR1"

Source = Union[str, "os.PathLike[str]", BinaryIO]
SortingColumn = tuple  # (column_index, descending, nulls_first)

# Thrift compact protocol type codes.
_T_TRUE = 1
_T_FALSE = 2
_T_BYTE = 3
_T_I16 = 4
_T_I32 = 5
_T_I64 = 6
_T_DOUBLE = 7
_T_BINARY = 8
_T_LIST = 9
_T_SET = 10
_T_MAP = 11
_T_STRUCT = 12
_T_BOOL = _T_TRUE

# Parquet enumerations.
_PHYSICAL = {"boolean": 0, "int32": 1, "int64": 2, "string": 6, "binary": 6}
_CONVERTED_UTF8 = 0
_REQUIRED = 0
_PAGE_DATA = 0
_PAGE_DICTIONARY = 2
_ENCODING_PLAIN = 0
_ENCODING_RLE = 3

KINDS = frozenset(_PHYSICAL)


class ParquetFormatError(ValueError):
    """Raised for malformed or unsupported Parquet data."""


class Compression(enum.IntEnum):
    """Page compression codecs."""

    UNCOMPRESSED = 0
    GZIP = 2
    ZSTD = 6


@dataclass(frozen=True)
class Field:
    """A required, flat column: its name and value kind."""

    name: str
    kind: str

    def __post_init__(self) -> None:
        if self.kind not in KINDS:
            raise ValueError(f"unsupported column kind: {self.kind!r}")


@dataclass(frozen=True)
class FileMetadata:
    """Footer information of a Parquet file."""

    num_rows: int
    fields: tuple
    row_group_num_rows: tuple
    sorting_columns: tuple = ()
    created_by: str = ""

    @property
    def num_row_groups(self) -> int:
        return len(self.row_group_num_rows)


# --- Thrift compact protocol -------------------------------------------------


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _zigzag(value: int) -> int:
    return value << 1 if value >= 0 else ((-value) << 1) - 1


def _write_value(buf: bytearray, ttype: int, value: Any) -> None:
    if ttype == _T_BOOL:
        buf.append(1 if value else 2)
    elif ttype == _T_BYTE:
        buf += struct.pack("<b", value)
    elif ttype in (_T_I16, _T_I32, _T_I64):
        buf += _varint(_zigzag(value))
    elif ttype == _T_DOUBLE:
        buf += struct.pack("<d", value)
    elif ttype == _T_BINARY:
        data = value.encode("utf-8") if isinstance(value, str) else bytes(value)
        buf += _varint(len(data))
        buf += data
    elif ttype == _T_STRUCT:
        _write_struct(buf, value)
    elif ttype == _T_LIST:
        elem_type, items = value
        if len(items) < 15:
            buf.append((len(items) << 4) | elem_type)
        else:
            buf.append(0xF0 | elem_type)
            buf += _varint(len(items))
        for item in items:
            _write_value(buf, elem_type, item)
    else:
        raise ParquetFormatError(f"cannot encode thrift type {ttype}")


def _write_struct(buf: bytearray, fields: Sequence[tuple]) -> None:
    last = 0
    for field_id, ttype, value in fields:
        if value is None:
            continue
        code = (_T_TRUE if value else _T_FALSE) if ttype == _T_BOOL else ttype
        delta = field_id - last
        if 0 < delta <= 15:
            buf.append((delta << 4) | code)
        else:
            buf.append(code)
            buf += _varint(_zigzag(field_id))
        last = field_id
        if ttype != _T_BOOL:
            _write_value(buf, ttype, value)
    buf.append(0)


def _encode_struct(fields: Sequence[tuple]) -> bytes:
    buf = bytearray()
    _write_struct(buf, fields)
    return bytes(buf)


class _CompactReader:
    def __init__(self, data: bytes, pos: int = 0) -> None:
        self.data = data
        self.pos = pos

    def _byte(self) -> int:
        value = self.data[self.pos]
        self.pos += 1
        return value

    def _varint(self) -> int:
        result = shift = 0
        while True:
            byte = self._byte()
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
            shift += 7

    def _zigzag(self) -> int:
        n = self._varint()
        return (n >> 1) ^ -(n & 1)

    def _value(self, ttype: int) -> Any:
        if ttype in (_T_TRUE, _T_FALSE):
            return self._byte() == 1
        if ttype == _T_BYTE:
            return struct.unpack("<b", bytes([self._byte()]))[0]
        if ttype in (_T_I16, _T_I32, _T_I64):
            return self._zigzag()
        if ttype == _T_DOUBLE:
            value = struct.unpack_from("<d", self.data, self.pos)[0]
            self.pos += 8
            return value
        if ttype == _T_BINARY:
            size = self._varint()
            end = self.pos + size
            if end > len(self.data):
                raise ParquetFormatError("truncated thrift binary")
            value = self.data[self.pos:end]
            self.pos = end
            return value
        if ttype in (_T_LIST, _T_SET):
            header = self._byte()
            size = header >> 4
            elem_type = header & 0x0F
            if size == 15:
                size = self._varint()
            return [self._value(elem_type) for _ in range(size)]
        if ttype == _T_MAP:
            size = self._varint()
            if not size:
                return {}
            types = self._byte()
            return {
                self._value(types >> 4): self._value(types & 0x0F) for _ in range(size)
            }
        if ttype == _T_STRUCT:
            return self.read_struct()
        raise ParquetFormatError(f"unknown thrift type {ttype}")

    def read_struct(self) -> dict:
        result: dict = {}
        last = 0
        while True:
            header = self._byte()
            if header == 0:
                return result
            ttype = header & 0x0F
            delta = header >> 4
            field_id = last + delta if delta else self._zigzag()
            last = field_id
            if ttype == _T_TRUE:
                result[field_id] = True
            elif ttype == _T_FALSE:
                result[field_id] = False
            else:
                result[field_id] = self._value(ttype)


# --- PLAIN encoding ------------------------------------------------------------


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8", "surrogateescape")
    return bytes(value)


def _encode_plain(kind: str, values: Sequence[Any]) -> bytes:
    try:
        if kind == "int64":
            return struct.pack(f"<{len(values)}q", *values)
        if kind == "int32":
            return struct.pack(f"<{len(values)}i", *values)
    except struct.error as exc:
        raise ParquetFormatError(f"value out of range for {kind}: {exc}") from exc
    if kind == "boolean":
        out = bytearray((len(values) + 7) // 8)
        for i, value in enumerate(values):
            if value:
                out[i >> 3] |= 1 << (i & 7)
        return bytes(out)
    parts = bytearray()
    for value in values:
        data = _to_bytes(value)
        parts += struct.pack("<I", len(data))
        parts += data
    return bytes(parts)


def _decode_plain(kind: str, data: bytes, count: int) -> list:
    if kind in ("int64", "int32"):
        fmt = f"<{count}{'q' if kind == 'int64' else 'i'}"
        if struct.calcsize(fmt) > len(data):
            raise ParquetFormatError("truncated data page")
        return list(struct.unpack_from(fmt, data))
    if kind == "boolean":
        if (count + 7) // 8 > len(data):
            raise ParquetFormatError("truncated data page")
        return [bool(data[i >> 3] >> (i & 7) & 1) for i in range(count)]
    values = []
    pos = 0
    for _ in range(count):
        if pos + 4 > len(data):
            raise ParquetFormatError("truncated data page")
        (size,) = struct.unpack_from("<I", data, pos)
        pos += 4
        if pos + size > len(data):
            raise ParquetFormatError("truncated data page")
        raw = data[pos:pos + size]
        pos += size
        values.append(raw.decode("utf-8", "surrogateescape") if kind == "string" else raw)
    return values


# --- Writer ----------------------------------------------------------------------


class ParquetFileWriter:
    """Writes row groups of required, flat columns to a Parquet file."""

    def __init__(
        self,
        sink: Source,
        fields: Sequence[Field],
        compression: Compression = Compression.UNCOMPRESSED,
        compression_level: int = 3,
        sorting_columns: Sequence[SortingColumn] = (),
        created_by: str = "bklogs",
    ) -> None:
        self.fields = tuple(fields)
        if not self.fields:
            raise ParquetFormatError("a schema needs at least one column")
        self.compression = Compression(compression)
        self.sorting_columns = tuple(
            (int(idx), bool(desc), bool(nulls)) for idx, desc, nulls in sorting_columns
        )
        self.created_by = created_by
        self._compressor = (
            zstandard.ZstdCompressor(level=compression_level)
            if self.compression is Compression.ZSTD
            else None
        )
        self._compression_level = compression_level
        if isinstance(sink, (str, os.PathLike)):
            self._file: BinaryIO = open(sink, "wb")
            self._owns_file = True
        else:
            self._file = sink
            self._owns_file = False
        self._row_groups: list = []
        self._num_rows = 0
        self._pos = 0
        self._closed = False
        self._write(MAGIC)

    def _write(self, data: bytes) -> None:
        self._file.write(data)
        self._pos += len(data)

    def _compress(self, data: bytes) -> bytes:
        if self._compressor is not None:
            return self._compressor.compress(data)
        if self.compression is Compression.GZIP:
            return gzip.compress(data, compresslevel=max(1, min(9, self._compression_level)))
        return data

    def write_row_group(self, columns: Sequence[Sequence[Any]]) -> None:
        """Write one row group; ``columns`` holds one value list per field."""
        if self._closed:
            raise ParquetFormatError("writer is closed")
        columns = [list(column) for column in columns]
        if len(columns) != len(self.fields):
            raise ParquetFormatError(
                f"expected {len(self.fields)} columns, got {len(columns)}"
            )
        num_rows = len(columns[0])
        if any(len(column) != num_rows for column in columns):
            raise ParquetFormatError("all columns of a row group need the same length")

        chunks = []
        total_size = 0
        for field, values in zip(self.fields, columns):
            payload = _encode_plain(field.kind, values)
            body = self._compress(payload)
            header = _encode_struct([
                (1, _T_I32, _PAGE_DATA),
                (2, _T_I32, len(payload)),
                (3, _T_I32, len(body)),
                (5, _T_STRUCT, [
                    (1, _T_I32, num_rows),
                    (2, _T_I32, _ENCODING_PLAIN),
                    (3, _T_I32, _ENCODING_RLE),
                    (4, _T_I32, _ENCODING_RLE),
                ]),
            ])
            offset = self._pos
            self._write(header)
            self._write(body)
            uncompressed = len(header) + len(payload)
            total_size += uncompressed
            meta = [
                (1, _T_I32, _PHYSICAL[field.kind]),
                (2, _T_LIST, (_T_I32, [_ENCODING_PLAIN, _ENCODING_RLE])),
                (3, _T_LIST, (_T_BINARY, [field.name])),
                (4, _T_I32, int(self.compression)),
                (5, _T_I64, num_rows),
                (6, _T_I64, uncompressed),
                (7, _T_I64, len(header) + len(body)),
                (9, _T_I64, offset),
            ]
            chunks.append([(2, _T_I64, offset), (3, _T_STRUCT, meta)])

        sorting = [
            [(1, _T_I32, idx), (2, _T_BOOL, desc), (3, _T_BOOL, nulls)]
            for idx, desc, nulls in self.sorting_columns
        ]
        self._row_groups.append([
            (1, _T_LIST, (_T_STRUCT, chunks)),
            (2, _T_I64, total_size),
            (3, _T_I64, num_rows),
            (4, _T_LIST, (_T_STRUCT, sorting)) if sorting else (4, _T_LIST, None),
        ])
        self._num_rows += num_rows

    def close(self) -> None:
        """Write the footer and release the file; further calls do nothing."""
        if self._closed:
            return
        self._closed = True
        schema = [[(4, _T_BINARY, "schema"), (5, _T_I32, len(self.fields))]]
        for field in self.fields:
            is_string = field.kind == "string"
            schema.append([
                (1, _T_I32, _PHYSICAL[field.kind]),
                (3, _T_I32, _REQUIRED),
                (4, _T_BINARY, field.name),
                (6, _T_I32, _CONVERTED_UTF8 if is_string else None),
                (10, _T_STRUCT, [(1, _T_STRUCT, [])] if is_string else None),
            ])
        footer = _encode_struct([
            (1, _T_I32, 1),
            (2, _T_LIST, (_T_STRUCT, schema)),
            (3, _T_I64, self._num_rows),
            (4, _T_LIST, (_T_STRUCT, self._row_groups)),
            (6, _T_BINARY, self.created_by),
        ])
        try:
            self._write(footer)
            self._write(struct.pack("<I", len(footer)))
            self._write(MAGIC)
            self._file.flush()
        finally:
            if self._owns_file:
                self._file.close()

    def __enter__(self) -> ParquetFileWriter:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


# --- Reader ----------------------------------------------------------------------


def _field_from_schema(element: dict) -> Field:
    if element.get(5):
        raise ParquetFormatError("nested columns are not supported")
    if element.get(3, _REQUIRED) != _REQUIRED:
        raise ParquetFormatError("only required columns are supported")
    name = element[4].decode("utf-8")
    physical = element.get(1)
    if physical == 6:
        logical = element.get(10) or {}
        is_string = element.get(6) == _CONVERTED_UTF8 or 1 in logical
        return Field(name, "string" if is_string else "binary")
    kinds = {0: "boolean", 1: "int32", 2: "int64"}
    if physical not in kinds:
        raise ParquetFormatError(f"unsupported physical type {physical} for {name!r}")
    return Field(name, kinds[physical])


class ParquetFileReader:
    """Reads flat Parquet files with PLAIN-encoded, required columns."""

    def __init__(self, source: Source) -> None:
        if isinstance(source, (str, os.PathLike)):
            self._file: BinaryIO = open(source, "rb")
            self._owns_file = True
        else:
            self._file = source
            self._owns_file = False
        try:
            self.metadata = self._read_footer()
        except BaseException:
            self.close()
            raise

    def _read_footer(self) -> FileMetadata:
        self._file.seek(0, os.SEEK_END)
        size = self._file.tell()
        if size < 12:
            raise ParquetFormatError("file is too small to be a Parquet file")
        self._file.seek(0)
        head = self._file.read(4)
        self._file.seek(size - 8)
        tail = self._file.read(8)
        if head != MAGIC or tail[4:] != MAGIC:
            raise ParquetFormatError("not a Parquet file: missing magic bytes")
        (footer_len,) = struct.unpack("<I", tail[:4])
        if footer_len > size - 12:
            raise ParquetFormatError("footer length exceeds file size")
        self._file.seek(size - 8 - footer_len)
        footer = self._file.read(footer_len)
        try:
            meta = _CompactReader(footer).read_struct()
            elements = meta[2]
            fields = tuple(_field_from_schema(el) for el in elements[1:])
            self._row_groups = meta.get(4, [])
            row_counts = tuple(rg[3] for rg in self._row_groups)
            sorting: tuple = ()
            if self._row_groups:
                sorting = tuple(
                    (sc[1], sc.get(2, False), sc.get(3, False))
                    for sc in self._row_groups[0].get(4, [])
                )
            created_by = meta.get(6, b"").decode("utf-8", "replace")
            return FileMetadata(
                num_rows=meta.get(3, 0),
                fields=fields,
                row_group_num_rows=row_counts,
                sorting_columns=sorting,
                created_by=created_by,
            )
        except (IndexError, KeyError, struct.error, UnicodeDecodeError) as exc:
            raise ParquetFormatError(f"corrupt Parquet footer: {exc}") from exc

    @staticmethod
    def _decompress(codec: int, body: bytes, size: int) -> bytes:
        try:
            if codec == Compression.UNCOMPRESSED:
                return body
            if codec == Compression.ZSTD:
                return zstandard.ZstdDecompressor().decompress(body, max_output_size=size)
            if codec == Compression.GZIP:
                return gzip.decompress(body)
        except (zstandard.ZstdError, OSError, EOFError) as exc:
            raise ParquetFormatError(f"failed to decompress page: {exc}") from exc
        raise ParquetFormatError(f"unsupported compression codec {codec}")

    def _read_column(self, field: Field, chunk: dict) -> list:
        meta = chunk[3]
        codec = meta.get(4, 0)
        num_values = meta[5]
        self._file.seek(meta[9])
        data = self._file.read(meta[7])
        values: list = []
        pos = 0
        while len(values) < num_values:
            reader = _CompactReader(data, pos)
            header = reader.read_struct()
            pos = reader.pos
            body = data[pos:pos + header[3]]
            pos += header[3]
            page_type = header[1]
            if page_type == _PAGE_DICTIONARY:
                raise ParquetFormatError("dictionary-encoded columns are not supported")
            if page_type != _PAGE_DATA:
                raise ParquetFormatError(f"unsupported page type {page_type}")
            page = header[5]
            if page.get(2, _ENCODING_PLAIN) != _ENCODING_PLAIN:
                raise ParquetFormatError("only PLAIN encoding is supported")
            raw = self._decompress(codec, body, header[2])
            values.extend(_decode_plain(field.kind, raw, page[1]))
        return values

    def read_row_group(self, index: int) -> dict:
        """Return the columns of row group ``index`` keyed by column name."""
        row_group = self._row_groups[index]
        try:
            return {
                field.name: self._read_column(field, chunk)
                for field, chunk in zip(self.metadata.fields, row_group[1])
            }
        except (IndexError, KeyError, struct.error) as exc:
            raise ParquetFormatError(f"corrupt column chunk: {exc}") from exc

    def iter_row_groups(self) -> Iterator[dict]:
        """Yield every row group in file order."""
        for index in range(len(self._row_groups)):
            yield self.read_row_group(index)

    def close(self) -> None:
        if self._owns_file:
            self._file.close()

    def __enter__(self) -> ParquetFileReader:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()