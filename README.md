# bklogs

Parse Buildkite job logs, turn them into structured entries, export them to
Parquet files and query those files again.

Buildkite log lines carry their timestamp in an escape sequence
(`ESC _bk;t=<milliseconds> BEL`) followed by the line content, which may still
hold ANSI colour codes. `bklogs` splits each line into a timestamp and content,
strips ANSI codes on request, tracks which group (`~~~`, `---` or `+++`
header) a line belongs to, and classifies lines as commands, group headers or
progress updates.

## Installation

```
pip install bklogs
```

This installs the `bklog` command and the `bklogs` package.

## Command line

### Parsing logs

Parse a local log file and print it with ANSI codes removed:

```
bklog parse -file buildkite.log -strip-ansi
```

Show only commands, as JSON:

```
bklog parse -file buildkite.log -filter command -json
```

Export to Parquet and print a processing summary:

```
bklog parse -file buildkite.log -parquet output.parquet -summary
```

Logs can also be fetched straight from the Buildkite API. Set
`BUILDKITE_API_TOKEN` in the environment, then give all four of `-org`,
`-pipeline`, `-build` and `-job`:

```
export BUILDKITE_API_TOKEN=token
bklog parse -org myorg -pipeline mypipe -build 123 -job abc-def -json
bklog parse -org myorg -pipeline mypipe -build 123 -job abc-def -parquet logs.parquet
```

`-file` and the API options cannot be used together.

Options of `parse`:

| Option        | Meaning                                               |
|---------------|-------------------------------------------------------|
| `-file`       | Path to a local log file                              |
| `-json`       | Print entries as JSON                                 |
| `-strip-ansi` | Remove ANSI escape sequences from printed content     |
| `-filter`     | Keep only `command`, `group` (or `section`), `progress` |
| `-summary`    | Print a processing summary at the end                 |
| `-groups`     | Show the group each entry belongs to                  |
| `-parquet`    | Write entries to this Parquet file instead of printing |
| `-org`, `-pipeline`, `-build`, `-job` | Buildkite API coordinates     |

Printed timestamps are shown in local time.

### Querying Parquet files

```
bklog query -file logs.parquet -op list-groups
bklog query -file logs.parquet -op by-group -group "Running tests"
bklog query -file logs.parquet -op info
bklog query -file logs.parquet -op tail -tail 20
bklog query -file logs.parquet -op seek -seek 1000 -limit 50
bklog query -file logs.parquet -op list-groups -format json
```

Operations:

- `list-groups` – every group with its entry, command and progress counts and
  the first and last time it was seen, ordered by first appearance
- `by-group` – entries whose group name contains the `-group` pattern
  (case-insensitive; entries without a group match as `<no group>`)
- `info` – row count, column count, file size and number of row groups
- `tail` – the last `-tail` entries (10 by default)
- `seek` – entries starting at row `-seek` (0-based), optionally capped by
  `-limit`

`-format json` switches any operation to JSON output; `-stats` (on by default)
adds query statistics.

Other commands: `bklog version` and `bklog help`.

## Library use

### Parsing

```python
from bklogs.parser import Parser

parser = Parser()
with open("buildkite.log", encoding="utf-8") as reader:
    for entry in parser.all(reader):
        if entry.is_command():
            print(entry.group, entry.clean_content())
```

`Parser.parse_line` handles a single line and keeps track of the current
group between calls; a malformed timestamp raises `ValueError`.
`Parser.new_iterator` returns a `LogIterator` that stops at the first parse
error and keeps it for `err()`.

Each `LogEntry` offers `has_timestamp()`, `is_command()`, `is_group()`
(with `is_section()` as an alias), `is_progress()` and `clean_content()`.

`bklogs.scanner.strip_ansi` removes ANSI escape sequences from any string.

### Exporting to Parquet

```python
from bklogs.parser import Parser
from bklogs.parquet import export_seq_to_parquet_with_filter

parser = Parser()
with open("buildkite.log", encoding="utf-8") as reader:
    export_seq_to_parquet_with_filter(
        parser.all(reader),
        "commands.parquet",
        lambda entry: entry.is_command(),
    )
```

Files hold the columns `timestamp` (milliseconds since the epoch), `content`,
`group`, `has_timestamp`, `is_command`, `is_group` and `is_progress`.
`export_to_parquet` writes a list of entries as one zstd-compressed row group;
`export_iterator_to_parquet` and `export_seq_to_parquet` stream a
`LogIterator` or any iterable in batches of 1000 entries, one row group each.
`ParquetWriter` writes batches by hand and works as a context manager.

The lower-level `bklogs.parquet_format` module provides `ParquetFileWriter`
and `ParquetFileReader` for flat files of required columns.

### Reading Parquet files

```python
from bklogs.query import ParquetReader

reader = ParquetReader("logs.parquet")
print(reader.get_file_info().row_count)

for entry in reader.filter_by_group_iter("environment"):
    print(entry.timestamp, entry.content)

for entry in reader.seek_to_row(100):
    print(entry.content)
```

`read_parquet_file_iter`, `filter_by_group_iter` and `get_parquet_file_info`
are available as plain functions as well. `seek_to_row` raises `ValueError`
when the row lies past the end of the file.

### Buildkite API

```python
from bklogs.api import BuildkiteAPIClient, validate_api_params

validate_api_params("myorg", "mypipe", "123", "abc-def")
client = BuildkiteAPIClient("token", "0.1.0")
```

`validate_api_params` raises `ValueError` naming every missing parameter.
`BuildkiteAPIClient.get_job_log` returns the open response streaming the raw
log of one job; it raises `APIError` when no token is set or the request fails.

## Limitations

The Parquet reader handles only flat files of required, PLAIN-encoded columns,
uncompressed or compressed with gzip or zstd, such as the files this package
writes. Dictionary-encoded, nullable or nested columns, and other codecs, are
rejected with `ParquetFormatError`, so Parquet files written by other tools
may not be readable.

## Running the tests

```
pip install "bklogs[test]"
pytest
```