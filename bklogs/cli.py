"""The ``bklog`` command: parse Buildkite logs and query Parquet exports."""

from __future__ import annotations

import argparse
import itertools
import json
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import IO, Any, Callable, Iterator, Optional, Sequence

from bklogs.api import APIError, BuildkiteAPIClient, validate_api_params
from bklogs.parquet import export_seq_to_parquet_with_filter
from bklogs.parser import LogEntry, Parser, Reader
from bklogs.query_cli import QueryConfig, run_query

VERSION = "dev"
PROG = "bklog"
TOKEN_ENV = "BUILDKITE_API_TOKEN"

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})
_JSON_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


@dataclass
class Config:
    """Options of a parse run."""

    file_path: str = ""
    output_json: bool = False
    strip_ansi: bool = False
    filter: str = ""
    show_summary: bool = False
    show_groups: bool = False
    parquet_file: str = ""
    organization: str = ""
    pipeline: str = ""
    build: str = ""
    job: str = ""


@dataclass
class ProcessingSummary:
    """Counts gathered while processing a log."""

    total_entries: int = 0
    filtered_entries: int = 0
    bytes_processed: int = 0
    entries_with_time: int = 0
    commands: int = 0
    sections: int = 0
    progress: int = 0


@dataclass(frozen=True)
class _Flag:
    name: str
    dest: str
    kind: str
    default: Any
    help: str


_PARSE_FLAGS = (
    _Flag("file", "file_path", "string", "", "Path to Buildkite log file (use this OR API parameters)"),
    _Flag("json", "output_json", "bool", False, "Output as JSON"),
    _Flag("strip-ansi", "strip_ansi", "bool", False, "Strip ANSI escape sequences from output"),
    _Flag("filter", "filter", "string", "", "Filter entries by type: command, progress, group"),
    _Flag("summary", "show_summary", "bool", False, "Show processing summary at the end"),
    _Flag("groups", "show_groups", "bool", False, "Show group/section information"),
    _Flag("parquet", "parquet_file", "string", "", "Export to Parquet file (e.g., output.parquet)"),
    _Flag("org", "organization", "string", "", "Buildkite organization slug (for API)"),
    _Flag("pipeline", "pipeline", "string", "", "Buildkite pipeline slug (for API)"),
    _Flag("build", "build", "string", "", "Buildkite build number or UUID (for API)"),
    _Flag("job", "job", "string", "", "Buildkite job ID (for API)"),
)

_QUERY_FLAGS = (
    _Flag("file", "parquet_file", "string", "", "Path to Parquet log file (required)"),
    _Flag("op", "operation", "string", "list-groups",
          "Query operation: list-groups, by-group, info, tail, seek"),
    _Flag("group", "group_name", "string", "", "Group name to filter by (for by-group operation)"),
    _Flag("format", "format", "string", "text", "Output format: text, json"),
    _Flag("stats", "show_stats", "bool", True, "Show query statistics"),
    _Flag("limit", "limit_entries", "int", 0,
          "Limit number of entries returned (0 = no limit, enables early termination)"),
    _Flag("tail", "tail_lines", "int", 10,
          "Number of lines to show from end (for tail operation)"),
    _Flag("seek", "seek_to_row", "int", 0,
          "Row number to seek to (0-based, for seek operation)"),
)


class _FlagError(Exception):
    pass


class _Exit(Exception):
    def __init__(self, code: int) -> None:
        super().__init__(code)
        self.code = code


class _FlagParser(argparse.ArgumentParser):
    def error(self, message: str) -> Any:  # type: ignore[override]
        raise _FlagError(message)


def _bool_value(text: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value {text!r}")


def _build_parser(flags: Sequence[_Flag]) -> _FlagParser:
    parser = _FlagParser(prog=PROG, add_help=False, allow_abbrev=False)
    for flag in flags:
        options = ("-" + flag.name, "--" + flag.name)
        if flag.kind == "bool":
            parser.add_argument(*options, dest=flag.dest, nargs="?", const=True,
                                type=_bool_value, default=flag.default)
        elif flag.kind == "int":
            parser.add_argument(*options, dest=flag.dest, type=int, default=flag.default)
        else:
            parser.add_argument(*options, dest=flag.dest, default=flag.default)
    parser.add_argument("-h", "-help", "--help", dest="help_requested", action="store_true")
    return parser


def _format_defaults(flags: Sequence[_Flag]) -> str:
    lines = []
    for flag in sorted(flags, key=lambda f: f.name):
        head = f"  -{flag.name}" if flag.kind == "bool" else f"  -{flag.name} {flag.kind}"
        text = flag.help
        if flag.kind == "bool" and flag.default:
            text += " (default true)"
        elif flag.kind == "int" and flag.default:
            text += f" (default {flag.default})"
        elif flag.kind == "string" and flag.default:
            text += f' (default "{flag.default}")'
        lines.append(f"{head}\n    \t{text}\n")
    return "".join(lines)


def _parse_flags(flags: Sequence[_Flag], args: Sequence[str], usage: Callable[[], None]) -> dict:
    try:
        namespace = _build_parser(flags).parse_args(list(args))
    except _FlagError as exc:
        print(exc, file=sys.stderr)
        usage()
        raise _Exit(2) from exc
    values = vars(namespace)
    if values.pop("help_requested"):
        usage()
        raise _Exit(0)
    return values


def _print_usage() -> None:
    sys.stdout.write(
        f"Usage: {PROG} <subcommand> [options]\n\n"
        "Subcommands:\n"
        "  parse     Parse Buildkite log files and export to various formats\n"
        "  query     Query Parquet log files\n"
        "  version   Show version information\n"
        "  help      Show this help message\n"
        "\n"
        f"Use '{PROG} <subcommand> -h' for subcommand-specific help"
    )


def _print_parse_usage() -> None:
    sys.stdout.write(
        f"Usage: {PROG} parse [options]\n\n"
        "Parse Buildkite log files from local files or API and export to various formats.\n"
        "\nYou must provide either:\n"
        "  -file <path>     Local log file\n"
        "  OR API params:   -org -pipeline -build -job\n"
        f"\nFor API usage, set {TOKEN_ENV} environment variable.\n"
        "\nOptions:\n"
        + _format_defaults(_PARSE_FLAGS)
        + "\nExamples:\n"
        "  # Local file:\n"
        f"  {PROG} parse -file buildkite.log -strip-ansi\n"
        f"  {PROG} parse -file buildkite.log -filter command -json\n"
        f"  {PROG} parse -file buildkite.log -parquet output.parquet -summary\n"
        "\n  # API:\n"
        f"  {PROG} parse -org myorg -pipeline mypipe -build 123 -job abc-def -json\n"
        f"  {PROG} parse -org myorg -pipeline mypipe -build 123 -job abc-def -parquet logs.parquet\n"
    )


def _print_query_usage() -> None:
    sys.stdout.write(
        f"Usage: {PROG} query -file <parquet-file> [options]\n\n"
        "Query Parquet log files.\n"
        "\nOptions:\n"
        + _format_defaults(_QUERY_FLAGS)
        + "\nOperations:\n"
        "  list-groups  List all groups with statistics\n"
        "  by-group     Show entries for a specific group\n"
        "  info         Show file metadata (row count, file size, etc.)\n"
        "  tail         Show last N entries from the file\n"
        "  seek         Start reading from a specific row number\n"
        "\nExamples:\n"
        f"  {PROG} query -file logs.parquet -op list-groups\n"
        f'  {PROG} query -file logs.parquet -op by-group -group "Running tests"\n'
        f"  {PROG} query -file logs.parquet -op info\n"
        f"  {PROG} query -file logs.parquet -op tail -tail 20\n"
        f"  {PROG} query -file logs.parquet -op seek -seek 1000 -limit 50\n"
        f"  {PROG} query -file logs.parquet -op list-groups -format json\n"
    )


def should_include_entry(entry: LogEntry, filter_name: str) -> bool:
    """Whether ``entry`` passes the named type filter; unknown names pass all."""
    if filter_name == "command":
        return entry.is_command()
    if filter_name in ("group", "section"):
        return entry.is_group()
    if filter_name == "progress":
        return entry.is_progress()
    return True


def _count(summary: ProcessingSummary, entry: LogEntry) -> None:
    summary.total_entries += 1
    if entry.has_timestamp():
        summary.entries_with_time += 1
    if entry.is_command():
        summary.commands += 1
    if entry.is_group():
        summary.sections += 1
    if entry.is_progress():
        summary.progress += 1


def _local(moment: datetime) -> datetime:
    try:
        return moment.astimezone()
    except (OverflowError, ValueError, OSError):
        return moment


def _stamp(moment: datetime, separator: str) -> str:
    local = _local(moment)
    return (
        f"{local.year:04d}-{local.month:02d}-{local.day:02d}{separator}"
        f"{local.hour:02d}:{local.minute:02d}:{local.second:02d}."
        f"{local.microsecond // 1000:03d}"
    )


def _write_json(out: IO[str], obj: object) -> None:
    text = json.dumps(obj, indent=2, ensure_ascii=False)
    for char, escape in _JSON_ESCAPES:
        text = text.replace(char, escape)
    out.write(text + "\n")


def _selected(
    reader: Reader, parser: Parser, config: Config, summary: ProcessingSummary
) -> Iterator[LogEntry]:
    try:
        for entry in parser.all(reader):
            _count(summary, entry)
            if should_include_entry(entry, config.filter):
                summary.filtered_entries += 1
                yield entry
    except (ValueError, OSError) as exc:
        raise ValueError(f"parse error: {exc}") from exc


def _output_json(
    reader: Reader, parser: Parser, config: Config, summary: ProcessingSummary, out: IO[str]
) -> None:
    records = []
    for entry in _selected(reader, parser, config, summary):
        record: dict = {}
        if entry.has_timestamp():
            record["timestamp"] = _stamp(entry.timestamp, "T") + "Z"
        record["content"] = entry.clean_content() if config.strip_ansi else entry.content
        record["has_timestamp"] = entry.has_timestamp()
        if config.show_groups and entry.group:
            record["group"] = entry.group
        records.append(record)
    _write_json(out, records or None)


def _output_text(
    reader: Reader, parser: Parser, config: Config, summary: ProcessingSummary, out: IO[str]
) -> None:
    for entry in _selected(reader, parser, config, summary):
        content = entry.clean_content() if config.strip_ansi else entry.content
        labels = []
        if entry.has_timestamp():
            labels.append(_stamp(entry.timestamp, " "))
        if config.show_groups and entry.group:
            labels.append(entry.group)
        out.write("".join(f"[{label}] " for label in labels) + content + "\n")


def _export_parquet(
    reader: Reader, parser: Parser, filename: str, filter_name: str, summary: ProcessingSummary
) -> None:
    filter_func: Optional[Callable[[LogEntry], bool]] = None
    if filter_name:
        def filter_func(entry: LogEntry) -> bool:
            return should_include_entry(entry, filter_name)

    def counting() -> Iterator[LogEntry]:
        entries = parser.all(reader)
        for line_num in itertools.count(1):
            try:
                entry = next(entries)
            except StopIteration:
                return
            except (ValueError, OSError) as exc:
                print(f"Warning: Error parsing line {line_num}: {exc}", file=sys.stderr)
                raise ValueError(f"error during iteration: {exc}") from exc
            _count(summary, entry)
            if filter_func is None or filter_func(entry):
                summary.filtered_entries += 1
            yield entry

    export_seq_to_parquet_with_filter(counting(), filename, filter_func)


def _open_source(config: Config) -> tuple:
    if config.file_path:
        try:
            handle = open(config.file_path, "rb")
        except OSError as exc:
            raise ValueError(f"failed to open file: {exc}") from exc
        try:
            size = os.fstat(handle.fileno()).st_size
        except OSError as exc:
            handle.close()
            raise ValueError(f"failed to get file info: {exc}") from exc
        return handle, size

    api_token = os.environ.get(TOKEN_ENV, "")
    if not api_token:
        raise ValueError(f"{TOKEN_ENV} environment variable is required for API access")
    client = BuildkiteAPIClient(api_token, VERSION)
    try:
        response = client.get_job_log(
            config.organization, config.pipeline, config.build, config.job
        )
    except APIError as exc:
        raise ValueError(f"failed to fetch logs from API: {exc}") from exc
    return response, -1


def run_parse(config: Config, out: Optional[IO[str]] = None) -> ProcessingSummary:
    """Parse the log named by ``config`` and print or export it.

    Returns the processing summary; raises ValueError when the source cannot
    be read or a line cannot be parsed.
    """
    stream = sys.stdout if out is None else out
    reader, bytes_processed = _open_source(config)
    summary = ProcessingSummary(bytes_processed=bytes_processed)
    parser = Parser()
    try:
        if config.parquet_file:
            try:
                _export_parquet(reader, parser, config.parquet_file, config.filter, summary)
            except (ValueError, OSError) as exc:
                raise ValueError(f"failed to export to Parquet: {exc}") from exc
        else:
            output = _output_json if config.output_json else _output_text
            try:
                output(reader, parser, config, summary, stream)
            except (ValueError, OSError) as exc:
                raise ValueError(f"failed to process data: {exc}") from exc
    finally:
        try:
            reader.close()
        except OSError as exc:
            print(f"Warning: failed to close reader: {exc}", file=sys.stderr)

    if config.show_summary:
        print_summary(summary, stream)
    return summary


def print_summary(summary: ProcessingSummary, out: Optional[IO[str]] = None) -> None:
    """Write the processing summary report."""
    stream = sys.stdout if out is None else out
    stream.write("\n--- Processing Summary ---\n")
    if summary.bytes_processed >= 0:
        stream.write(f"Bytes processed: {summary.bytes_processed / 1024:.1f} KB\n")
    else:
        stream.write("Bytes processed: (API source - unknown)\n")
    stream.write(f"Total entries: {summary.total_entries}\n")
    stream.write(f"Entries with timestamps: {summary.entries_with_time}\n")
    stream.write(f"Commands: {summary.commands}\n")
    stream.write(f"Sections: {summary.sections}\n")
    stream.write(f"Progress updates: {summary.progress}\n")
    regular = summary.total_entries - summary.commands - summary.sections - summary.progress
    stream.write(f"Regular output: {regular}\n")
    if summary.filtered_entries > 0:
        stream.write(f"Exported {summary.filtered_entries} entries to Parquet file\n")


def _parse_command(args: Sequence[str]) -> int:
    config = Config(**_parse_flags(_PARSE_FLAGS, args, _print_parse_usage))

    has_file = bool(config.file_path)
    has_api = any((config.organization, config.pipeline, config.build, config.job))
    if not has_file and not has_api:
        sys.stderr.write(
            "Error: Must provide either -file or API parameters "
            "(-org, -pipeline, -build, -job)\n\n"
        )
        _print_parse_usage()
        return 1
    if has_file and has_api:
        sys.stderr.write("Error: Cannot use both -file and API parameters simultaneously\n\n")
        _print_parse_usage()
        return 1
    if has_api:
        try:
            validate_api_params(config.organization, config.pipeline, config.build, config.job)
        except ValueError as exc:
            sys.stderr.write(f"Error: {exc}\n\n")
            _print_parse_usage()
            return 1

    try:
        run_parse(config)
    except (ValueError, OSError) as exc:
        sys.stderr.write(f"Error: {exc}\n")
        return 1
    return 0


def _query_command(args: Sequence[str]) -> int:
    config = QueryConfig(**_parse_flags(_QUERY_FLAGS, args, _print_query_usage))
    if not config.parquet_file:
        _print_query_usage()
        return 1
    try:
        run_query(config)
    except (ValueError, OSError) as exc:
        sys.stderr.write(f"Error: {exc}\n")
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the command line; return the process exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        _print_usage()
        return 1

    subcommand, rest = args[0], args[1:]
    try:
        if subcommand == "parse":
            return _parse_command(rest)
        if subcommand == "query":
            return _query_command(rest)
    except _Exit as exc:
        return exc.code

    if subcommand in ("version", "-v", "--version"):
        sys.stdout.write(f"{PROG} version {VERSION}\n")
        return 0
    if subcommand in ("help", "-h", "--help"):
        _print_usage()
        return 0
    sys.stderr.write(f"Unknown subcommand: {subcommand}\n\n")
    _print_usage()
    return 1


if __name__ == "__main__":
    sys.exit(main())