import io
import json
import os

import pytest

from bklogs.parquet import export_to_parquet
from bklogs.parser import Parser
from bklogs.query_cli import QueryConfig, run_query, truncate_string

LINES = [
    "plain line before any group",
    "\x1b_bk;t=1745322209921\x07~~~ Running global environment hook",
    "\x1b_bk;t=1745322209922\x07$ /buildkite/agent/hooks/environment",
    "\x1b_bk;t=1745322209923\x07Some regular output",
    "\x1b_bk;t=1745322209924\x07--- :package: Build job checkout directory",
    "\x1b_bk;t=1745322209925\x07Another line of output",
]


@pytest.fixture
def entries():
    return list(Parser().all(LINES))


@pytest.fixture
def log_file(tmp_path, entries):
    path = tmp_path / "logs.parquet"
    export_to_parquet(entries, str(path))
    return str(path)


def _run(**kwargs):
    out = io.StringIO()
    run_query(QueryConfig(**kwargs), out)
    return out.getvalue()


def _run_json(**kwargs):
    return json.loads(_run(format="json", **kwargs))


def test_truncate_string_keeps_short_strings():
    text = "short"
    assert truncate_string(text, 40) == text


def test_truncate_string_adds_ellipsis():
    text = "a fairly long group name that needs cutting"
    result = truncate_string(text, 20)
    assert len(result) == 20
    assert result.endswith("...")
    assert text.startswith(result[:-3])


def test_truncate_string_tiny_limit_has_no_ellipsis():
    text = "abcdef"
    result = truncate_string(text, 3)
    assert len(result) == 3
    assert text.startswith(result)


def test_list_groups_json(log_file, entries):
    result = _run_json(parquet_file=log_file, operation="list-groups")
    names = [group["name"] for group in result["groups"]]
    expected = ["<no group>"] + list(dict.fromkeys(e.group for e in entries if e.group))
    assert sorted(names) == sorted(expected)
    assert sum(g["entry_count"] for g in result["groups"]) == len(LINES)
    assert result["stats"]["total_entries"] == len(LINES)
    assert result["stats"]["total_groups"] == len(result["groups"])


def test_list_groups_counts_commands(log_file, entries):
    result = _run_json(parquet_file=log_file, operation="list-groups")
    by_name = {g["name"]: g for g in result["groups"]}
    env_group = entries[1].group
    assert by_name[env_group]["commands"] == sum(
        1 for e in entries if e.group == env_group and e.is_command()
    )


def test_list_groups_json_escapes_angle_brackets(log_file):
    raw = _run(parquet_file=log_file, operation="list-groups", format="json")
    assert "\\u003cno group\\u003e" in raw
    assert "<no group>" not in raw


def test_list_groups_without_stats_zeroes(log_file):
    result = _run_json(parquet_file=log_file, operation="list-groups", show_stats=False)
    assert result["stats"]["total_entries"] == 0
    assert result["stats"]["total_groups"] == 0


def test_list_groups_text(log_file):
    text = _run(parquet_file=log_file, operation="list-groups")
    assert text.startswith("Groups found: 3\n")
    assert "GROUP NAME" in text
    assert "--- Query Statistics (Streaming) ---" in text
    assert f"Total entries: {len(LINES)}" in text


def test_by_group_json(log_file, entries):
    result = _run_json(parquet_file=log_file, operation="by-group", group_name="environment")
    expected = [e.content for e in entries if "environment" in e.group.lower()]
    assert [e["content"] for e in result["entries"]] == expected
    stats = result["stats"]
    assert stats["matched_entries"] == len(expected)
    assert stats["total_entries"] == len(expected) + len(LINES)


def test_by_group_limit(log_file):
    result = _run_json(
        parquet_file=log_file, operation="by-group", group_name="environment", limit_entries=1
    )
    assert len(result["entries"]) == 1
    assert result["stats"]["matched_entries"] == 1


def test_by_group_no_match_gives_null_entries(log_file):
    result = _run_json(parquet_file=log_file, operation="by-group", group_name="nothing here")
    assert result["entries"] is None
    assert result["stats"]["matched_entries"] == 0


def test_by_group_text_marks_commands(log_file):
    text = _run(parquet_file=log_file, operation="by-group", group_name="environment")
    assert "Entries in group matching 'environment'" in text
    command_lines = [line for line in text.splitlines() if "[CMD]" in line]
    assert len(command_lines) == 1
    assert command_lines[0].endswith("$ /buildkite/agent/hooks/environment")


def test_by_group_requires_pattern(log_file):
    with pytest.raises(ValueError, match="group pattern is required"):
        run_query(QueryConfig(parquet_file=log_file, operation="by-group"), io.StringIO())


def test_unknown_operation(log_file):
    with pytest.raises(ValueError, match="unknown operation: bogus"):
        run_query(QueryConfig(parquet_file=log_file, operation="bogus"), io.StringIO())


def test_info_json(log_file):
    result = _run_json(parquet_file=log_file, operation="info")
    assert result["row_count"] == len(LINES)
    assert result["file_size_bytes"] == os.path.getsize(log_file)
    assert result["num_row_groups"] >= 1
    assert result["column_count"] == 7


def test_info_text_names_file(log_file):
    text = _run(parquet_file=log_file, operation="info")
    assert f"  File:         {log_file}" in text
    assert f"  Rows:         {len(LINES)}" in text


def test_tail_json(log_file, entries):
    result = _run_json(parquet_file=log_file, operation="tail", tail_lines=2)
    assert [e["content"] for e in result["entries"]] == [e.content for e in entries[-2:]]
    assert result["stats"]["total_rows"] == len(LINES)
    assert result["stats"]["entries_shown"] == 2


def test_tail_non_positive_uses_default(log_file):
    result = _run_json(parquet_file=log_file, operation="tail", tail_lines=0)
    assert len(result["entries"]) == len(LINES)


def test_seek_json(log_file, entries):
    result = _run_json(parquet_file=log_file, operation="seek", seek_to_row=2, limit_entries=2)
    assert [e["content"] for e in result["entries"]] == [e.content for e in entries[2:4]]
    assert result["stats"]["start_row"] == 2


def test_seek_text_reports_limit(log_file):
    text = _run(parquet_file=log_file, operation="seek", seek_to_row=1, limit_entries=2)
    assert text.startswith("Entries starting from row 1: 2 (limited to 2)")
    assert "--- Seek Statistics ---" in text


def test_seek_beyond_file(log_file):
    with pytest.raises(ValueError, match="beyond file bounds"):
        run_query(
            QueryConfig(parquet_file=log_file, operation="seek", seek_to_row=len(LINES) + 5),
            io.StringIO(),
        )


def test_missing_file(tmp_path):
    missing = str(tmp_path / "missing.parquet")
    with pytest.raises(ValueError, match="error reading entries"):
        run_query(QueryConfig(parquet_file=missing), io.StringIO())