from __future__ import annotations

import click
import pytest

from joptool import (
    NOTE_COLUMNS,
    TAG_COLUMNS,
    Note,
    Tag,
    find_duplicate_tags,
    format_cell,
    format_table,
    parse_columns,
)


def test_format_table() -> None:
    table = format_table(["ID", "Title"], [["t1", "urgent"], ["t22", None]], title="Tags")

    assert table.splitlines() == [
        "Tags",
        "ID   Title",
        "---  ------",
        "t1   urgent",
        "t22",
    ]


def test_format_table_without_header() -> None:
    table = format_table(["ID", "Title"], [["t1", "x"]], title="Tags", show_header=False)

    assert table == "t1  x"


def test_parse_columns_strips_blanks() -> None:
    assert parse_columns(" id, title ,", TAG_COLUMNS, "tag") == ["id", "title"]


def test_parse_columns_rejects_unknown_names() -> None:
    with pytest.raises(click.UsageError, match="Unknown tag field"):
        parse_columns("id,colour", TAG_COLUMNS, "tag")


def test_parse_columns_rejects_empty_selection() -> None:
    with pytest.raises(click.UsageError):
        parse_columns(" , ", TAG_COLUMNS, "tag")


def test_cells_are_truncated_and_flattened() -> None:
    note = Note(title="x" * 80, body="line one\nline two")

    assert format_cell(NOTE_COLUMNS["title"], note) == "x" * 60
    assert format_cell(NOTE_COLUMNS["body"], note).rstrip() == "line one line two"


def test_numeric_cells_use_column_formats() -> None:
    note = Note(latitude="48.85000000", order=3)

    assert format_cell(NOTE_COLUMNS["latitude"], note).rstrip() == "48.8500"
    assert format_cell(NOTE_COLUMNS["order"], note).rstrip() == "3"
    assert format_cell(NOTE_COLUMNS["altitude"], Note()).rstrip() == "0.0000"


def test_find_duplicate_tags() -> None:
    tags = [Tag(id="a", title="x"), Tag(id="b", title="y"), Tag(id="c", title="x")]

    assert find_duplicate_tags(tags) == {"x": ["a", "c"]}
