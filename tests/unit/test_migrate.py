import asyncio
from typing import Any

import pytest

from flareharness.core.migrate import (
    SchemaApplicationFailure,
    SchemaMigrator,
    SchemaStatement,
    split_statements,
    strip_line_comments,
)


class _Statement:
    def __init__(self, database: "_RecordingDatabase", sql: str) -> None:
        self.database = database
        self.sql = sql

    async def run(self) -> dict[str, Any]:
        if "INVALID" in self.sql:
            raise RuntimeError("near \"INVALID\": syntax error")
        self.database.executed.append(self.sql)
        return {"success": True}


class _RecordingDatabase:
    def __init__(self) -> None:
        self.executed: list[str] = []

    def prepare(self, sql: str) -> _Statement:
        return _Statement(self, sql)


def test_split_counts_non_empty_segments() -> None:
    statements = split_statements("CREATE TABLE t(id INTEGER); -- note\nINSERT INTO t VALUES (1);")
    assert statements == [
        SchemaStatement(index=0, sql="CREATE TABLE t(id INTEGER)"),
        SchemaStatement(index=1, sql="INSERT INTO t VALUES (1)"),
    ]


def test_split_drops_comment_only_and_blank_segments() -> None:
    text = "-- header\n;;\n  ;\nCREATE TABLE a (x TEXT); -- trailing\n-- only a comment;\n"
    assert [statement.sql for statement in split_statements(text)] == ["CREATE TABLE a (x TEXT)"]


def test_split_of_empty_text_yields_nothing() -> None:
    assert split_statements("") == []
    assert split_statements("-- nothing here\n") == []


def test_strip_line_comments_keeps_code_before_marker() -> None:
    assert strip_line_comments("SELECT 1; -- one\nSELECT 2;") == "SELECT 1; \nSELECT 2;"


def test_split_does_not_understand_string_literals() -> None:
    statements = split_statements("INSERT INTO t VALUES ('a;b');")
    assert [statement.sql for statement in statements] == ["INSERT INTO t VALUES ('a", "b')"]


def test_apply_runs_statements_in_order() -> None:
    database = _RecordingDatabase()
    applied = asyncio.run(SchemaMigrator().apply("CREATE TABLE a (x);\nCREATE TABLE b (y);", database))
    assert applied == 2
    assert database.executed == ["CREATE TABLE a (x)", "CREATE TABLE b (y)"]


def test_apply_stops_at_first_failure_and_keeps_earlier_statements() -> None:
    database = _RecordingDatabase()
    schema = "CREATE TABLE a (x);\nINVALID STATEMENT;\nCREATE TABLE c (z);"
    with pytest.raises(SchemaApplicationFailure) as exc_info:
        asyncio.run(SchemaMigrator().apply(schema, database))
    failure = exc_info.value
    assert database.executed == ["CREATE TABLE a (x)"]
    assert failure.applied == 1
    assert failure.statement.index == 1
    assert "INVALID STATEMENT" in str(failure)
    assert isinstance(failure.__cause__, RuntimeError)


def test_apply_file_reads_utf8(tmp_path) -> None:
    schema_path = tmp_path / "schema.sql"
    schema_path.write_text("CREATE TABLE café (naïve TEXT);", encoding="utf-8")
    database = _RecordingDatabase()
    assert asyncio.run(SchemaMigrator().apply_file(schema_path, database)) == 1
    assert database.executed == ["CREATE TABLE café (naïve TEXT)"]


def test_apply_file_requires_existing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError, match="schema file not found"):
        asyncio.run(SchemaMigrator().apply_file(tmp_path / "missing.sql", _RecordingDatabase()))
