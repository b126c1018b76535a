"""Relational database emulator backed by a temporary SQLite file."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
import shutil
import tempfile
import time
from typing import Any, AsyncIterator, Sequence

import aiosqlite

from flareharness.config.schema import KIND_RELATIONAL
from flareharness.core.logging import get_logger
from flareharness.core.migrate import split_statements
from flareharness.services.base import ServiceEmulator


class PreparedStatement:
    __slots__ = ("_database", "sql", "params")

    def __init__(self, database: "Emulator", sql: str, params: tuple[Any, ...] = ()) -> None:
        self._database = database
        self.sql = sql
        self.params = params

    def bind(self, *params: Any) -> "PreparedStatement":
        return PreparedStatement(self._database, self.sql, tuple(params))

    async def run(self) -> dict[str, Any]:
        return await self._database._execute(self)

    async def all(self) -> dict[str, Any]:
        return await self._database._execute(self)

    async def first(self, column: str | None = None) -> Any:
        result = await self._database._execute(self)
        rows = result["results"]
        if not rows:
            return None
        row = rows[0]
        if column is None:
            return row
        if column not in row:
            raise KeyError(f"column '{column}' is not in the result set")
        return row[column]

    async def raw(self) -> list[list[Any]]:
        async with self._database._op_lock:
            rows, _, _ = await self._database._fetch_locked(self)
        return [list(row) for row in rows]

    def __repr__(self) -> str:
        return f"PreparedStatement(sql={self.sql!r}, params={self.params!r})"


class Transaction:
    """Statements executed on one handle between BEGIN and COMMIT."""

    def __init__(self, database: "Emulator") -> None:
        self._database = database
        self.executed = 0

    async def run(self, statement: PreparedStatement | str) -> dict[str, Any]:
        if isinstance(statement, str):
            statement = self._database.prepare(statement)
        result = await self._database._execute_locked(statement)
        self.executed += 1
        return result


class Emulator(ServiceEmulator):
    def __init__(self) -> None:
        super().__init__()
        self.logger = get_logger("flareharness.services.relational")
        self._conn: aiosqlite.Connection | None = None
        self._tmpdir: str | None = None
        self._path: Path | None = None

    @property
    def kind(self) -> str:
        return KIND_RELATIONAL

    @property
    def path(self) -> Path | None:
        return self._path

    def describe(self) -> dict[str, object]:
        payload = super().describe()
        payload["path"] = str(self._path) if self._path else None
        return payload

    async def _start(self) -> None:
        self._tmpdir = tempfile.mkdtemp(prefix=f"flareharness-{self.binding}-")
        self._path = Path(self._tmpdir) / "database.sqlite3"
        self._conn = await aiosqlite.connect(str(self._path), isolation_level=None)
        await self._conn.execute("PRAGMA foreign_keys=ON")

    async def _stop(self) -> None:
        conn = self._conn
        self._conn = None
        try:
            if conn is not None:
                await conn.close()
        finally:
            if self._tmpdir:
                shutil.rmtree(self._tmpdir, ignore_errors=True)
                self._tmpdir = None

    def _connection(self) -> aiosqlite.Connection:
        self._require_running()
        assert self._conn is not None
        return self._conn

    def prepare(self, sql: str) -> PreparedStatement:
        if not isinstance(sql, str) or not sql.strip():
            raise ValueError("statements must be non-empty SQL strings")
        return PreparedStatement(self, sql)

    async def exec(self, sql: str) -> dict[str, Any]:
        count = len(split_statements(sql))
        started = time.perf_counter()
        async with self._op_lock:
            await self._connection().executescript(sql)
        return {"count": count, "duration": (time.perf_counter() - started) * 1000.0}

    async def batch(self, statements: Sequence[PreparedStatement]) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        async with self._op_lock:
            async with self._transaction_locked():
                for statement in statements:
                    results.append(await self._execute_locked(statement))
        return results

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        async with self._op_lock:
            async with self._transaction_locked():
                yield Transaction(self)

    async def table_names(self) -> list[str]:
        rows = await self.prepare(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        ).raw()
        return [str(row[0]) for row in rows]

    @asynccontextmanager
    async def _transaction_locked(self) -> AsyncIterator[None]:
        conn = self._connection()
        await conn.execute("BEGIN")
        try:
            yield
        except BaseException:
            if conn.in_transaction:
                await conn.execute("ROLLBACK")
            raise
        await conn.execute("COMMIT")

    async def _execute(self, statement: PreparedStatement) -> dict[str, Any]:
        async with self._op_lock:
            return await self._execute_locked(statement)

    async def _fetch_locked(self, statement: PreparedStatement) -> tuple[list[Any], list[str], int]:
        conn = self._connection()
        async with conn.execute(statement.sql, statement.params) as cursor:
            rows = list(await cursor.fetchall())
            columns = [column[0] for column in cursor.description] if cursor.description else []
            last_row_id = cursor.lastrowid or 0
        return rows, columns, last_row_id

    async def _execute_locked(self, statement: PreparedStatement) -> dict[str, Any]:
        conn = self._connection()
        started = time.perf_counter()
        changes_before = conn.total_changes
        rows, columns, last_row_id = await self._fetch_locked(statement)
        changes = conn.total_changes - changes_before
        results = [dict(zip(columns, row)) for row in rows]
        return {
            "success": True,
            "results": results,
            "meta": {
                "changes": changes,
                "last_row_id": last_row_id,
                "duration": (time.perf_counter() - started) * 1000.0,
                "rows_read": len(results),
                "rows_written": changes,
            },
        }
