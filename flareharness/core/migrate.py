"""Schema script parsing and application against a relational binding."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import time
from typing import Any

from flareharness.core.logging import EventLogger, get_logger


LINE_COMMENT = "--"
STATEMENT_SEPARATOR = ";"


@dataclass(slots=True)
class SchemaStatement:
    index: int
    sql: str


class SchemaApplicationFailure(RuntimeError):
    def __init__(self, statement: SchemaStatement, error: BaseException, applied: int) -> None:
        self.statement = statement
        self.error = error
        self.applied = applied
        super().__init__(
            f"schema statement {statement.index + 1} failed ({type(error).__name__}: {error}): {statement.sql}"
        )


def strip_line_comments(text: str) -> str:
    """Remove ``--`` comments through end of line.

    Quoting is not understood, so a ``--`` inside a string literal is treated
    as a comment as well.
    """
    lines: list[str] = []
    for line in text.splitlines():
        position = line.find(LINE_COMMENT)
        lines.append(line if position < 0 else line[:position])
    return "\n".join(lines)


def split_statements(text: str) -> list[SchemaStatement]:
    segments = (segment.strip() for segment in strip_line_comments(text).split(STATEMENT_SEPARATOR))
    return [SchemaStatement(index=index, sql=sql) for index, sql in enumerate(item for item in segments if item)]


class SchemaMigrator:
    def __init__(self, *, transactional: bool = False, event_logger: EventLogger | None = None) -> None:
        self.transactional = transactional
        self.event_logger = event_logger
        self.logger = get_logger("flareharness.migrate")

    async def apply_file(self, path: str | Path, database: Any) -> int:
        schema_path = Path(path)
        if not schema_path.exists():
            raise FileNotFoundError(f"schema file not found: {schema_path}")
        return await self.apply(schema_path.read_text(encoding="utf-8"), database)

    async def apply(self, schema_text: str, database: Any) -> int:
        statements = split_statements(schema_text)
        started = time.perf_counter()
        if self.transactional:
            applied = await self._apply_transactional(statements, database)
        else:
            applied = await self._apply_sequential(statements, database)
        self._emit(
            "schema applied",
            action="schema_apply",
            outcome="success",
            duration_seconds=time.perf_counter() - started,
            payload={"statements": applied, "transactional": self.transactional},
        )
        return applied

    async def _apply_sequential(self, statements: list[SchemaStatement], database: Any) -> int:
        applied = 0
        for statement in statements:
            try:
                await database.prepare(statement.sql).run()
            except Exception as exc:
                self._fail(statement, exc, applied)
            applied += 1
        return applied

    async def _apply_transactional(self, statements: list[SchemaStatement], database: Any) -> int:
        current: SchemaStatement | None = None
        try:
            async with database.transaction() as tx:
                for statement in statements:
                    current = statement
                    await tx.run(statement.sql)
        except Exception as exc:
            if current is None:
                raise
            self._fail(current, exc, 0)
        return len(statements)

    def _fail(self, statement: SchemaStatement, error: Exception, applied: int) -> None:
        failure = SchemaApplicationFailure(statement, error, applied)
        self._emit(
            "schema statement failed",
            action="schema_apply",
            outcome="failure",
            error=error,
            payload={"index": statement.index, "applied": applied, "statement": statement.sql},
            level="ERROR",
        )
        raise failure from error

    def _emit(
        self,
        message: str,
        *,
        action: str,
        outcome: str,
        duration_seconds: float | None = None,
        error: BaseException | None = None,
        payload: dict[str, object] | None = None,
        level: str = "INFO",
    ) -> None:
        if self.event_logger is None:
            self.logger.log(getattr(logging, level), message, extra={"component": "migrate", "payload": payload})
            return
        self.event_logger.emit(
            message=message,
            component="migrate",
            action=action,
            outcome=outcome,
            event_type="change",
            duration_seconds=duration_seconds,
            error=error,
            payload=payload,
            level=level,
        )
