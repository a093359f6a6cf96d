"""PostgreSQL compatibility layer — psycopg2 behind the sqlite3 call style.

The stores in db_stores.py are written against the sqlite3 API
(``?`` placeholders, ``execute().fetchone()``, ``rowcount``, ``lastrowid``,
``executescript``). When DATABASE_URL is a postgres URL this module hands
them a connection wrapper that:
  - rewrites ``?`` placeholders to ``%s`` (outside quoted literals)
  - rewrites ``INSERT OR IGNORE`` to ``INSERT ... ON CONFLICT DO NOTHING``
  - appends ``RETURNING id`` to inserts so ``lastrowid`` works
  - returns rows as dicts (RealDictCursor) so ``row["col"]`` keeps working
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_INSERT_OR_IGNORE = re.compile(r"INSERT\s+OR\s+IGNORE\s+INTO", re.IGNORECASE)
_AUTOINCREMENT = re.compile(
    r"(\w+)\s+INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT", re.IGNORECASE
)
_PRAGMA = re.compile(r"PRAGMA\s+\w+\s*=\s*\w+\s*;?", re.IGNORECASE)

# Errors that mean a DDL statement was already applied
_IDEMPOTENT_DDL_ERRORS = ("already exists", "duplicate column")


def _replace_placeholders(sql: str) -> str:
    """Swap ``?`` for ``%s`` except inside single-quoted literals."""
    out: list[str] = []
    in_literal = False
    for ch in sql:
        if ch == "'":
            in_literal = not in_literal
            out.append(ch)
        elif ch == "?" and not in_literal:
            out.append("%s")
        else:
            out.append(ch)
    return "".join(out)


def _translate_sql(sql: str) -> str:
    """Translate a single SQLite DML statement to PostgreSQL."""
    translated = _replace_placeholders(sql)
    if _INSERT_OR_IGNORE.search(translated):
        translated = _INSERT_OR_IGNORE.sub("INSERT INTO", translated)
        translated = translated.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"
    return translated


def _translate_schema(sql: str) -> str:
    """Translate SQLite schema DDL to PostgreSQL DDL."""
    translated = _AUTOINCREMENT.sub(r"\1 SERIAL PRIMARY KEY", sql)
    return _PRAGMA.sub("", translated)


def _wants_returning_id(sql: str) -> bool:
    upper = sql.lstrip().upper()
    return upper.startswith("INSERT") and "RETURNING" not in upper


class PgCursorWrapper:
    """Wraps a psycopg2 RealDictCursor to match the sqlite3.Cursor calls we use."""

    def __init__(self, cursor):
        self._cursor = cursor
        self._last_id: int | None = None
        self._pending_row = None

    @property
    def lastrowid(self) -> int | None:
        return self._last_id

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount

    @property
    def description(self):
        return self._cursor.description

    def execute(self, sql: str, params: tuple = ()) -> "PgCursorWrapper":
        translated = _translate_sql(sql)
        self._last_id = None
        if _wants_returning_id(translated):
            self._cursor.execute(translated + " RETURNING id", params)
            row = self._cursor.fetchone()
            if row is not None:
                self._last_id = row["id"]
            return self
        self._cursor.execute(translated, params)
        return self

    def fetchone(self):
        if self._cursor.description is None:
            return None
        return self._cursor.fetchone()

    def fetchall(self) -> list:
        if self._cursor.description is None:
            return []
        return list(self._cursor.fetchall())

    def close(self) -> None:
        self._cursor.close()


class PgConnectionWrapper:
    """Wraps a psycopg2 connection to match the sqlite3.Connection calls we use."""

    def __init__(self, conn):
        self._conn = conn
        self._conn.autocommit = False

    def _new_cursor(self):
        from psycopg2.extras import RealDictCursor
        return self._conn.cursor(cursor_factory=RealDictCursor)

    def execute(self, sql: str, params: tuple = ()) -> PgCursorWrapper:
        cursor = PgCursorWrapper(self._new_cursor())
        return cursor.execute(sql, params)

    def executescript(self, sql: str) -> None:
        """Run a multi-statement DDL script, skipping statements already applied."""
        statements = [s.strip() for s in _translate_schema(sql).split(";") if s.strip()]
        cursor = self._conn.cursor()
        try:
            for stmt in statements:
                cursor.execute("SAVEPOINT ddl_stmt")
                try:
                    cursor.execute(stmt)
                except Exception as e:
                    if not any(p in str(e).lower() for p in _IDEMPOTENT_DDL_ERRORS):
                        raise
                    cursor.execute("ROLLBACK TO SAVEPOINT ddl_stmt")
                    logger.debug("Skipping applied DDL statement: %s", e)
                else:
                    cursor.execute("RELEASE SAVEPOINT ddl_stmt")
        finally:
            cursor.close()

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()


def connect_pg(database_url: str) -> PgConnectionWrapper:
    """Create a PostgreSQL connection with sqlite3-compatible interface."""
    import psycopg2

    return PgConnectionWrapper(psycopg2.connect(database_url))


def is_postgres_url(url: str) -> bool:
    """Check if a database URL is a PostgreSQL URL."""
    return url.startswith(("postgresql://", "postgres://"))
