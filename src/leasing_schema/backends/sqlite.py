"""SQLite backend built on aiosqlite.

The connection runs in autocommit mode (isolation_level=None) and the
backend issues BEGIN/COMMIT/ROLLBACK itself, so DDL statements take part in
the migration's transaction instead of committing implicitly.

The migration lock is a singleton row in ``<ledger>_lock``: inserting it
takes the lock, deleting it releases it.
"""
import asyncio
import re
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

import aiosqlite
import structlog

from leasing_schema.backends.base import (
    BaseSchemaAdapter,
    DDLRenderer,
    Session,
    quote_identifier,
    validate_identifier,
)
from leasing_schema.core.errors import ConnectionError, SchemaOperationError
from leasing_schema.domain.schema import ColumnType, ForeignKey, ServerDefault

log = structlog.get_logger()

DEFAULT_BUSY_TIMEOUT_MS = 5000


def _adapt_param(value: Any) -> Any:
    # Stored as ISO-8601 text; sqlite3's implicit datetime adapter is deprecated.
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _summarize(sql: str) -> str:
    first = sql.strip().splitlines()[0] if sql.strip() else ""
    return first[:120]


_UNAVAILABLE_CODES = {
    sqlite3.SQLITE_BUSY,
    sqlite3.SQLITE_LOCKED,
    sqlite3.SQLITE_CANTOPEN,
    sqlite3.SQLITE_IOERR,
}


def _wrap_error(action: str, sql: str, error: sqlite3.Error) -> Exception:
    # Extended result codes carry the primary code in the low byte.
    code = getattr(error, "sqlite_errorcode", None)
    if code is not None and code & 0xFF in _UNAVAILABLE_CODES:
        return ConnectionError(f"Database unavailable: {_summarize(sql)}", cause=error)
    return SchemaOperationError(f"{action} failed: {_summarize(sql)}", cause=error)


_COMMENT = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)


def split_statements(sql: str) -> list[str]:
    """Split a SQL script into the statements sqlite3 would run one by one.

    A statement ends at the first semicolon where sqlite3.complete_statement
    agrees it is complete, so semicolons inside literals, comments and
    CREATE TRIGGER bodies stay put. Empty and comment-only statements are
    dropped.
    """
    statements: list[str] = []
    pieces = sql.split(";")
    buffer = ""
    for i, piece in enumerate(pieces):
        buffer += piece
        if i < len(pieces) - 1:
            buffer += ";"
            if not sqlite3.complete_statement(buffer):
                continue
        statement = buffer.strip().strip(";").strip()
        if _COMMENT.sub("", statement).strip(" \t\r\n;"):
            statements.append(statement)
        buffer = ""
    return statements


class SQLiteSession:
    """Session over an aiosqlite connection."""

    dialect = "sqlite"

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._connection = connection

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        try:
            await self._connection.execute(sql, [_adapt_param(p) for p in params])
        except sqlite3.Error as e:
            raise _wrap_error("Statement", sql, e) from e

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[tuple[Any, ...]]:
        try:
            async with self._connection.execute(
                sql, [_adapt_param(p) for p in params]
            ) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise _wrap_error("Query", sql, e) from e
        return [tuple(row) for row in rows]

    async def table_exists(self, table: str) -> bool:
        rows = await self.fetch_all(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        )
        return bool(rows)


class SQLiteRenderer(DDLRenderer):
    """DDL rendering for SQLite.

    SQLite has no enum types; enums become TEXT with a CHECK constraint.
    """

    dialect = "sqlite"
    true_literal = "1"
    false_literal = "0"
    server_defaults = {
        ServerDefault.NOW: "CURRENT_TIMESTAMP",
        ServerDefault.GEN_UUID: "(lower(hex(randomblob(16))))",
    }

    _types = {
        "uuid": "TEXT",
        "datetime": "TIMESTAMP",
        "date": "DATE",
        "boolean": "BOOLEAN",
        "text": "TEXT",
        "integer": "INTEGER",
        "enum": "TEXT",
    }

    def column_type(self, table: str, column: str, column_type: ColumnType) -> str:
        if column_type.kind == "string":
            return f"VARCHAR({column_type.length})"
        if column_type.kind == "numeric":
            return f"NUMERIC({column_type.precision}, {column_type.scale})"
        try:
            return self._types[column_type.kind]
        except KeyError:
            raise SchemaOperationError(f"Unsupported column type: {column_type.kind}") from None

    def column_checks(self, column: str, column_type: ColumnType) -> list[str]:
        if column_type.kind != "enum":
            return []
        allowed = ", ".join(self.literal(v) for v in column_type.values)
        return [f"{quote_identifier(column)} IN ({allowed})"]


class SQLiteSchemaAdapter(BaseSchemaAdapter):
    """SchemaAdapter for SQLite.

    Constraints other than UNIQUE cannot be added to an existing SQLite
    table; a UNIQUE constraint is emulated with a unique index of the same
    name.
    """

    renderer = SQLiteRenderer()

    async def add_constraint(
        self,
        table: str,
        columns: list[str],
        type: str,
        name: str,
        expression: Optional[str] = None,
        references: Optional[ForeignKey] = None,
        on_update: Optional[str] = None,
        on_delete: Optional[str] = None,
    ) -> None:
        kind = self._check_constraint_type(type)
        if kind != "unique":
            raise SchemaOperationError(
                f"SQLite cannot add a {kind} constraint to existing table {table}"
            )
        await self.add_index(table, columns, name=name, unique=True)

    async def remove_constraint(self, table: str, name: str) -> None:
        await self._run(f"DROP INDEX {quote_identifier(name)}")

    async def execute_raw(self, sql: str) -> None:
        # sqlite3 runs one statement per call; executescript() would COMMIT.
        for statement in split_statements(sql):
            await self._run(statement)


class SQLiteBackend:
    """aiosqlite-backed database.

    A single connection is shared; an asyncio.Lock serializes scopes so a
    transaction never interleaves with another coroutine's statements.
    """

    dialect = "sqlite"

    def __init__(self, db_path: str, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        """Initialize the backend.

        Args:
            db_path: Path to the SQLite database file (or ":memory:").
            busy_timeout_ms: How long SQLite waits on a locked database.
        """
        self._db_path = db_path
        self._busy_timeout_ms = busy_timeout_ms
        self._connection: Optional[aiosqlite.Connection] = None
        self._scope_lock = asyncio.Lock()
        self._log = log.bind(component="sqlite_backend", db_path=db_path)

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the connection, creating the parent directory if needed."""
        if self._connection is not None:
            return

        try:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            connection = await aiosqlite.connect(self._db_path, isolation_level=None)
        except (sqlite3.Error, OSError) as e:
            raise ConnectionError(f"Cannot open SQLite database {self._db_path}", cause=e) from e

        try:
            await connection.execute("PRAGMA journal_mode=WAL")
            await connection.execute("PRAGMA synchronous=NORMAL")
            await connection.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        except sqlite3.Error as e:
            await connection.close()
            raise ConnectionError(f"Cannot configure SQLite database {self._db_path}", cause=e) from e

        self._connection = connection
        self._log.debug("sqlite_connected")

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._log.debug("sqlite_closed")

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise ConnectionError(f"Not connected to {self._db_path}")
        return self._connection

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        connection = self._require_connection()
        async with self._scope_lock:
            yield SQLiteSession(connection)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Session]:
        connection = self._require_connection()
        async with self._scope_lock:
            try:
                await connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise ConnectionError("Could not begin transaction", cause=e) from e
            try:
                yield SQLiteSession(connection)
            except BaseException:
                # Also reached on cancellation; nothing is committed.
                await connection.rollback()
                raise
            else:
                await connection.commit()

    def schema_adapter(self, session: Session) -> SQLiteSchemaAdapter:
        return SQLiteSchemaAdapter(session)

    # ============ Migration lock ============

    def _lock_table(self, name: str) -> str:
        return quote_identifier(validate_identifier(f"{name}_lock"))

    async def _ensure_lock_table(self, session: Session, name: str) -> None:
        await session.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self._lock_table(name)} (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                owner TEXT NOT NULL,
                acquired_at TEXT NOT NULL
            )
            """
        )

    async def try_acquire_lock(
        self, name: str, owner: str, stale_after: Optional[float] = None
    ) -> bool:
        table = self._lock_table(name)
        now = datetime.now(timezone.utc)
        async with self.session() as session:
            try:
                await self._ensure_lock_table(session, name)
                if stale_after is not None:
                    cutoff = now - timedelta(seconds=stale_after)
                    await session.execute(
                        f"DELETE FROM {table} WHERE id = 1 AND acquired_at < ?", (cutoff,)
                    )
                await session.execute(
                    f"INSERT OR IGNORE INTO {table} (id, owner, acquired_at) VALUES (1, ?, ?)",
                    (owner, now),
                )
                rows = await session.fetch_all("SELECT changes()")
            except ConnectionError as e:
                # Another process is mid-write; treat as contention and let the caller poll.
                self._log.debug("lock_attempt_busy", error=str(e.cause))
                return False
        # Only a row this call inserted counts; an existing row is held, whoever owns it.
        return bool(rows) and rows[0][0] == 1

    async def release_lock(self, name: str, owner: str) -> None:
        async with self.session() as session:
            if not await session.table_exists(f"{name}_lock"):
                return
            await session.execute(
                f"DELETE FROM {self._lock_table(name)} WHERE id = 1 AND owner = ?", (owner,)
            )

    async def lock_holder(self, name: str) -> Optional[str]:
        async with self.session() as session:
            if not await session.table_exists(f"{name}_lock"):
                return None
            rows = await session.fetch_all(
                f"SELECT owner, acquired_at FROM {self._lock_table(name)} WHERE id = 1"
            )
        if not rows:
            return None
        owner, acquired_at = rows[0]
        return f"{owner} (since {acquired_at})"

    async def force_release_lock(self, name: str) -> bool:
        async with self.session() as session:
            if not await session.table_exists(f"{name}_lock"):
                return False
            rows = await session.fetch_all(f"SELECT owner FROM {self._lock_table(name)}")
            await session.execute(f"DELETE FROM {self._lock_table(name)}")
        return bool(rows)
