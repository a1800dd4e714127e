"""PostgreSQL backend built on asyncpg.

The migration lock is a session-level advisory lock keyed on the ledger
table name, so it disappears with the connection if the process dies.
"""
import hashlib
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional, Sequence

import asyncpg
import structlog

from leasing_schema.backends.base import (
    BaseSchemaAdapter,
    DDLRenderer,
    Session,
    quote_identifier,
)
from leasing_schema.core.errors import ConnectionError, SchemaOperationError
from leasing_schema.domain.schema import ColumnSpec, ColumnType, ForeignKey, ServerDefault

log = structlog.get_logger()

_QMARK = re.compile(r"\?")


def to_numbered_params(sql: str) -> str:
    """Rewrite qmark placeholders as asyncpg's $1, $2, ..."""
    counter = iter(range(1, 10_000))
    return _QMARK.sub(lambda _: f"${next(counter)}", sql)


def advisory_lock_key(name: str) -> int:
    """Stable signed 64-bit key for pg_advisory_lock derived from a name."""
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def enum_type_name(table: str, column: str) -> str:
    """Name of the enumerated type backing ``table.column``."""
    return f"enum_{table}_{column}"


_CONNECTION_ERRORS = (asyncpg.InterfaceError, OSError)


class PostgresSession:
    """Session over an asyncpg connection."""

    dialect = "postgresql"

    def __init__(self, connection: asyncpg.Connection) -> None:
        self._connection = connection

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        try:
            if params:
                await self._connection.execute(to_numbered_params(sql), *params)
            else:
                # Simple query protocol: allows several statements in one call
                await self._connection.execute(sql)
        except asyncpg.PostgresError as e:
            raise SchemaOperationError(f"Statement failed: {sql.strip()[:120]}", cause=e) from e
        except _CONNECTION_ERRORS as e:
            raise ConnectionError("Lost connection to PostgreSQL", cause=e) from e

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[tuple[Any, ...]]:
        try:
            rows = await self._connection.fetch(to_numbered_params(sql), *params)
        except asyncpg.PostgresError as e:
            raise SchemaOperationError(f"Query failed: {sql.strip()[:120]}", cause=e) from e
        except _CONNECTION_ERRORS as e:
            raise ConnectionError("Lost connection to PostgreSQL", cause=e) from e
        return [tuple(row.values()) for row in rows]

    async def table_exists(self, table: str) -> bool:
        rows = await self.fetch_all("SELECT to_regclass(?) IS NOT NULL", (table,))
        return bool(rows and rows[0][0])


class PostgresRenderer(DDLRenderer):
    """DDL rendering for PostgreSQL."""

    dialect = "postgresql"
    server_defaults = {
        ServerDefault.NOW: "NOW()",
        ServerDefault.GEN_UUID: "gen_random_uuid()",
    }

    _types = {
        "uuid": "UUID",
        "datetime": "TIMESTAMP WITH TIME ZONE",
        "date": "DATE",
        "boolean": "BOOLEAN",
        "text": "TEXT",
        "integer": "INTEGER",
    }

    def column_type(self, table: str, column: str, column_type: ColumnType) -> str:
        if column_type.kind == "string":
            return f"VARCHAR({column_type.length})"
        if column_type.kind == "numeric":
            return f"DECIMAL({column_type.precision}, {column_type.scale})"
        if column_type.kind == "enum":
            return quote_identifier(enum_type_name(table, column))
        try:
            return self._types[column_type.kind]
        except KeyError:
            raise SchemaOperationError(f"Unsupported column type: {column_type.kind}") from None

    def create_enum_type(self, table: str, column: str, column_type: ColumnType) -> str:
        values = ", ".join(self.literal(v) for v in column_type.values)
        name = quote_identifier(enum_type_name(table, column))
        # CREATE TYPE has no IF NOT EXISTS
        return (
            "DO $$ BEGIN "
            f"CREATE TYPE {name} AS ENUM ({values}); "
            "EXCEPTION WHEN duplicate_object THEN NULL; "
            "END $$"
        )


class PostgresSchemaAdapter(BaseSchemaAdapter):
    """SchemaAdapter for PostgreSQL.

    Enum columns get a named type ``enum_<table>_<column>``, created on
    demand. Dropping the column leaves the type behind; migrations drop it
    explicitly in their down step.
    """

    renderer = PostgresRenderer()

    async def _create_enum_types(self, table: str, columns: dict[str, ColumnSpec]) -> None:
        for column, spec in columns.items():
            if spec.type.kind == "enum":
                await self._run(self.renderer.create_enum_type(table, column, spec.type))

    async def add_column(self, table: str, column: str, spec: ColumnSpec) -> None:
        await self._create_enum_types(table, {column: spec})
        await super().add_column(table, column, spec)

    async def create_table(self, table: str, columns: dict[str, ColumnSpec]) -> None:
        await self._create_enum_types(table, columns)
        await super().create_table(table, columns)

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
        cols = ", ".join(quote_identifier(c) for c in columns)

        if kind == "check":
            if not expression:
                raise SchemaOperationError(f"Check constraint {name} needs an expression")
            body = f"CHECK ({expression})"
        elif kind == "foreign key":
            if references is None:
                raise SchemaOperationError(f"Foreign key constraint {name} needs a reference")
            body = f"FOREIGN KEY ({cols}) " + self.renderer.references(
                references, on_update, on_delete
            )
        else:
            body = f"{kind.upper()} ({cols})"

        await self._run(
            f"ALTER TABLE {quote_identifier(table)} "
            f"ADD CONSTRAINT {quote_identifier(name)} {body}"
        )

    async def remove_constraint(self, table: str, name: str) -> None:
        await self._run(
            f"ALTER TABLE {quote_identifier(table)} DROP CONSTRAINT {quote_identifier(name)}"
        )


class PostgresBackend:
    """asyncpg-backed database using one dedicated connection."""

    dialect = "postgresql"

    def __init__(self, dsn: str, connect_timeout: float = 10.0) -> None:
        self._dsn = dsn
        self._connect_timeout = connect_timeout
        self._connection: Optional[asyncpg.Connection] = None
        self._held_locks: set[str] = set()
        self._log = log.bind(component="postgres_backend")

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed()

    async def connect(self) -> None:
        if self.is_connected:
            return
        try:
            self._connection = await asyncpg.connect(self._dsn, timeout=self._connect_timeout)
        except (OSError, TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise ConnectionError("Cannot connect to PostgreSQL", cause=e) from e
        self._log.debug("postgres_connected")

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._held_locks.clear()
            self._connection = None
            self._log.debug("postgres_closed")

    def _require_connection(self) -> asyncpg.Connection:
        if not self.is_connected:
            raise ConnectionError("Not connected to PostgreSQL")
        return self._connection

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        yield PostgresSession(self._require_connection())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Session]:
        connection = self._require_connection()
        # asyncpg rolls back on any exception leaving the block, cancellation included
        async with connection.transaction():
            yield PostgresSession(connection)

    def schema_adapter(self, session: Session) -> PostgresSchemaAdapter:
        return PostgresSchemaAdapter(session)

    # ============ Migration lock ============

    async def try_acquire_lock(
        self, name: str, owner: str, stale_after: Optional[float] = None
    ) -> bool:
        # pg_try_advisory_lock succeeds again on the session that already holds it.
        if name in self._held_locks:
            return False
        async with self.session() as session:
            rows = await session.fetch_all(
                "SELECT pg_try_advisory_lock(?)", (advisory_lock_key(name),)
            )
        acquired = bool(rows and rows[0][0])
        if acquired:
            self._held_locks.add(name)
        return acquired

    async def release_lock(self, name: str, owner: str) -> None:
        async with self.session() as session:
            await session.fetch_all("SELECT pg_advisory_unlock(?)", (advisory_lock_key(name),))
        self._held_locks.discard(name)

    async def lock_holder(self, name: str) -> Optional[str]:
        key = advisory_lock_key(name)
        # pg_locks splits a bigint key into two 32-bit halves
        classid = (key >> 32) & 0xFFFFFFFF
        objid = key & 0xFFFFFFFF
        async with self.session() as session:
            rows = await session.fetch_all(
                """
                SELECT pid FROM pg_locks
                WHERE locktype = 'advisory' AND granted
                  AND classid::bigint = ? AND objid::bigint = ?
                """,
                (classid, objid),
            )
        return f"backend pid {rows[0][0]}" if rows else None

    async def force_release_lock(self, name: str) -> bool:
        # Advisory locks belong to the holding session and end with it.
        self._log.warning("advisory_lock_not_forceable", lock=name)
        return False
