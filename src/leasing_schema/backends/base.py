"""Backend protocol and shared DDL rendering.

A backend owns the database connection. It hands out sessions (autocommit,
for reads and lock bookkeeping) and transactions (one per migration), builds
a SchemaAdapter bound to a session, and implements the lock primitive the
runner uses to keep concurrent runs apart.

SQL handed to Session.execute uses qmark (``?``) placeholders; backends with
a different paramstyle translate.
"""
import re
from abc import abstractmethod
from contextlib import AbstractAsyncContextManager
from decimal import Decimal
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from leasing_schema.core.errors import SchemaOperationError
from leasing_schema.domain.schema import (
    CONSTRAINT_TYPES,
    ColumnSpec,
    ColumnType,
    ForeignKey,
    IndexWhere,
    SchemaAdapter,
    ServerDefault,
)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(name: str) -> str:
    """Return name unchanged if it is a plain SQL identifier, else raise ValueError."""
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def quote_identifier(name: str) -> str:
    """Double-quote an identifier (valid in both SQLite and PostgreSQL)."""
    return '"' + name.replace('"', '""') + '"'


@runtime_checkable
class Session(Protocol):
    """A connection scope: autocommit or inside a transaction."""

    dialect: str

    @abstractmethod
    async def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        ...

    @abstractmethod
    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[tuple[Any, ...]]:
        ...

    @abstractmethod
    async def table_exists(self, table: str) -> bool:
        ...


@runtime_checkable
class DatabaseBackend(Protocol):
    """Everything the runner needs from a concrete database."""

    dialect: str

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    def session(self) -> AbstractAsyncContextManager[Session]:
        """Autocommit scope for reads and lock bookkeeping."""
        ...

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[Session]:
        """Transactional scope: commits on normal exit, rolls back on any exception."""
        ...

    @abstractmethod
    def schema_adapter(self, session: Session) -> SchemaAdapter:
        ...

    @abstractmethod
    async def try_acquire_lock(
        self, name: str, owner: str, stale_after: Optional[float] = None
    ) -> bool:
        """Take the named migration lock without waiting. Returns False if held."""
        ...

    @abstractmethod
    async def release_lock(self, name: str, owner: str) -> None:
        ...

    @abstractmethod
    async def lock_holder(self, name: str) -> Optional[str]:
        """Describe who holds the lock, if the backend can tell."""
        ...

    @abstractmethod
    async def force_release_lock(self, name: str) -> bool:
        """Clear a lock left behind by a crashed run. Returns True if one was cleared."""
        ...


class DDLRenderer:
    """Renders portable schema descriptions into dialect SQL.

    Subclasses override the type map and the handful of dialect differences.
    """

    dialect = "generic"
    true_literal = "TRUE"
    false_literal = "FALSE"
    server_defaults: dict[ServerDefault, str] = {}

    def column_type(self, table: str, column: str, column_type: ColumnType) -> str:
        raise NotImplementedError

    def column_checks(self, column: str, column_type: ColumnType) -> list[str]:
        return []

    def literal(self, value: Any) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return self.true_literal if value else self.false_literal
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, str):
            return "'" + value.replace("'", "''") + "'"
        raise TypeError(f"Cannot render {type(value).__name__} as a SQL literal")

    def default(self, value: Any) -> str:
        if isinstance(value, ServerDefault):
            return self.server_defaults[value]
        return self.literal(value)

    def references(
        self,
        target: ForeignKey,
        on_update: Optional[str] = None,
        on_delete: Optional[str] = None,
    ) -> str:
        clause = f"REFERENCES {quote_identifier(target.table)} ({quote_identifier(target.column)})"
        if on_delete:
            clause += f" ON DELETE {on_delete.upper()}"
        if on_update:
            clause += f" ON UPDATE {on_update.upper()}"
        return clause

    def column_definition(
        self,
        table: str,
        column: str,
        spec: ColumnSpec,
        inline_primary_key: bool = True,
    ) -> str:
        parts = [quote_identifier(column), self.column_type(table, column, spec.type)]
        if spec.primary_key and inline_primary_key:
            parts.append("PRIMARY KEY")
        if not spec.nullable:
            parts.append("NOT NULL")
        if spec.unique:
            parts.append("UNIQUE")
        if spec.default is not None:
            parts.append(f"DEFAULT {self.default(spec.default)}")
        for check in self.column_checks(column, spec.type):
            parts.append(f"CHECK ({check})")
        if spec.references is not None:
            parts.append(self.references(spec.references, spec.on_update, spec.on_delete))
        return " ".join(parts)

    def create_table(self, table: str, columns: dict[str, ColumnSpec]) -> str:
        if not columns:
            raise ValueError(f"Table {table} needs at least one column")
        primary = [name for name, spec in columns.items() if spec.primary_key]
        inline = len(primary) <= 1
        lines = [
            self.column_definition(table, name, spec, inline_primary_key=inline)
            for name, spec in columns.items()
        ]
        if not inline:
            lines.append("PRIMARY KEY (" + ", ".join(quote_identifier(c) for c in primary) + ")")
        body = ",\n    ".join(lines)
        return f"CREATE TABLE {quote_identifier(table)} (\n    {body}\n)"

    def where_clause(self, where: IndexWhere) -> str:
        if where is None:
            return ""
        if isinstance(where, str):
            return f" WHERE {where}"
        conditions = []
        for column, value in where.items():
            if value is None:
                conditions.append(f"{quote_identifier(column)} IS NULL")
            else:
                conditions.append(f"{quote_identifier(column)} = {self.literal(value)}")
        return " WHERE " + " AND ".join(conditions)

    def create_index(
        self,
        table: str,
        columns: list[str],
        name: str,
        unique: bool = False,
        where: IndexWhere = None,
    ) -> str:
        cols = ", ".join(quote_identifier(c) for c in columns)
        kind = "UNIQUE INDEX" if unique else "INDEX"
        return (
            f"CREATE {kind} {quote_identifier(name)} ON {quote_identifier(table)} ({cols})"
            + self.where_clause(where)
        )


def default_index_name(table: str, columns: list[str]) -> str:
    """Index name used when a migration does not give one: ``<table>_<col>_<col>``."""
    return "_".join([table, *columns])


class BaseSchemaAdapter:
    """SchemaAdapter implementation shared by the bundled backends."""

    renderer: DDLRenderer

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def dialect(self) -> str:
        return self.renderer.dialect

    async def _run(self, sql: str) -> None:
        await self._session.execute(sql)

    async def add_column(self, table: str, column: str, spec: ColumnSpec) -> None:
        if spec.primary_key:
            raise SchemaOperationError(
                f"Cannot add primary key column {table}.{column} to an existing table"
            )
        definition = self.renderer.column_definition(table, column, spec)
        await self._run(f"ALTER TABLE {quote_identifier(table)} ADD COLUMN {definition}")

    async def remove_column(self, table: str, column: str) -> None:
        await self._run(
            f"ALTER TABLE {quote_identifier(table)} DROP COLUMN {quote_identifier(column)}"
        )

    async def create_table(self, table: str, columns: dict[str, ColumnSpec]) -> None:
        await self._run(self.renderer.create_table(table, columns))

    async def drop_table(self, table: str) -> None:
        await self._run(f"DROP TABLE {quote_identifier(table)}")

    async def add_index(
        self,
        table: str,
        columns: list[str],
        name: Optional[str] = None,
        unique: bool = False,
        where: IndexWhere = None,
    ) -> None:
        if not columns:
            raise SchemaOperationError(f"Index on {table} needs at least one column")
        index_name = name or default_index_name(table, columns)
        await self._run(self.renderer.create_index(table, columns, index_name, unique, where))

    async def remove_index(self, table: str, name: str) -> None:
        await self._run(f"DROP INDEX {quote_identifier(name)}")

    def _check_constraint_type(self, type: str) -> str:
        normalized = type.lower().strip()
        if normalized not in CONSTRAINT_TYPES:
            raise SchemaOperationError(
                f"Unknown constraint type {type!r}; expected one of {', '.join(CONSTRAINT_TYPES)}"
            )
        return normalized

    async def execute_raw(self, sql: str) -> None:
        await self._run(sql)
