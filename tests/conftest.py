"""
Shared pytest fixtures for leasing-schema tests.
"""
import sqlite3
from pathlib import Path
from typing import Awaitable, Callable, Optional

import pytest
import pytest_asyncio

from leasing_schema.backends.sqlite import SQLiteBackend
from leasing_schema.core.retry import RetryConfig
from leasing_schema.domain.schema import INTEGER, ColumnSpec, SchemaAdapter
from leasing_schema.services.registry import MigrationDefinition
from leasing_schema.services.runner import LockSettings


# Tables the shipped migrations expect to exist (simplified application schema)
BASE_SCHEMA = """
CREATE TABLE users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    role TEXT NOT NULL DEFAULT 'TENANT'
);

CREATE TABLE buildings (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE floors (
    id TEXT PRIMARY KEY,
    building_id TEXT NOT NULL REFERENCES buildings(id),
    number INTEGER NOT NULL
);

CREATE TABLE spaces (
    id TEXT PRIMARY KEY,
    floor_id TEXT NOT NULL REFERENCES floors(id),
    name TEXT NOT NULL
);

CREATE TABLE bids (
    id TEXT PRIMARY KEY,
    space_id TEXT NOT NULL REFERENCES spaces(id),
    amount NUMERIC(12, 2)
);

CREATE TABLE contracts (
    id TEXT PRIMARY KEY,
    bid_id TEXT REFERENCES bids(id),
    status TEXT NOT NULL DEFAULT 'DRAFT'
);

CREATE TABLE payments (
    id TEXT PRIMARY KEY,
    contract_id TEXT NOT NULL REFERENCES contracts(id),
    amount NUMERIC(12, 2) NOT NULL
);

CREATE TABLE notifications (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    message TEXT NOT NULL
);

CREATE TABLE private_visits (
    id TEXT PRIMARY KEY,
    space_id TEXT NOT NULL REFERENCES spaces(id),
    status TEXT NOT NULL DEFAULT 'SCHEDULED'
);

CREATE TABLE role_hierarchy_config (
    id TEXT PRIMARY KEY,
    role TEXT NOT NULL
);

CREATE TABLE user_role_hierarchy (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    manager_id TEXT REFERENCES users(id)
);
"""

FAST_LOCK = LockSettings(timeout_seconds=0.2, poll_interval_seconds=0.02)
NO_RETRY = RetryConfig(max_attempts=1, min_wait_seconds=0, max_wait_seconds=0, jitter=False)


def create_base_schema(db_path: Path) -> None:
    """Create the application tables in a fresh SQLite file."""
    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(BASE_SCHEMA)
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def db_path(tmp_path) -> Path:
    """Path of an empty SQLite database file."""
    return tmp_path / "leasing.db"


@pytest.fixture
def app_db_path(db_path) -> Path:
    """SQLite database file holding the application's base schema."""
    create_base_schema(db_path)
    return db_path


@pytest_asyncio.fixture
async def backend(db_path):
    """Connected SQLite backend on an empty database."""
    backend = SQLiteBackend(str(db_path), busy_timeout_ms=100)
    await backend.connect()
    yield backend
    await backend.close()


@pytest_asyncio.fixture
async def app_backend(app_db_path):
    """Connected SQLite backend on a database with the base schema."""
    backend = SQLiteBackend(str(app_db_path), busy_timeout_ms=100)
    await backend.connect()
    yield backend
    await backend.close()


@pytest.fixture
def fast_lock() -> LockSettings:
    return FAST_LOCK


@pytest.fixture
def no_retry() -> RetryConfig:
    return NO_RETRY


Procedure = Callable[[SchemaAdapter], Awaitable[None]]


@pytest.fixture
def make_migration():
    """Factory for in-code migrations.

    By default ``up`` creates a table named after the id's numeric prefix
    (``t_<prefix>``) and ``down`` drops it.
    """

    def factory(
        migration_id: str,
        up: Optional[Procedure] = None,
        down: Optional[Procedure] = None,
        checksum: Optional[str] = None,
    ) -> MigrationDefinition:
        table = "t_" + migration_id.split("-", 1)[0]

        async def default_up(schema: SchemaAdapter) -> None:
            await schema.create_table(table, {"id": ColumnSpec(INTEGER, primary_key=True)})

        async def default_down(schema: SchemaAdapter) -> None:
            await schema.drop_table(table)

        return MigrationDefinition(
            id=migration_id,
            description=f"test migration {migration_id}",
            up=up or default_up,
            down=down or default_down,
            checksum=checksum,
        )

    return factory


async def table_names(backend: SQLiteBackend) -> set[str]:
    async with backend.session() as session:
        rows = await session.fetch_all(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
        )
    return {row[0] for row in rows}


async def column_names(backend: SQLiteBackend, table: str) -> list[str]:
    async with backend.session() as session:
        rows = await session.fetch_all(f'PRAGMA table_info("{table}")')
    return [row[1] for row in rows]


async def index_names(backend: SQLiteBackend) -> set[str]:
    async with backend.session() as session:
        rows = await session.fetch_all(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND name NOT LIKE 'sqlite_%'"
        )
    return {row[0] for row in rows}


@pytest.fixture
def inspect_db():
    """Helpers that read the SQLite catalog: tables, columns and indexes."""

    class Inspector:
        tables = staticmethod(table_names)
        columns = staticmethod(column_names)
        indexes = staticmethod(index_names)

    return Inspector
