"""Database backends - SQLite (aiosqlite) and PostgreSQL (asyncpg)."""

from leasing_schema.backends.base import DatabaseBackend, Session
from leasing_schema.backends.postgres import PostgresBackend
from leasing_schema.backends.sqlite import SQLiteBackend

__all__ = [
    "DatabaseBackend",
    "Session",
    "SQLiteBackend",
    "PostgresBackend",
    "create_backend",
    "sqlite_path_from_url",
]


def sqlite_path_from_url(url: str) -> str:
    """Extract the file path from a sqlite URL.

    ``sqlite:///data/app.db`` is relative, ``sqlite:////var/app.db`` is
    absolute, and ``sqlite://`` or ``sqlite:///:memory:`` is in-memory.
    The ``sqlite+aiosqlite://`` spelling is accepted too.
    """
    rest = url.split("://", 1)[1] if "://" in url else ""
    if rest in ("", "/", "/:memory:"):
        return ":memory:"
    if rest.startswith("/"):
        rest = rest[1:]
    return rest


def create_backend(url: str) -> DatabaseBackend:
    """Build a backend from a database URL or a bare SQLite file path."""
    if url.startswith(("postgresql://", "postgres://")):
        return PostgresBackend(url)
    if url.startswith(("sqlite://", "sqlite+aiosqlite://")):
        return SQLiteBackend(sqlite_path_from_url(url))
    if "://" in url:
        scheme = url.split("://", 1)[0]
        raise ValueError(f"Unsupported database scheme: {scheme}")
    return SQLiteBackend(url)
