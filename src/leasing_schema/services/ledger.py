"""Applied-Migrations Ledger - durable record of which migrations ran.

The ledger is an ordinary table inside the target database, so recording a
migration happens in the same transaction as the migration's own DDL. A
migration that rolls back therefore never shows up as applied.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from leasing_schema.backends.base import Session, quote_identifier, validate_identifier
from leasing_schema.core.errors import DuplicateEntryError, NotFoundError

log = structlog.get_logger()

DEFAULT_LEDGER_TABLE = "schema_migrations"

_TIMESTAMP_TYPES = {
    "sqlite": "TIMESTAMP",
    "postgresql": "TIMESTAMP WITH TIME ZONE",
}


@dataclass(frozen=True)
class LedgerEntry:
    """One applied migration."""

    migration_id: str
    applied_at: datetime
    checksum: Optional[str] = None


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Ledger:
    """Reads and writes the applied-migrations table.

    Every method takes the session to run in; the runner passes the
    migration's transaction so ledger writes commit or roll back with it.
    """

    def __init__(self, table: str = DEFAULT_LEDGER_TABLE) -> None:
        """Initialize the ledger.

        Args:
            table: Ledger table name. Must be a plain SQL identifier.

        Raises:
            ValueError: If the table name is not a plain identifier.
        """
        self._table_name = validate_identifier(table)
        self._table = quote_identifier(table)
        self._log = log.bind(component="ledger", table=table)

    @property
    def table(self) -> str:
        return self._table_name

    async def ensure_table(self, session: Session) -> None:
        """Create the ledger table if it does not exist yet."""
        timestamp_type = _TIMESTAMP_TYPES.get(session.dialect, "TIMESTAMP")
        await session.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self._table} (
                migration_id TEXT PRIMARY KEY,
                applied_at {timestamp_type} NOT NULL,
                checksum TEXT
            )
            """
        )

    async def entries(self, session: Session) -> list[LedgerEntry]:
        """All ledger rows ordered by applied_at, then migration_id.

        A missing ledger table is treated as an empty ledger.

        Raises:
            ConnectionError: If the database cannot be reached (raised by the session).
        """
        if not await session.table_exists(self._table_name):
            return []
        rows = await session.fetch_all(
            f"SELECT migration_id, applied_at, checksum FROM {self._table}"
        )

        entries = [
            LedgerEntry(migration_id=row[0], applied_at=_as_datetime(row[1]), checksum=row[2])
            for row in rows
        ]
        return sorted(entries, key=lambda e: (e.applied_at, e.migration_id))

    async def applied_ids(self, session: Session) -> set[str]:
        """Ids of all applied migrations."""
        return {entry.migration_id for entry in await self.entries(session)}

    async def record_applied(
        self,
        session: Session,
        migration_id: str,
        applied_at: Optional[datetime] = None,
        checksum: Optional[str] = None,
    ) -> LedgerEntry:
        """Insert a ledger row, creating the table on first use.

        Raises:
            DuplicateEntryError: If the id is already recorded.
        """
        await self.ensure_table(session)

        existing = await session.fetch_all(
            f"SELECT migration_id FROM {self._table} WHERE migration_id = ?", (migration_id,)
        )
        if existing:
            raise DuplicateEntryError(migration_id)

        entry = LedgerEntry(
            migration_id=migration_id,
            applied_at=applied_at or datetime.now(timezone.utc),
            checksum=checksum,
        )
        await session.execute(
            f"INSERT INTO {self._table} (migration_id, applied_at, checksum) VALUES (?, ?, ?)",
            (entry.migration_id, entry.applied_at, entry.checksum),
        )
        self._log.debug("ledger_recorded", migration_id=migration_id)
        return entry

    async def record_reverted(self, session: Session, migration_id: str) -> None:
        """Delete the ledger row for a migration.

        Raises:
            NotFoundError: If the id is not recorded.
        """
        if not await session.table_exists(self._table_name):
            raise NotFoundError(migration_id)

        existing = await session.fetch_all(
            f"SELECT migration_id FROM {self._table} WHERE migration_id = ?", (migration_id,)
        )
        if not existing:
            raise NotFoundError(migration_id)

        await session.execute(
            f"DELETE FROM {self._table} WHERE migration_id = ?", (migration_id,)
        )
        self._log.debug("ledger_removed", migration_id=migration_id)
