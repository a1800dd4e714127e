"""Migration Runner - applies pending migrations and rolls back applied ones.

This service:
- Takes an exclusive migration lock before looking at the ledger
- Applies pending migrations in id order, one transaction per migration
- Records each migration in the ledger inside that same transaction
- Stops at the first failure; earlier migrations stay committed
- Reverts the most recently applied migrations on request
"""
import asyncio
import os
import socket
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog

from leasing_schema.backends import create_backend
from leasing_schema.backends.base import DatabaseBackend
from leasing_schema.core.config import ConfigManager
from leasing_schema.core.errors import (
    InsufficientHistoryError,
    LockContentionError,
    MigrationError,
    MigrationFailedError,
    RegistryError,
)
from leasing_schema.core.retry import RetryConfig, retry_with_config
from leasing_schema.services.ledger import DEFAULT_LEDGER_TABLE, Ledger, LedgerEntry
from leasing_schema.services.registry import MigrationDefinition, MigrationRegistry, sort_key

log = structlog.get_logger()

UP = "up"
DOWN = "down"


@dataclass
class LockSettings:
    """How long to wait for the migration lock and how to poll it.

    Attributes:
        timeout_seconds: Give up with LockContentionError after this long.
        poll_interval_seconds: Delay between acquisition attempts.
        stale_after_seconds: Treat an older lock as abandoned (backends that
            support it); None never expires a lock.
    """

    timeout_seconds: float = 10.0
    poll_interval_seconds: float = 0.5
    stale_after_seconds: Optional[float] = None


@dataclass
class MigrationStatus:
    """Read-only snapshot of applied vs. pending migrations."""

    applied: list[LedgerEntry] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    unknown: list[str] = field(default_factory=list)
    drifted: list[str] = field(default_factory=list)

    @property
    def applied_ids(self) -> list[str]:
        return [entry.migration_id for entry in self.applied]

    @property
    def is_up_to_date(self) -> bool:
        return not self.pending


def default_lock_owner() -> str:
    """Identify this run in the lock row: host, pid and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _revert_order(entry: LedgerEntry) -> tuple[datetime, tuple[int, str]]:
    try:
        return entry.applied_at, sort_key(entry.migration_id)
    except RegistryError:
        # Not a registry-style id; down() rejects it once it is selected.
        return entry.applied_at, (-1, entry.migration_id)


class MigrationRunner:
    """Compares the registry against the ledger and executes the difference.

    Usage:
        runner = MigrationRunner.from_config(config)
        try:
            applied = await runner.up()
            status = await runner.status()
        finally:
            await runner.close()
    """

    def __init__(
        self,
        backend: DatabaseBackend,
        registry: MigrationRegistry,
        ledger: Optional[Ledger] = None,
        lock: Optional[LockSettings] = None,
        retry: Optional[RetryConfig] = None,
        owner: Optional[str] = None,
    ) -> None:
        """Initialize the runner.

        Args:
            backend: Database backend the migrations run against.
            registry: Available migrations.
            ledger: Applied-migrations ledger (default table schema_migrations).
            lock: Lock wait/poll settings.
            retry: Retry policy for connecting to the database.
            owner: Lock owner identity (defaults to host:pid:random).
        """
        self._backend = backend
        self._registry = registry
        self._ledger = ledger or Ledger(DEFAULT_LEDGER_TABLE)
        self._lock = lock or LockSettings()
        self._retry = retry or RetryConfig()
        self._owner = owner or default_lock_owner()
        self._in_progress = asyncio.Lock()
        self._log = log.bind(component="migration_runner")

    @classmethod
    def from_config(
        cls,
        config: ConfigManager,
        backend: Optional[DatabaseBackend] = None,
    ) -> "MigrationRunner":
        """Build a runner from configuration.

        Args:
            config: Configuration manager.
            backend: Backend to use instead of the one named by database.url.
        """
        registry = MigrationRegistry.from_package(config.get("migrations.package"))
        return cls(
            backend=backend or create_backend(str(config.get("database.url"))),
            registry=registry,
            ledger=Ledger(config.get("migrations.ledger_table", DEFAULT_LEDGER_TABLE)),
            lock=LockSettings(
                timeout_seconds=config.get_float("lock.timeout_seconds", 10.0),
                poll_interval_seconds=config.get_float("lock.poll_interval_seconds", 0.5),
                stale_after_seconds=config.get_float("lock.stale_after_seconds"),
            ),
            retry=RetryConfig.from_dict(config.get_section("retry")),
        )

    @property
    def backend(self) -> DatabaseBackend:
        return self._backend

    @property
    def registry(self) -> MigrationRegistry:
        return self._registry

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    # ============ Connection ============

    async def connect(self) -> None:
        """Connect to the database, retrying transient connection failures."""
        if self._backend.is_connected:
            return
        connect = retry_with_config(self._retry, log_context={"component": "migration_runner"})(
            self._backend.connect
        )
        await connect()

    async def close(self) -> None:
        await self._backend.close()

    # ============ Lock ============

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        name = self._ledger.table
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._lock.timeout_seconds

        # Advisory locks stack within one session, so overlapping calls on
        # this runner queue here before they reach the database lock.
        if self._in_progress.locked():
            try:
                await asyncio.wait_for(self._in_progress.acquire(), self._lock.timeout_seconds)
            except TimeoutError:
                raise self._contention(name, self._owner) from None
        else:
            await self._in_progress.acquire()

        try:
            while not await self._backend.try_acquire_lock(
                name, self._owner, self._lock.stale_after_seconds
            ):
                if loop.time() >= deadline:
                    raise self._contention(name, await self._backend.lock_holder(name))
                await asyncio.sleep(self._lock.poll_interval_seconds)

            self._log.debug("lock_acquired", lock=name, owner=self._owner)
            try:
                yield
            except BaseException:
                await self._release_after_failure(name)
                raise
            await self._backend.release_lock(name, self._owner)
            self._log.debug("lock_released", lock=name)
        finally:
            self._in_progress.release()

    def _contention(self, name: str, holder: Optional[str]) -> LockContentionError:
        self._log.warning("lock_contention", lock=name, holder=holder)
        return LockContentionError(
            f"Another migration run holds the {name} lock" + (f" ({holder})" if holder else ""),
            holder=holder,
        )

    async def _release_after_failure(self, name: str) -> None:
        # The original error is already propagating; report this one without replacing it.
        try:
            await self._backend.release_lock(name, self._owner)
        except MigrationError as e:
            self._log.error("lock_release_failed", lock=name, error=str(e))

    # ============ Operations ============

    async def up(self, target_id: Optional[str] = None, dry_run: bool = False) -> list[str]:
        """Apply pending migrations in order.

        Args:
            target_id: Stop after this migration (inclusive). None applies all.
            dry_run: Only compute what would be applied.

        Returns:
            Ids applied (or, for a dry run, that would be applied), in order.

        Raises:
            RegistryError: Unknown target id or a malformed registry.
            LockContentionError: Another run holds the lock.
            MigrationFailedError: A migration failed; it was rolled back and the run stopped.
        """
        await self.connect()

        async with self._locked():
            async with self._backend.session() as session:
                entries = await self._ledger.entries(session)

            migrations = self._registry.list()
            self._warn_on_drift(entries, migrations)

            if target_id is not None:
                ids = [m.id for m in migrations]
                if target_id not in ids:
                    raise RegistryError(f"Unknown target migration id: {target_id}")
                migrations = migrations[: ids.index(target_id) + 1]

            applied = {entry.migration_id for entry in entries}
            pending = [m for m in migrations if m.id not in applied]

            if not pending:
                self._log.info("no_pending_migrations")
                return []

            if dry_run:
                self._log.info("dry_run", pending=[m.id for m in pending])
                return [m.id for m in pending]

            completed: list[str] = []
            for migration in pending:
                await self._execute(migration, UP, completed)
                completed.append(migration.id)

        self._log.info("migrations_applied", count=len(completed), last=completed[-1])
        return completed

    async def down(self, steps: int = 1) -> list[str]:
        """Revert the ``steps`` most recently applied migrations.

        Returns:
            Ids reverted, most recent first.

        Raises:
            ValueError: If steps < 1.
            InsufficientHistoryError: Fewer than ``steps`` migrations are applied.
            RegistryError: An applied migration is no longer in the registry.
            MigrationFailedError: A down step failed; it was rolled back and the run stopped.
        """
        if steps < 1:
            raise ValueError("steps must be at least 1")

        await self.connect()

        async with self._locked():
            async with self._backend.session() as session:
                entries = await self._ledger.entries(session)

            if len(entries) < steps:
                raise InsufficientHistoryError(steps, len(entries))

            most_recent_first = sorted(entries, key=_revert_order, reverse=True)
            # Resolve everything before touching the schema
            targets = [self._registry.get(e.migration_id) for e in most_recent_first[:steps]]

            completed: list[str] = []
            for migration in targets:
                if migration.irreversible_notes:
                    self._log.warning(
                        "partial_revert",
                        migration_id=migration.id,
                        notes=migration.irreversible_notes,
                    )
                await self._execute(migration, DOWN, completed)
                completed.append(migration.id)

        self._log.info("migrations_reverted", count=len(completed), last=completed[-1])
        return completed

    async def status(self) -> MigrationStatus:
        """Report applied, pending, unknown and drifted migrations. Never mutates."""
        await self.connect()

        async with self._backend.session() as session:
            entries = await self._ledger.entries(session)

        migrations = self._registry.list()
        by_id = {m.id: m for m in migrations}
        applied = {entry.migration_id for entry in entries}

        return MigrationStatus(
            applied=entries,
            pending=[m.id for m in migrations if m.id not in applied],
            unknown=[e.migration_id for e in entries if e.migration_id not in by_id],
            drifted=self._drifted(entries, by_id),
        )

    async def history(self) -> list[LedgerEntry]:
        """Ledger rows in the order they were applied."""
        await self.connect()
        async with self._backend.session() as session:
            return await self._ledger.entries(session)

    async def unlock(self) -> bool:
        """Clear a migration lock left behind by a crashed run."""
        await self.connect()
        cleared = await self._backend.force_release_lock(self._ledger.table)
        self._log.warning("lock_force_released" if cleared else "no_lock_to_release")
        return cleared

    # ============ Internals ============

    async def _execute(
        self,
        migration: MigrationDefinition,
        direction: str,
        completed: list[str],
    ) -> None:
        mlog = self._log.bind(migration_id=migration.id, direction=direction)
        mlog.info("migration_started", description=migration.description)
        started = time.monotonic()

        try:
            async with self._backend.transaction() as session:
                schema = self._backend.schema_adapter(session)
                if direction == UP:
                    await migration.up(schema)
                    await self._ledger.record_applied(
                        session, migration.id, checksum=migration.checksum
                    )
                else:
                    await migration.down(schema)
                    await self._ledger.record_reverted(session, migration.id)
        except Exception as e:
            mlog.error("migration_failed", error=str(e), error_type=type(e).__name__)
            raise MigrationFailedError(migration.id, direction, e, completed) from e

        mlog.info(
            "migration_applied" if direction == UP else "migration_reverted",
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )

    def _drifted(
        self,
        entries: list[LedgerEntry],
        by_id: dict[str, MigrationDefinition],
    ) -> list[str]:
        drifted = []
        for entry in entries:
            definition = by_id.get(entry.migration_id)
            if definition is None or not entry.checksum or not definition.checksum:
                continue
            if entry.checksum != definition.checksum:
                drifted.append(entry.migration_id)
        return drifted

    def _warn_on_drift(
        self,
        entries: list[LedgerEntry],
        migrations: list[MigrationDefinition],
    ) -> None:
        for migration_id in self._drifted(entries, {m.id: m for m in migrations}):
            self._log.warning("migration_modified_since_applied", migration_id=migration_id)
