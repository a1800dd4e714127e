"""
Tests for the shipped leasing migrations against SQLite.

Each test starts from the application's base schema (see conftest.py) and
runs the real migration modules through the runner.
"""
import pytest

from leasing_schema.core.errors import SchemaOperationError
from leasing_schema.services.ledger import Ledger
from leasing_schema.services.migrations import v001_add_soft_delete_fields as soft_delete
from leasing_schema.services.registry import MigrationRegistry
from leasing_schema.services.runner import MigrationRunner

PACKAGE = "leasing_schema.services.migrations"

ALL_IDS = [
    "001-add-soft-delete-fields",
    "002-add-property-type-and-leave-management",
    "003-create-parking-spaces-table",
    "004-update-private-visits-rescheduling",
]


@pytest.fixture
def registry() -> MigrationRegistry:
    return MigrationRegistry.from_package(PACKAGE)


@pytest.fixture
def runner(app_backend, registry, fast_lock, no_retry) -> MigrationRunner:
    return MigrationRunner(app_backend, registry, lock=fast_lock, retry=no_retry)


async def snapshot(backend, inspect_db) -> dict:
    """Application tables with their columns, plus every index name."""
    tables = {}
    for table in sorted(await inspect_db.tables(backend)):
        if table.startswith("schema_migrations"):
            continue
        tables[table] = await inspect_db.columns(backend, table)
    return {"tables": tables, "indexes": await inspect_db.indexes(backend)}


class TestDiscovery:
    """Tests for loading the migrations package."""

    def test_discovers_all_migrations_in_order(self, registry):
        assert registry.ids() == ALL_IDS

    def test_every_migration_has_a_checksum(self, registry):
        assert all(m.checksum for m in registry.list())

    def test_only_visit_rescheduling_is_partially_reversible(self, registry):
        partial = [m.id for m in registry.list() if not m.is_fully_reversible]
        assert partial == ["004-update-private-visits-rescheduling"]
        assert "RESCHEDULED" in registry.get(partial[0]).irreversible_notes


class TestApplyAll:
    """Tests for the schema produced by applying every migration."""

    @pytest.mark.asyncio
    async def test_up_applies_all(self, runner, app_backend):
        assert await runner.up() == ALL_IDS

        async with app_backend.session() as session:
            assert await Ledger().applied_ids(session) == set(ALL_IDS)

    @pytest.mark.asyncio
    async def test_soft_delete_columns_and_indexes(self, runner, app_backend, inspect_db):
        await runner.up(target_id=ALL_IDS[0])

        indexes = await inspect_db.indexes(app_backend)
        for table in soft_delete.TABLES:
            columns = await inspect_db.columns(app_backend, table)
            assert "deleted_at" in columns
            assert "deleted_by" in columns
            assert f"idx_{table}_deleted_at" in indexes

    @pytest.mark.asyncio
    async def test_property_type_defaults_and_is_restricted(self, runner, app_backend):
        await runner.up(target_id=ALL_IDS[1])

        async with app_backend.transaction() as session:
            await session.execute("INSERT INTO buildings (id, name) VALUES ('b1', 'Tower')")
        async with app_backend.session() as session:
            rows = await session.fetch_all("SELECT property_type FROM buildings WHERE id = 'b1'")
        assert rows == [("COMMERCIAL",)]

        with pytest.raises(SchemaOperationError):
            async with app_backend.transaction() as session:
                await session.execute(
                    "INSERT INTO buildings (id, name, property_type) VALUES ('b2', 'Barn', 'FARM')"
                )

    @pytest.mark.asyncio
    async def test_leave_management_columns(self, runner, app_backend, inspect_db):
        await runner.up(target_id=ALL_IDS[1])

        columns = await inspect_db.columns(app_backend, "users")
        assert {"leave_status", "leave_start_date", "leave_end_date"} <= set(columns)
        indexes = await inspect_db.indexes(app_backend)
        assert "idx_users_leave_status" in indexes
        assert "idx_buildings_property_type" in indexes

        async with app_backend.transaction() as session:
            await session.execute("INSERT INTO users (id, email) VALUES ('u1', 'rep@example.com')")
        async with app_backend.session() as session:
            rows = await session.fetch_all("SELECT leave_status FROM users WHERE id = 'u1'")
        assert rows == [("ACTIVE",)]

    @pytest.mark.asyncio
    async def test_parking_spaces_table(self, runner, app_backend, inspect_db):
        await runner.up(target_id=ALL_IDS[2])

        columns = await inspect_db.columns(app_backend, "parking_spaces")
        assert columns[:4] == ["id", "building_id", "space_number", "parking_type"]
        assert "deleted_by" in columns

        indexes = await inspect_db.indexes(app_backend)
        assert {
            "parking_spaces_building_space_unique",
            "idx_parking_spaces_building_id",
            "idx_parking_spaces_assigned_to_user",
            "idx_parking_spaces_assigned_to_contract",
            "idx_parking_spaces_available",
            "idx_parking_spaces_deleted_at",
        } <= indexes

    @pytest.mark.asyncio
    async def test_parking_space_foreign_key_actions(self, runner, app_backend):
        """Only the assignment links cascade; audit columns keep NO ACTION."""
        await runner.up(target_id=ALL_IDS[2])

        async with app_backend.session() as session:
            rows = await session.fetch_all('PRAGMA foreign_key_list("parking_spaces")')
        actions = {row[3]: (row[2], row[5], row[6]) for row in rows}

        assert actions == {
            "building_id": ("buildings", "CASCADE", "RESTRICT"),
            "assigned_to_user_id": ("users", "CASCADE", "SET NULL"),
            "assigned_to_contract_id": ("contracts", "CASCADE", "SET NULL"),
            "created_by": ("users", "NO ACTION", "NO ACTION"),
            "updated_by": ("users", "NO ACTION", "NO ACTION"),
            "deleted_by": ("users", "NO ACTION", "NO ACTION"),
        }

    @pytest.mark.asyncio
    async def test_parking_space_defaults(self, runner, app_backend):
        await runner.up(target_id=ALL_IDS[2])

        async with app_backend.transaction() as session:
            await session.execute("INSERT INTO buildings (id, name) VALUES ('b1', 'Tower')")
            await session.execute(
                "INSERT INTO parking_spaces (building_id, space_number) VALUES ('b1', 'P-01')"
            )
        async with app_backend.session() as session:
            rows = await session.fetch_all(
                "SELECT id, parking_type, is_available, currency, created_at FROM parking_spaces"
            )

        space_id, parking_type, is_available, currency, created_at = rows[0]
        assert len(space_id) == 32
        assert parking_type == "STANDARD"
        assert is_available == 1
        assert currency == "USD"
        assert created_at is not None

    @pytest.mark.asyncio
    async def test_space_number_unique_per_building(self, runner, app_backend):
        await runner.up(target_id=ALL_IDS[2])

        async with app_backend.transaction() as session:
            await session.execute("INSERT INTO buildings (id, name) VALUES ('b1', 'Tower')")
            await session.execute("INSERT INTO buildings (id, name) VALUES ('b2', 'Annex')")
            await session.execute(
                "INSERT INTO parking_spaces (building_id, space_number) VALUES ('b1', 'P-01')"
            )
            # Same number in another building is fine
            await session.execute(
                "INSERT INTO parking_spaces (building_id, space_number) VALUES ('b2', 'P-01')"
            )

        with pytest.raises(SchemaOperationError):
            async with app_backend.transaction() as session:
                await session.execute(
                    "INSERT INTO parking_spaces (building_id, space_number) VALUES ('b1', 'P-01')"
                )

    @pytest.mark.asyncio
    async def test_visit_rescheduling_columns(self, runner, app_backend, inspect_db):
        await runner.up()

        columns = await inspect_db.columns(app_backend, "private_visits")
        assert {"rescheduled_from_visit_id", "rescheduled_reason"} <= set(columns)
        assert "idx_private_visits_rescheduled_from" in await inspect_db.indexes(app_backend)


class TestRevert:
    """Tests for reverting the shipped migrations."""

    @pytest.mark.asyncio
    async def test_down_all_restores_base_schema(self, runner, app_backend, inspect_db):
        before = await snapshot(app_backend, inspect_db)

        await runner.up()
        assert await runner.down(steps=4) == list(reversed(ALL_IDS))

        assert await snapshot(app_backend, inspect_db) == before

    @pytest.mark.asyncio
    async def test_each_migration_round_trips(self, runner, app_backend, inspect_db):
        """Verify every migration's down undoes its up, one step at a time."""
        snapshots = [await snapshot(app_backend, inspect_db)]
        for migration_id in ALL_IDS:
            await runner.up(target_id=migration_id)
            snapshots.append(await snapshot(app_backend, inspect_db))

        for expected in reversed(snapshots[:-1]):
            await runner.down()
            assert await snapshot(app_backend, inspect_db) == expected

    @pytest.mark.asyncio
    async def test_reapply_after_full_revert(self, runner, app_backend, inspect_db):
        await runner.up()
        applied = await snapshot(app_backend, inspect_db)

        await runner.down(steps=4)

        assert await runner.up() == ALL_IDS
        assert await snapshot(app_backend, inspect_db) == applied

    @pytest.mark.asyncio
    async def test_soft_delete_then_property_type_scenario(
        self, app_backend, registry, fast_lock, no_retry
    ):
        """Apply 001 and 002 from an empty ledger, then revert 002 only."""
        first_two = MigrationRegistry(registry.list()[:2])
        runner = MigrationRunner(app_backend, first_two, lock=fast_lock, retry=no_retry)

        assert await runner.up() == ALL_IDS[:2]
        status = await runner.status()
        assert status.applied_ids == ALL_IDS[:2]
        assert status.pending == []

        assert await runner.down(steps=1) == [ALL_IDS[1]]
        status = await runner.status()
        assert status.applied_ids == [ALL_IDS[0]]
        assert status.pending == [ALL_IDS[1]]
