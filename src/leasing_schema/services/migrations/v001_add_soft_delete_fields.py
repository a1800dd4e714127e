"""Add soft-delete support (deleted_at, deleted_by) to the core tables."""
from leasing_schema.domain.schema import DATE, UUID, ColumnSpec, ForeignKey, SchemaAdapter

MIGRATION_ID = "001-add-soft-delete-fields"
DESCRIPTION = "Add deleted_at and deleted_by to core tables, with a live-rows index"

TABLES = [
    "users",
    "buildings",
    "floors",
    "spaces",
    "bids",
    "contracts",
    "payments",
    "notifications",
    "private_visits",
    "role_hierarchy_config",
    "user_role_hierarchy",
]


def _index_name(table: str) -> str:
    return f"idx_{table}_deleted_at"


async def up(schema: SchemaAdapter) -> None:
    for table in TABLES:
        await schema.add_column(table, "deleted_at", ColumnSpec(DATE, nullable=True))
        await schema.add_column(
            table,
            "deleted_by",
            ColumnSpec(
                UUID,
                nullable=True,
                references=ForeignKey("users"),
                on_update="CASCADE",
                on_delete="SET NULL",
            ),
        )
        # Most queries filter on live rows
        await schema.execute_raw(
            f"CREATE INDEX {_index_name(table)} ON {table}(deleted_at) WHERE deleted_at IS NULL"
        )


async def down(schema: SchemaAdapter) -> None:
    for table in reversed(TABLES):
        await schema.execute_raw(f"DROP INDEX IF EXISTS {_index_name(table)}")
        await schema.remove_column(table, "deleted_by")
        await schema.remove_column(table, "deleted_at")
