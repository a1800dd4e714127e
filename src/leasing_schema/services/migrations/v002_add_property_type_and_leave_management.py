"""Add building property types and sales-rep leave tracking."""
from leasing_schema.domain.schema import DATEONLY, ColumnSpec, Enum, SchemaAdapter

MIGRATION_ID = "002-add-property-type-and-leave-management"
DESCRIPTION = "Add buildings.property_type and users leave status/dates"

PROPERTY_TYPES = ("COMMERCIAL", "RESIDENTIAL", "MIXED_USE")
LEAVE_STATUSES = ("ACTIVE", "ON_LEAVE", "SICK_LEAVE", "VACATION")


async def up(schema: SchemaAdapter) -> None:
    await schema.add_column(
        "buildings",
        "property_type",
        ColumnSpec(Enum(*PROPERTY_TYPES), nullable=False, default="COMMERCIAL"),
    )
    await schema.add_index(
        "buildings", ["property_type"], name="idx_buildings_property_type"
    )

    await schema.add_column(
        "users",
        "leave_status",
        ColumnSpec(Enum(*LEAVE_STATUSES), nullable=False, default="ACTIVE"),
    )
    await schema.add_column("users", "leave_start_date", ColumnSpec(DATEONLY, nullable=True))
    await schema.add_column("users", "leave_end_date", ColumnSpec(DATEONLY, nullable=True))

    # Availability lookups only ever concern sales reps
    await schema.execute_raw(
        "CREATE INDEX idx_users_leave_status "
        "ON users(leave_status, leave_start_date, leave_end_date) "
        "WHERE role = 'SALES_REP'"
    )


async def down(schema: SchemaAdapter) -> None:
    await schema.execute_raw("DROP INDEX IF EXISTS idx_users_leave_status")
    await schema.remove_column("users", "leave_end_date")
    await schema.remove_column("users", "leave_start_date")
    await schema.remove_column("users", "leave_status")

    await schema.remove_index("buildings", "idx_buildings_property_type")
    await schema.remove_column("buildings", "property_type")

    if schema.dialect == "postgresql":
        await schema.execute_raw('DROP TYPE IF EXISTS "enum_buildings_property_type"')
        await schema.execute_raw('DROP TYPE IF EXISTS "enum_users_leave_status"')
