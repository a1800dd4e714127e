"""Create the parking_spaces table."""
from leasing_schema.domain.schema import (
    BOOLEAN,
    DATE,
    GEN_UUID,
    NOW,
    TEXT,
    UUID,
    ColumnSpec,
    Enum,
    ForeignKey,
    Numeric,
    SchemaAdapter,
    String,
)

MIGRATION_ID = "003-create-parking-spaces-table"
DESCRIPTION = "Create parking_spaces with per-building unique space numbers"

TABLE = "parking_spaces"
PARKING_TYPES = ("STANDARD", "RESERVED", "HANDICAP", "ELECTRIC_CHARGING")


def _audit_ref() -> ColumnSpec:
    return ColumnSpec(UUID, nullable=True, references=ForeignKey("users"))


COLUMNS = {
    "id": ColumnSpec(UUID, nullable=False, primary_key=True, default=GEN_UUID),
    "building_id": ColumnSpec(
        UUID,
        nullable=False,
        references=ForeignKey("buildings"),
        on_update="CASCADE",
        on_delete="RESTRICT",
    ),
    "space_number": ColumnSpec(String(50), nullable=False),
    "parking_type": ColumnSpec(Enum(*PARKING_TYPES), nullable=False, default="STANDARD"),
    "is_available": ColumnSpec(BOOLEAN, nullable=False, default=True),
    "assigned_to_user_id": ColumnSpec(
        UUID,
        nullable=True,
        references=ForeignKey("users"),
        on_update="CASCADE",
        on_delete="SET NULL",
    ),
    "assigned_to_contract_id": ColumnSpec(
        UUID,
        nullable=True,
        references=ForeignKey("contracts"),
        on_update="CASCADE",
        on_delete="SET NULL",
    ),
    "assigned_at": ColumnSpec(DATE, nullable=True),
    "monthly_fee": ColumnSpec(Numeric(10, 2), nullable=True),
    "currency": ColumnSpec(String(3), nullable=False, default="USD"),
    "notes": ColumnSpec(TEXT, nullable=True),
    "created_at": ColumnSpec(DATE, nullable=False, default=NOW),
    "updated_at": ColumnSpec(DATE, nullable=False, default=NOW),
    "created_by": _audit_ref(),
    "updated_by": _audit_ref(),
    "deleted_at": ColumnSpec(DATE, nullable=True),
    "deleted_by": _audit_ref(),
}


async def up(schema: SchemaAdapter) -> None:
    await schema.create_table(TABLE, COLUMNS)

    await schema.add_constraint(
        TABLE,
        ["building_id", "space_number"],
        type="unique",
        name="parking_spaces_building_space_unique",
    )

    await schema.add_index(TABLE, ["building_id"], name="idx_parking_spaces_building_id")
    await schema.add_index(
        TABLE, ["assigned_to_user_id"], name="idx_parking_spaces_assigned_to_user"
    )
    await schema.add_index(
        TABLE, ["assigned_to_contract_id"], name="idx_parking_spaces_assigned_to_contract"
    )
    await schema.add_index(
        TABLE,
        ["is_available"],
        name="idx_parking_spaces_available",
        where={"is_available": True},
    )
    await schema.execute_raw(
        "CREATE INDEX idx_parking_spaces_deleted_at "
        "ON parking_spaces(deleted_at) WHERE deleted_at IS NULL"
    )


async def down(schema: SchemaAdapter) -> None:
    # Indexes and constraints go with the table
    await schema.drop_table(TABLE)
    if schema.dialect == "postgresql":
        await schema.execute_raw('DROP TYPE IF EXISTS "enum_parking_spaces_parking_type"')
