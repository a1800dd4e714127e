"""Track rescheduled private visits."""
from leasing_schema.domain.schema import TEXT, UUID, ColumnSpec, ForeignKey, SchemaAdapter

MIGRATION_ID = "004-update-private-visits-rescheduling"
DESCRIPTION = "Add RESCHEDULED visit status and link visits to the visit they replace"

IRREVERSIBLE_NOTES = (
    "PostgreSQL cannot remove a value from an enum type, so the RESCHEDULED "
    "value added to enum_private_visits_status stays after down."
)


async def up(schema: SchemaAdapter) -> None:
    if schema.dialect == "postgresql":
        await schema.execute_raw(
            "ALTER TYPE \"enum_private_visits_status\" ADD VALUE IF NOT EXISTS 'RESCHEDULED'"
        )

    await schema.add_column(
        "private_visits",
        "rescheduled_from_visit_id",
        ColumnSpec(
            UUID,
            nullable=True,
            references=ForeignKey("private_visits"),
            on_update="CASCADE",
            on_delete="SET NULL",
        ),
    )
    await schema.add_column("private_visits", "rescheduled_reason", ColumnSpec(TEXT, nullable=True))

    await schema.add_index(
        "private_visits",
        ["rescheduled_from_visit_id"],
        name="idx_private_visits_rescheduled_from",
    )


async def down(schema: SchemaAdapter) -> None:
    await schema.remove_index("private_visits", "idx_private_visits_rescheduled_from")
    await schema.remove_column("private_visits", "rescheduled_reason")
    await schema.remove_column("private_visits", "rescheduled_from_visit_id")
