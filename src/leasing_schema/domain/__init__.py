"""Domain vocabulary - schema-operation protocol and column types, no I/O."""

from leasing_schema.domain.schema import (
    BOOLEAN,
    CONSTRAINT_TYPES,
    DATE,
    DATEONLY,
    GEN_UUID,
    INTEGER,
    NOW,
    TEXT,
    UUID,
    ColumnSpec,
    ColumnType,
    Enum,
    ForeignKey,
    IndexWhere,
    Numeric,
    SchemaAdapter,
    ServerDefault,
    String,
)

__all__ = [
    # Adapter protocol
    "SchemaAdapter",
    "CONSTRAINT_TYPES",
    "IndexWhere",
    # Column description
    "ColumnSpec",
    "ColumnType",
    "ForeignKey",
    "ServerDefault",
    # Types
    "UUID",
    "DATE",
    "DATEONLY",
    "BOOLEAN",
    "TEXT",
    "INTEGER",
    "String",
    "Numeric",
    "Enum",
    # Server defaults
    "NOW",
    "GEN_UUID",
]
