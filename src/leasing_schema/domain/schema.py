"""Schema-operation adapter protocol and the column vocabulary migrations use.

Migrations never talk to a database driver directly. They receive an object
satisfying SchemaAdapter and describe columns with ColumnSpec, so the same
script runs against any backend that implements the capability set.

Example:
    async def up(schema: SchemaAdapter) -> None:
        await schema.add_column(
            "buildings",
            "property_type",
            ColumnSpec(Enum("COMMERCIAL", "RESIDENTIAL"), nullable=False, default="COMMERCIAL"),
        )
        await schema.add_index("buildings", ["property_type"], name="idx_buildings_property_type")
"""
import enum
from abc import abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Protocol, Union, runtime_checkable


@dataclass(frozen=True)
class ColumnType:
    """A portable column type, rendered to SQL by each backend."""

    kind: str
    length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    values: tuple[str, ...] = ()


UUID = ColumnType("uuid")
DATE = ColumnType("datetime")  # timestamp with time zone
DATEONLY = ColumnType("date")
BOOLEAN = ColumnType("boolean")
TEXT = ColumnType("text")
INTEGER = ColumnType("integer")


def String(length: int = 255) -> ColumnType:
    """Variable-length string limited to ``length`` characters."""
    return ColumnType("string", length=length)


def Numeric(precision: int, scale: int = 0) -> ColumnType:
    """Exact decimal number."""
    return ColumnType("numeric", precision=precision, scale=scale)


def Enum(*values: str) -> ColumnType:
    """Enumerated type restricted to ``values``."""
    if not values:
        raise ValueError("Enum requires at least one value")
    return ColumnType("enum", values=tuple(values))


class ServerDefault(str, enum.Enum):
    """Default values computed by the database at insert time."""

    NOW = "now"
    GEN_UUID = "gen_uuid"


NOW = ServerDefault.NOW
GEN_UUID = ServerDefault.GEN_UUID

DefaultValue = Union[ServerDefault, str, bool, int, float, Decimal, None]


@dataclass(frozen=True)
class ForeignKey:
    """Target of a REFERENCES clause."""

    table: str
    column: str = "id"


@dataclass(frozen=True)
class ColumnSpec:
    """Definition of a single column.

    Attributes:
        type: Portable column type.
        nullable: Whether NULL is allowed.
        default: Literal default or a ServerDefault marker.
        primary_key: Part of the table's primary key.
        unique: Column-level UNIQUE constraint.
        references: Foreign key target.
        on_update: Referential action (CASCADE, SET NULL, RESTRICT, ...).
        on_delete: Referential action (CASCADE, SET NULL, RESTRICT, ...).
    """

    type: ColumnType
    nullable: bool = True
    default: DefaultValue = None
    primary_key: bool = False
    unique: bool = False
    references: Optional[ForeignKey] = None
    on_update: Optional[str] = None
    on_delete: Optional[str] = None


CONSTRAINT_TYPES = ("unique", "check", "primary key", "foreign key")

# Partial index predicate: either raw SQL or {column: value} joined with AND.
IndexWhere = Union[str, dict[str, Any], None]


@runtime_checkable
class SchemaAdapter(Protocol):
    """Capability set a migration uses to change the schema.

    Every call runs inside the transaction the runner opened for the
    migration. Database rejections surface as SchemaOperationError with the
    driver error as its cause.
    """

    dialect: str

    @abstractmethod
    async def add_column(self, table: str, column: str, spec: ColumnSpec) -> None:
        ...

    @abstractmethod
    async def remove_column(self, table: str, column: str) -> None:
        ...

    @abstractmethod
    async def create_table(self, table: str, columns: dict[str, ColumnSpec]) -> None:
        ...

    @abstractmethod
    async def drop_table(self, table: str) -> None:
        ...

    @abstractmethod
    async def add_index(
        self,
        table: str,
        columns: list[str],
        name: Optional[str] = None,
        unique: bool = False,
        where: IndexWhere = None,
    ) -> None:
        ...

    @abstractmethod
    async def remove_index(self, table: str, name: str) -> None:
        ...

    @abstractmethod
    async def add_constraint(
        self,
        table: str,
        columns: list[str],
        type: str,
        name: str,
        expression: Optional[str] = None,
        references: Optional[ForeignKey] = None,
        on_update: Optional[str] = None,
        on_delete: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def remove_constraint(self, table: str, name: str) -> None:
        ...

    @abstractmethod
    async def execute_raw(self, sql: str) -> None:
        ...
