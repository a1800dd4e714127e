"""Migration Registry - discovers and orders migration definitions.

Migration modules live in a package and are named ``v<NNN>_<slug>.py``.
Each module exposes:

- MIGRATION_ID: str - unique id with a numeric prefix, e.g. "001-add-soft-delete-fields"
- DESCRIPTION: str - human-readable description
- async def up(schema) / async def down(schema) - the forward and inverse procedures
- IRREVERSIBLE_NOTES: str (optional) - documents a down step that cannot fully undo up

Loading imports the modules but never touches a database.
"""
from __future__ import annotations

import hashlib
import importlib
import inspect
import pkgutil
import re
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Awaitable, Callable, Iterable, Optional

import structlog

from leasing_schema.core.errors import RegistryError
from leasing_schema.domain.schema import SchemaAdapter

log = structlog.get_logger()

Procedure = Callable[[SchemaAdapter], Awaitable[None]]

MODULE_PATTERN = re.compile(r"^v\d+_\w+$")
ID_PATTERN = re.compile(r"^(\d+)(?:[-_].*)?$")


def sort_key(migration_id: str) -> tuple[int, str]:
    """Ordering key for a migration id: numeric prefix first, then the full id.

    Raises:
        RegistryError: If the id has no leading numeric prefix.
    """
    match = ID_PATTERN.match(migration_id)
    if not match:
        raise RegistryError(
            f"Migration id {migration_id!r} must start with a numeric prefix, e.g. '001-name'"
        )
    return int(match.group(1)), migration_id


@dataclass(frozen=True)
class MigrationDefinition:
    """A single migration: id, description and its up/down procedures."""

    id: str
    description: str
    up: Procedure
    down: Procedure
    checksum: Optional[str] = None
    irreversible_notes: Optional[str] = None

    @property
    def is_fully_reversible(self) -> bool:
        return self.irreversible_notes is None


def module_checksum(module: ModuleType) -> Optional[str]:
    """SHA-256 of a module's source file, or None if it has no readable source."""
    filename = getattr(module, "__file__", None)
    if not filename:
        return None
    try:
        content = Path(filename).read_bytes()
    except OSError:
        return None
    return hashlib.sha256(content).hexdigest()


def definition_from_module(module: ModuleType) -> MigrationDefinition:
    """Build a MigrationDefinition from a migration module.

    Raises:
        RegistryError: If a required attribute is missing or a procedure is not async.
    """
    missing = [
        attr for attr in ("MIGRATION_ID", "DESCRIPTION", "up", "down") if not hasattr(module, attr)
    ]
    if missing:
        raise RegistryError(f"Migration module {module.__name__} is missing {', '.join(missing)}")

    for name in ("up", "down"):
        if not inspect.iscoroutinefunction(getattr(module, name)):
            raise RegistryError(f"{module.__name__}.{name} must be an async function")

    return MigrationDefinition(
        id=module.MIGRATION_ID,
        description=module.DESCRIPTION,
        up=module.up,
        down=module.down,
        checksum=module_checksum(module),
        irreversible_notes=getattr(module, "IRREVERSIBLE_NOTES", None),
    )


class MigrationRegistry:
    """Ordered, validated collection of migration definitions.

    Usage:
        registry = MigrationRegistry.from_package("leasing_schema.services.migrations")
        for migration in registry.list():
            print(migration.id, migration.description)
    """

    def __init__(self, definitions: Iterable[MigrationDefinition] = ()) -> None:
        self._definitions = list(definitions)

    @classmethod
    def from_package(cls, package_name: str) -> "MigrationRegistry":
        """Discover migration modules in a package.

        Only modules matching ``v<digits>_<name>`` are considered.

        Raises:
            RegistryError: If the package cannot be imported or a module is malformed.
        """
        try:
            package = importlib.import_module(package_name)
        except ImportError as e:
            raise RegistryError(f"Cannot import migrations package {package_name}", cause=e) from e

        search_path = getattr(package, "__path__", None)
        if search_path is None:
            raise RegistryError(f"{package_name} is a module, not a package")

        definitions = []
        for info in pkgutil.iter_modules(search_path):
            if info.ispkg or not MODULE_PATTERN.match(info.name):
                continue
            module_name = f"{package_name}.{info.name}"
            try:
                module = importlib.import_module(module_name)
            except Exception as e:
                raise RegistryError(f"Cannot import migration {module_name}", cause=e) from e
            definitions.append(definition_from_module(module))

        log.debug("migrations_discovered", package=package_name, count=len(definitions))
        return cls(definitions)

    def list(self) -> list[MigrationDefinition]:
        """All migrations sorted ascending by id.

        Raises:
            RegistryError: On duplicate ids or ids without a numeric prefix.
        """
        seen: set[str] = set()
        for definition in self._definitions:
            if definition.id in seen:
                raise RegistryError(f"Duplicate migration id: {definition.id}")
            seen.add(definition.id)

        return sorted(self._definitions, key=lambda d: sort_key(d.id))

    def ids(self) -> list[str]:
        """Migration ids in application order."""
        return [d.id for d in self.list()]

    def get(self, migration_id: str) -> MigrationDefinition:
        """Look up a migration by id.

        Raises:
            RegistryError: If no migration has this id.
        """
        for definition in self.list():
            if definition.id == migration_id:
                return definition
        raise RegistryError(f"Unknown migration id: {migration_id}")

    def __len__(self) -> int:
        return len(self._definitions)
