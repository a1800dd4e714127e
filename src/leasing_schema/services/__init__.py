"""Services - registry, ledger and runner."""

from leasing_schema.services.registry import MigrationDefinition, MigrationRegistry
from leasing_schema.services.ledger import Ledger, LedgerEntry
from leasing_schema.services.runner import LockSettings, MigrationRunner, MigrationStatus

__all__ = [
    "MigrationDefinition",
    "MigrationRegistry",
    "Ledger",
    "LedgerEntry",
    "MigrationRunner",
    "MigrationStatus",
    "LockSettings",
]
