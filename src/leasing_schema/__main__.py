"""leasing-schema migration CLI - Entry Point

Usage:
    migrate [--config PATH] [--database URL] [--log-level LEVEL] [--json-logs] COMMAND

Commands:
    up       - Apply pending migrations
    down     - Revert the most recently applied migrations
    status   - Show applied and pending migrations
    history  - List ledger rows with their timestamps
    unlock   - Clear a migration lock left by a crashed run
    version  - Show version

Examples:
    migrate up
    migrate up --to 002-add-property-type-and-leave-management --dry-run
    migrate down --steps 2
    migrate --database postgresql://app@localhost/leasing status
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from leasing_schema import __version__
from leasing_schema.core.config import ConfigManager
from leasing_schema.core.errors import MigrationError, MigrationFailedError
from leasing_schema.core.logging import setup_logging


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="migrate",
        description="Versioned, reversible schema migrations for the leasing database",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"leasing-schema {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument(
        "--database",
        default=None,
        help="Database URL (overrides database.url)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=None,
        help="Emit logs as JSON",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Commands")

    up = subparsers.add_parser("up", help="Apply pending migrations")
    up.add_argument("--to", dest="target", default=None, help="Stop after this migration id")
    up.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be applied without changing anything",
    )

    down = subparsers.add_parser("down", help="Revert applied migrations")
    down.add_argument(
        "--steps",
        type=int,
        default=1,
        help="Number of migrations to revert (default: 1)",
    )

    subparsers.add_parser("status", help="Show applied and pending migrations")
    subparsers.add_parser("history", help="List applied migrations with timestamps")
    subparsers.add_parser("unlock", help="Clear a stale migration lock")
    subparsers.add_parser("version", help="Show version")

    return parser


def find_config_file(specified: Optional[Path]) -> Optional[Path]:
    """Find configuration file."""
    if specified is not None:
        return specified

    # Search paths
    search_paths = [
        Path("config/default.toml"),
        Path("leasing_schema.toml"),
        Path("/etc/leasing_schema/leasing_schema.toml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


def load_config(args: argparse.Namespace) -> ConfigManager:
    """Load configuration and apply command-line overrides."""
    config_path = find_config_file(args.config)
    config = ConfigManager(config_path)

    if args.database:
        config.set_override("database.url", args.database)
    if args.log_level:
        config.set_override("logging.level", args.log_level)
    if args.json_logs:
        config.set_override("logging.json", True)

    return config


def _format_error(error: MigrationError) -> str:
    if isinstance(error, MigrationFailedError):
        category = error.cause_name
    else:
        category = type(error).__name__
    return f"error [{category}]: {error}"


async def run_command(args: argparse.Namespace, config: ConfigManager) -> int:
    """Run one migration command against the configured database."""
    from leasing_schema.services.runner import MigrationRunner

    runner = MigrationRunner.from_config(config)
    try:
        if args.command == "up":
            applied = await runner.up(target_id=args.target, dry_run=args.dry_run)
            if not applied:
                print("Database is up to date.")
            else:
                verb = "Would apply" if args.dry_run else "Applied"
                for migration_id in applied:
                    print(f"{verb} {migration_id}")

        elif args.command == "down":
            reverted = await runner.down(steps=args.steps)
            for migration_id in reverted:
                print(f"Reverted {migration_id}")

        elif args.command == "status":
            status = await runner.status()
            for entry in status.applied:
                marker = " (modified)" if entry.migration_id in status.drifted else ""
                print(f"[applied]  {entry.migration_id}{marker}")
            for migration_id in status.pending:
                print(f"[pending]  {migration_id}")
            for migration_id in status.unknown:
                print(f"[unknown]  {migration_id}")
            print(f"{len(status.applied)} applied, {len(status.pending)} pending")

        elif args.command == "history":
            entries = await runner.history()
            if not entries:
                print("No migrations applied.")
            for entry in entries:
                print(f"{entry.applied_at.isoformat()}  {entry.migration_id}")

        elif args.command == "unlock":
            if await runner.unlock():
                print("Migration lock released.")
            else:
                print("No migration lock to release.")

        return 0
    finally:
        await runner.close()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.command == "version":
        print(f"leasing-schema {__version__}")
        return 0

    config = load_config(args)
    setup_logging(
        level=config.get("logging.level", "INFO"),
        json_output=config.get_bool("logging.json"),
        log_file=config.get("logging.file"),
    )

    try:
        return asyncio.run(run_command(args, config))
    except MigrationError as e:
        print(_format_error(e), file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"error [ValueError]: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
