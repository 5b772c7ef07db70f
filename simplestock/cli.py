"""
SimpleStock administrative command line.

Usage:
    simplestock init                  # Connect, migrate and seed
    simplestock migrate [--dry-run]   # Apply pending migrations
    simplestock status                # Schema version and pending migrations
    simplestock verify                # Integrity and foreign key checks
    simplestock stats                 # Tables, indices, size, row counts
    simplestock backup [reason]       # Timestamped copy in data/backups
    simplestock reset --yes           # Delete counts, reports, products; re-seed
    simplestock export REPORT_ID      # Write a report as CSV

Global options:
    --db PATH         Database file (default: $SIMPLESTOCK_DB_PATH or data/simplestock.db)
    --log-dir PATH    Log directory (default: logs/)

Exit Codes:
    0 = success
    1 = failure (error printed)
    2 = verify found problems / refused without confirmation
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .bootstrap import Application, default_backup_dir
from .config import get_settings_file, load_settings
from .db import backup_database, get_database_stats, integrity_check, MEMORY_DB
from .utils.error_formatting import format_error
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="simplestock",
        description="SimpleStock database administration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--db", type=str, help="Database path")
    parser.add_argument("--log-dir", type=str, help="Log directory")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Connect, migrate and seed the database")

    migrate = sub.add_parser("migrate", help="Apply pending migrations")
    migrate.add_argument("--dry-run", action="store_true", help="List pending versions without applying")

    sub.add_parser("status", help="Show schema version")
    sub.add_parser("verify", help="Run integrity checks")
    sub.add_parser("stats", help="Show database statistics")

    backup = sub.add_parser("backup", help="Create a database backup")
    backup.add_argument("reason", nargs="?", default="manual", help="Label used in the backup filename")

    reset = sub.add_parser("reset", help="Delete all stock data and re-seed")
    reset.add_argument("--yes", action="store_true", help="Confirm the reset")

    export = sub.add_parser("export", help="Export a report as CSV")
    export.add_argument("report_id", type=int, help="Report id")
    export.add_argument("--output", type=str, default=".", help="Output directory (default: current)")

    return parser


def cmd_init(app: Application, args: argparse.Namespace) -> int:
    app.initialize()
    status = app.migrator.get_status()
    print(f"✓ Database ready: {app.db.db_path}")
    print(f"  Schema version: {status.current}")
    print(f"  Active products: {app.products.count_active()}")
    return 0


def cmd_migrate(app: Application, args: argparse.Namespace) -> int:
    app.db.connect()
    versions = app.migrator.run_migrations(dry_run=args.dry_run)
    if not versions:
        print(f"✓ Schema is up-to-date (version {app.migrator.get_current_version()})")
    elif args.dry_run:
        print(f"Pending migrations: {', '.join(str(v) for v in versions)}")
    else:
        print(f"✓ Applied migrations: {', '.join(str(v) for v in versions)}")
    return 0


def cmd_status(app: Application, args: argparse.Namespace) -> int:
    app.db.connect()
    status = app.migrator.get_status()
    print(f"Database: {app.db.db_path}")
    print(f"Current version: {status.current}")
    print(f"Latest version: {status.latest}")
    print(f"Pending migrations: {status.pending}")
    for row in app.migrator.get_applied():
        print(f"  v{row['version']}: {row['name']} ({row['applied_at']})")
    return 0


def cmd_verify(app: Application, args: argparse.Namespace) -> int:
    app.db.connect()
    with app.db.serialized() as conn:
        ok = integrity_check(conn)
    if ok:
        print("✓ Database integrity OK")
        return 0
    print("✗ Integrity check failed (see log for details)")
    return 2


def cmd_stats(app: Application, args: argparse.Namespace) -> int:
    app.db.connect()
    with app.db.serialized() as conn:
        stats = get_database_stats(conn, app.db.db_path)
    print(f"Tables: {stats['tables_count']}")
    print(f"Indices: {stats['indices_count']}")
    print(f"Journal mode: {stats['journal_mode']}")
    if "db_size_mb" in stats:
        print(f"Size: {stats['db_size_mb']} MB")
    print("Rows:")
    for table, count in stats["row_counts"].items():
        print(f"  {table}: {count}")
    return 0


def cmd_backup(app: Application, args: argparse.Namespace) -> int:
    if str(app.db.db_path) == MEMORY_DB:
        print("✗ In-memory databases cannot be backed up")
        return 1
    path = backup_database(Path(app.db.db_path), args.reason, default_backup_dir(app.db.db_path))
    print(f"✓ Backup created: {path}")
    return 0


def cmd_reset(app: Application, args: argparse.Namespace) -> int:
    if not args.yes:
        print("Refusing to reset without --yes (this deletes all counts, reports and products)")
        return 2
    app.initialize()
    inserted = app.seeder.reset_database()
    print(f"✓ Database reset ({inserted} product(s) seeded)")
    return 0


def cmd_export(app: Application, args: argparse.Namespace) -> int:
    app.initialize()
    path = app.export_service.export_report_to_file(args.report_id, Path(args.output))
    print(f"✓ Report exported: {path}")
    return 0


COMMANDS = {
    "init": cmd_init,
    "migrate": cmd_migrate,
    "status": cmd_status,
    "verify": cmd_verify,
    "stats": cmd_stats,
    "backup": cmd_backup,
    "reset": cmd_reset,
    "export": cmd_export,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(log_dir=args.log_dir)

    if args.db and args.db != MEMORY_DB:
        # settings.json is looked up next to an explicit database file
        settings = load_settings(get_settings_file(Path(args.db).parent))
        app = Application(db_path=args.db, settings=settings)
    else:
        app = Application(db_path=args.db)

    try:
        return COMMANDS[args.command](app, args)
    except Exception as e:
        error = format_error(e, args.command)
        logger.error(error.format_for_log())
        print(error.format_for_display(include_technical=True), file=sys.stderr)
        return 1
    finally:
        app.close()


if __name__ == "__main__":
    sys.exit(main())
