"""
Versioned schema migrations.

The schema version is the highest version recorded in the `migrations`
ledger table (0 when the table does not exist yet).  Pending changesets are
applied one at a time in ascending version order; each changeset commits
together with its ledger row, and changesets are never grouped with each
other, so progress made before a failure is kept and not re-attempted.

Idempotency:
- `ALTER TABLE ... ADD COLUMN` is skipped when the column already exists
  (PRAGMA table_info pre-check)
- a "duplicate column name" error from the engine is treated the same way
- either way the ledger row is recorded
"""

import logging
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .db import DatabaseConnection, MEMORY_DB, backup_database, cleanup_old_backups, column_exists, table_exists
from .domain.models import MigrationStatus

logger = logging.getLogger(__name__)

LEDGER_TABLE = "migrations"

_LEDGER_DDL = """
CREATE TABLE IF NOT EXISTS migrations (
    version INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
)
"""

_ADD_COLUMN_RE = re.compile(
    r"^ALTER\s+TABLE\s+[\"`\[]?(\w+)[\"`\]]?\s+ADD\s+(?:COLUMN\s+)?[\"`\[]?(\w+)",
    re.IGNORECASE,
)


class MigrationError(RuntimeError):
    """A changeset failed for a reason other than an already-present column."""

    def __init__(self, version: int, name: str, cause: Exception):
        super().__init__(f"Migration {version} ({name}) failed: {cause}")
        self.version = version
        self.name = name


@dataclass(frozen=True)
class Migration:
    """
    One versioned changeset.

    schema_sql may hold several statements; each statement must end with ';'
    at the end of a line.
    """
    version: int
    name: str
    schema_sql: str


MIGRATIONS: List[Migration] = [
    Migration(
        version=1,
        name="create_initial_tables",
        schema_sql="""
            CREATE TABLE IF NOT EXISTS products (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                unit TEXT NOT NULL,
                active INTEGER DEFAULT 1,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS reports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                date DATETIME DEFAULT CURRENT_TIMESTAMP,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            -- product_name is a copy, not a reference: history survives renames
            CREATE TABLE IF NOT EXISTS report_details (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                report_id INTEGER NOT NULL,
                product_name TEXT NOT NULL,
                quantity REAL NOT NULL CHECK (quantity >= 0),
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (report_id) REFERENCES reports (id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS temp_counts (
                product_name TEXT PRIMARY KEY,
                quantity REAL NOT NULL,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_products_active ON products(active);
            CREATE INDEX IF NOT EXISTS idx_products_name ON products(name);
            CREATE INDEX IF NOT EXISTS idx_reports_date ON reports(date);
            CREATE INDEX IF NOT EXISTS idx_report_details_report_id ON report_details(report_id);
        """,
    ),
    # Databases created before temp_counts had a timestamp.  SQLite refuses a
    # non-constant default in ADD COLUMN, so existing rows are back-filled.
    Migration(
        version=2,
        name="add_timestamp_columns",
        schema_sql="""
            ALTER TABLE temp_counts ADD COLUMN updated_at DATETIME;
            UPDATE temp_counts SET updated_at = CURRENT_TIMESTAMP WHERE updated_at IS NULL;
        """,
    ),
    Migration(
        version=3,
        name="create_admin_credentials",
        schema_sql="""
            CREATE TABLE IF NOT EXISTS admin_credentials (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                username TEXT NOT NULL,
                password_hash TEXT NOT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );
        """,
    ),
    Migration(
        version=4,
        name="create_categories",
        schema_sql="""
            CREATE TABLE IF NOT EXISTS categories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                sort_order INTEGER NOT NULL DEFAULT 0,
                active INTEGER DEFAULT 1,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            ALTER TABLE products ADD COLUMN category_id INTEGER REFERENCES categories(id);

            CREATE INDEX IF NOT EXISTS idx_categories_active ON categories(active, sort_order);
            CREATE INDEX IF NOT EXISTS idx_products_category ON products(category_id);
        """,
    ),
]


def split_statements(script: str) -> List[str]:
    """Split a changeset into complete SQL statements (line based)."""
    statements = []
    buffer = ""

    for line in script.splitlines(keepends=True):
        buffer += line
        if sqlite3.complete_statement(buffer):
            statements.append(buffer.strip())
            buffer = ""

    tail = _strip_comments(buffer)
    if tail:
        # Incomplete trailing statement: let the engine report it
        statements.append(tail)

    return statements


def _strip_comments(sql: str) -> str:
    lines = [line for line in sql.splitlines() if not line.strip().startswith("--")]
    return "\n".join(lines).strip()


def _is_duplicate_column_error(error: sqlite3.Error) -> bool:
    return "duplicate column name" in str(error).lower()


class MigrationRunner:
    """
    Applies pending changesets to the database owned by *db*.

    Usage:
        >>> runner = MigrationRunner(db)
        >>> runner.run_migrations()
        [1, 2, 3, 4]
        >>> runner.get_status()
        MigrationStatus(current=4, latest=4, pending=0)
    """

    def __init__(
        self,
        db: DatabaseConnection,
        migrations: Sequence[Migration] = MIGRATIONS,
        backup_dir: Optional[Path] = None,
        max_backups: int = 10,
    ):
        versions = [m.version for m in migrations]
        if len(set(versions)) != len(versions):
            raise ValueError(f"Duplicate migration versions: {versions}")
        if any(v <= 0 for v in versions):
            raise ValueError("Migration versions must be positive integers")

        self.db = db
        self.migrations = sorted(migrations, key=lambda m: m.version)
        self.backup_dir = backup_dir
        self.max_backups = max_backups

    @property
    def latest_version(self) -> int:
        return self.migrations[-1].version if self.migrations else 0

    def get_current_version(self) -> int:
        """Current schema version (0 if the ledger table doesn't exist yet)."""
        with self.db.serialized() as conn:
            if not table_exists(conn, LEDGER_TABLE):
                return 0
            row = conn.execute("SELECT MAX(version) AS max_version FROM migrations").fetchone()
        return row["max_version"] or 0

    def get_pending(self) -> List[Migration]:
        current = self.get_current_version()
        return [m for m in self.migrations if m.version > current]

    def get_status(self) -> MigrationStatus:
        current = self.get_current_version()
        pending = sum(1 for m in self.migrations if m.version > current)
        return MigrationStatus(current=current, latest=self.latest_version, pending=pending)

    def get_applied(self) -> List[Dict]:
        """Ledger rows in version order."""
        with self.db.serialized() as conn:
            if not table_exists(conn, LEDGER_TABLE):
                return []
            rows = conn.execute("SELECT version, name, applied_at FROM migrations ORDER BY version").fetchall()
        return [dict(row) for row in rows]

    def run_migrations(self, dry_run: bool = False) -> List[int]:
        """
        Apply all pending migrations in ascending version order.

        Args:
            dry_run: If True, only report pending versions without applying

        Returns:
            Versions applied (or pending, with dry_run)

        Raises:
            MigrationError: a changeset failed; earlier changesets of this run stay applied
        """
        pending = self.get_pending()

        if not pending:
            logger.info("Database schema is up-to-date (version %d)", self.get_current_version())
            return []

        if dry_run:
            return [m.version for m in pending]

        logger.info("Applying %d pending migration(s)", len(pending))
        self._backup_before_migrations(pending[0].version)

        applied = []
        for migration in pending:
            self._apply(migration)
            applied.append(migration.version)

        logger.info("All migrations applied (schema version %d)", applied[-1])
        return applied

    def _apply(self, migration: Migration) -> None:
        logger.info("Applying migration v%d: %s", migration.version, migration.name)
        try:
            with self.db.transaction("IMMEDIATE") as conn:
                for statement in split_statements(migration.schema_sql):
                    self._execute_statement(conn, migration, statement)
                conn.execute(_LEDGER_DDL)
                conn.execute(
                    "INSERT INTO migrations (version, name) VALUES (?, ?)",
                    (migration.version, migration.name),
                )
        except sqlite3.Error as e:
            logger.error("Migration v%d failed: %s", migration.version, e)
            raise MigrationError(migration.version, migration.name, e) from e

    def _execute_statement(self, conn: sqlite3.Connection, migration: Migration, statement: str) -> None:
        match = _ADD_COLUMN_RE.match(_strip_comments(statement))
        if match and column_exists(conn, match.group(1), match.group(2)):
            logger.info(
                "Migration v%d: column %s.%s already exists, skipping",
                migration.version, match.group(1), match.group(2),
            )
            return

        try:
            conn.execute(statement)
        except sqlite3.OperationalError as e:
            if not _is_duplicate_column_error(e):
                raise
            logger.info("Migration v%d: %s, continuing", migration.version, e)

    def _backup_before_migrations(self, first_version: int) -> None:
        if self.backup_dir is None or str(self.db.db_path) == MEMORY_DB:
            return

        db_path = Path(self.db.db_path)
        with self.db.serialized() as conn:
            user_tables = conn.execute(
                "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
            ).fetchone()[0]
        if not db_path.exists() or user_tables == 0:
            # Nothing worth keeping before the initial schema
            return

        backup_database(db_path, f"v{first_version - 1}_pre_migration", self.backup_dir)
        deleted = cleanup_old_backups(self.max_backups, self.backup_dir)
        if deleted:
            logger.info("Cleaned up %d old backup(s) (retention: %d)", deleted, self.max_backups)
