"""
Database connection manager for SQLite storage.

- One process-wide connection, owned by a DatabaseConnection instance that
  the composition root constructs and hands to every repository
- Lazy, de-duplicated connect (concurrent callers share one attempt)
- PRAGMA configuration (WAL, foreign keys) applied before the handle is published
- Transaction context manager with rollback on failure
- Backups and health checks used by the migration runner and the CLI

Design Principles:
- Foreign keys enforced (PRAGMA foreign_keys=ON)
- WAL journal mode for concurrent reads while a write is in progress
- Autocommit handle (isolation_level=None); multi-statement atomicity is
  always explicit through transaction()
- Single-owner discipline: the handle is shared across threads, so every
  transaction scope and every standalone statement holds one RLock
  (transaction() / serialized())
"""

import logging
import shutil
import sqlite3
import threading
from concurrent.futures import Future
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

MEMORY_DB = ":memory:"

PRAGMA_CONFIG = {
    "foreign_keys": "ON",           # Enforce FK constraints (report_details cascade)
    "journal_mode": "WAL",          # Readers never block on the writer
    "synchronous": "NORMAL",        # Safe with WAL, faster than FULL
    "temp_store": "MEMORY",
    "busy_timeout": 5000,           # Wait 5s for a lock (milliseconds)
}

ISOLATION_LEVELS = ("DEFERRED", "IMMEDIATE", "EXCLUSIVE")

# Seconds a thread waits for another thread's transaction to finish
LOCK_TIMEOUT = 30.0


class DatabaseNotInitializedError(RuntimeError):
    """Raised when the database is used before connect() succeeded."""

    def __init__(self, message: str = "Database not initialized. Call connect() first."):
        super().__init__(message)


# ============================================================
# In-flight de-duplication
# ============================================================

class PendingOperation:
    """
    Single-slot cell that de-duplicates concurrent runs of one operation.

    The first caller stores a Future and runs the operation; callers arriving
    while it is in flight wait on that Future and observe the same result or
    the same exception.  The cell is cleared once the operation settles, so a
    failed run can be retried by the next caller.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._future: Optional[Future] = None

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._future is not None

    def run(self, operation: Callable[[], T]) -> T:
        with self._lock:
            future = self._future
            owner = future is None
            if owner:
                future = self._future = Future()

        if not owner:
            return future.result()

        try:
            result = operation()
        except BaseException as e:
            self._clear()
            future.set_exception(e)
            raise

        self._clear()
        future.set_result(result)
        return result

    def _clear(self) -> None:
        with self._lock:
            self._future = None


# ============================================================
# Connection Management
# ============================================================

def open_connection(db_path: Union[Path, str]) -> sqlite3.Connection:
    """
    Open SQLite connection with PRAGMA configuration.

    Args:
        db_path: Path to database file, or ":memory:"

    Returns:
        Configured sqlite3.Connection (autocommit, Row factory)

    Raises:
        sqlite3.OperationalError: Database locked or inaccessible
        sqlite3.DatabaseError: Corrupted database file
    """
    if str(db_path) != MEMORY_DB:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    try:
        conn = sqlite3.connect(
            str(db_path),
            timeout=30.0,
            check_same_thread=False,  # Shared by the UI thread and background loaders
            isolation_level=None,     # BEGIN/COMMIT are issued explicitly
        )
        conn.row_factory = sqlite3.Row

        try:
            cursor = conn.cursor()
            for pragma, value in PRAGMA_CONFIG.items():
                cursor.execute(f"PRAGMA {pragma}={value}")

            fk_enabled = cursor.execute("PRAGMA foreign_keys").fetchone()[0]
            if fk_enabled != 1:
                raise RuntimeError("Failed to enable foreign keys (PRAGMA foreign_keys=ON)")
        except BaseException:
            conn.close()
            raise

        return conn

    except sqlite3.OperationalError as e:
        if "locked" in str(e).lower():
            raise sqlite3.OperationalError(
                f"Database {db_path} is locked. "
                f"Another application instance may be using it. "
                f"Close it and retry."
            ) from e
        raise

    except sqlite3.DatabaseError as e:
        raise sqlite3.DatabaseError(
            f"Database {db_path} is corrupted. "
            f"Restore from a backup in data/backups/ or run 'simplestock verify'."
        ) from e


class DatabaseConnection:
    """
    Owner of the one physical database handle.

    Only the composition root constructs this; repositories receive it by
    reference and call get_database() on every operation.

    Usage:
        >>> db = DatabaseConnection(Path("data/simplestock.db"))
        >>> db.connect()
        >>> with db.transaction() as conn:
        ...     conn.execute("INSERT INTO reports DEFAULT VALUES")
    """

    def __init__(self, db_path: Union[Path, str], lock_timeout: float = LOCK_TIMEOUT):
        self.db_path = db_path
        self.lock_timeout = lock_timeout
        self._conn: Optional[sqlite3.Connection] = None
        self._pending_connect = PendingOperation()
        # Serializes every statement and transaction scope on the shared handle
        self._lock = threading.RLock()
        self._local = threading.local()

    def connect(self) -> sqlite3.Connection:
        """
        Open the connection, or return the already open one.

        Concurrent callers share a single open attempt.  On failure nothing
        is kept, so a later call retries.
        """
        conn = self._conn
        if conn is not None:
            return conn
        return self._pending_connect.run(self._open)

    def _open(self) -> sqlite3.Connection:
        if self._conn is not None:
            return self._conn

        try:
            conn = open_connection(self.db_path)
        except Exception as e:
            logger.error("Could not open database %s: %s", self.db_path, e)
            raise

        self._conn = conn
        logger.info("Database connection established: %s", self.db_path)
        return conn

    def get_database(self) -> sqlite3.Connection:
        """Return the open connection; raise DatabaseNotInitializedError otherwise."""
        conn = self._conn
        if conn is None:
            raise DatabaseNotInitializedError()
        return conn

    def is_connected(self) -> bool:
        return self._conn is not None

    def disconnect(self) -> None:
        """Close the connection and reset state; a later connect() reopens."""
        with self._acquire():
            conn = self._conn
            if conn is None:
                return
            self._conn = None
            conn.close()
        logger.info("Database connection closed: %s", self.db_path)

    @contextmanager
    def _acquire(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise TimeoutError(
                f"Could not acquire database lock after {self.lock_timeout}s. "
                f"Another operation is still running on {self.db_path}."
            )
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def serialized(self) -> Iterator[sqlite3.Connection]:
        """
        Exclusive use of the connection for statements outside transaction().

        Inside the calling thread's own transaction() this just re-enters;
        other threads wait until that transaction commits or rolls back.
        """
        with self._acquire():
            yield self.get_database()

    @property
    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    @contextmanager
    def transaction(self, isolation_level: str = "DEFERRED") -> Iterator[sqlite3.Connection]:
        """
        Transaction context manager with automatic commit/rollback.

        Yields:
            sqlite3.Connection inside an open transaction

        Only one thread at a time runs a transaction; the others block until
        it ends (TimeoutError after lock_timeout).  On any exception the
        transaction is rolled back and the original exception propagates; a
        failing ROLLBACK is only logged.  A nested transaction() in the same
        thread joins the enclosing one.

        Isolation Levels:
        - DEFERRED: Acquire lock on first write (default)
        - IMMEDIATE: Acquire write lock on BEGIN
        - EXCLUSIVE: Acquire lock on BEGIN, block readers
        """
        if isolation_level not in ISOLATION_LEVELS:
            raise ValueError(f"Invalid isolation level: {isolation_level}")

        with self._acquire():
            conn = self.get_database()

            if self._depth > 0:
                self._local.depth += 1
                try:
                    yield conn
                finally:
                    self._local.depth -= 1
                return

            conn.execute(f"BEGIN {isolation_level}")
            self._local.depth = 1
            try:
                yield conn
                conn.commit()
            except BaseException as e:
                _rollback_quietly(conn, e)
                raise
            finally:
                self._local.depth = 0

    def run_in_transaction(self, fn: Callable[[sqlite3.Connection], T], isolation_level: str = "DEFERRED") -> T:
        """Run fn(conn) inside transaction() and return its result."""
        with self.transaction(isolation_level) as conn:
            return fn(conn)


def _rollback_quietly(conn: sqlite3.Connection, cause: BaseException) -> None:
    try:
        conn.rollback()
        logger.warning("Transaction rolled back: %s", cause)
    except sqlite3.Error as rollback_error:
        logger.error("Rollback failed after %r: %s", cause, rollback_error)


# ============================================================
# Schema helpers
# ============================================================

def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """True if *table* exists and has *column* (case-insensitive)."""
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(row["name"].lower() == column.lower() for row in rows)


# ============================================================
# Backups
# ============================================================

def backup_database(db_path: Path, backup_reason: str = "migration", backup_dir: Optional[Path] = None) -> Path:
    """
    Create timestamped backup of database.

    Args:
        db_path: Path to database file
        backup_reason: Reason for backup (used in filename)
        backup_dir: Directory for backups (default: data/backups)

    Returns:
        Path to backup file

    Backup naming: simplestock_YYYYMMDD_HHMMSS_{reason}.db

    WAL Mode Support:
    - Copies main DB file (.db)
    - Copies WAL file (.db-wal) and shared memory (.db-shm) if present
    - Writes a manifest listing the copied files
    """
    if not db_path.exists():
        raise FileNotFoundError(f"Database {db_path} does not exist")

    if backup_dir is None:
        from .utils.paths import get_backup_dir  # noqa: PLC0415
        backup_dir = get_backup_dir()

    backup_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    backup_path = backup_dir / f"{db_path.stem}_{timestamp}_{backup_reason}.db"

    shutil.copy2(db_path, backup_path)
    files_backed_up = [backup_path.name]

    for suffix in ("-wal", "-shm"):
        companion = Path(str(db_path) + suffix)
        if companion.exists():
            companion_backup = Path(str(backup_path) + suffix)
            shutil.copy2(companion, companion_backup)
            files_backed_up.append(companion_backup.name)

    manifest_path = Path(str(backup_path) + ".manifest")
    with open(manifest_path, "w", encoding="utf-8") as f:
        f.write("# Backup Manifest\n")
        f.write(f"# Created: {datetime.now().isoformat()}\n")
        f.write(f"# Reason: {backup_reason}\n")
        f.write(f"# Source: {db_path}\n")
        f.write("#\n")
        for filename in files_backed_up:
            f.write(f"{filename}\n")

    logger.info("Backup created: %s", backup_path)
    return backup_path


def cleanup_old_backups(max_backups: int, backup_dir: Path) -> int:
    """
    Remove old backups, keeping only the most recent *max_backups*.

    Associated -wal, -shm and .manifest files are removed with each backup.

    Returns:
        Number of backups deleted
    """
    if not backup_dir.exists():
        return 0

    backup_files = sorted(
        backup_dir.glob("*.db"),
        key=lambda f: (f.stat().st_mtime, f.name),
        reverse=True,
    )

    deleted_count = 0
    for backup_file in backup_files[max_backups:]:
        try:
            backup_file.unlink()
            deleted_count += 1
            for suffix in ("-wal", "-shm", ".manifest"):
                companion = Path(str(backup_file) + suffix)
                if companion.exists():
                    companion.unlink()
        except OSError as e:
            logger.warning("Could not delete backup %s: %s", backup_file.name, e)

    return deleted_count


# ============================================================
# Health Checks
# ============================================================

def integrity_check(conn: sqlite3.Connection) -> bool:
    """
    Run SQLite integrity checks.

    Checks:
    - PRAGMA integrity_check (structural integrity)
    - PRAGMA foreign_key_check (referential integrity)
    """
    integrity_result = conn.execute("PRAGMA integrity_check").fetchall()
    if len(integrity_result) != 1 or integrity_result[0][0] != "ok":
        for row in integrity_result[:10]:
            logger.error("Integrity check: %s", row[0])
        return False

    fk_violations = conn.execute("PRAGMA foreign_key_check").fetchall()
    if fk_violations:
        for row in fk_violations[:10]:
            logger.error("Foreign key violation: table=%s rowid=%s parent=%s", row[0], row[1], row[2])
        return False

    return True


def get_database_stats(conn: sqlite3.Connection, db_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Get database statistics (table counts, indices, size, row counts).
    """
    stats: Dict[str, Any] = {}

    stats["tables_count"] = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    ).fetchone()[0]

    stats["indices_count"] = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='index' AND name NOT LIKE 'sqlite_%'"
    ).fetchone()[0]

    stats["journal_mode"] = conn.execute("PRAGMA journal_mode").fetchone()[0]

    if db_path is not None and str(db_path) != MEMORY_DB and Path(db_path).exists():
        stats["db_size_mb"] = round(Path(db_path).stat().st_size / (1024 * 1024), 2)

    row_counts = {}
    tables = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    for row in tables:
        table_name = row[0]
        row_counts[table_name] = conn.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0]
    stats["row_counts"] = row_counts

    return stats
