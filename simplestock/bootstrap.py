"""
Startup orchestration and composition root.

`Application` builds the one DatabaseConnection and hands it to the
migration runner, the seed runner, every repository and every service.
`initialize_database()` / `close_database()` operate on a process-wide
default Application.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .config import get_database_path, load_settings
from .db import DatabaseConnection, MEMORY_DB, PendingOperation
from .export import ExportService
from .migrations import MigrationRunner
from .repositories import RepositoryFactory
from .seeds import SeedRunner
from .services import AdminService, CategoryService, CountingSession, ProductService, ReportService

logger = logging.getLogger(__name__)


def default_backup_dir(db_path: Union[Path, str]) -> Path:
    """Backups live in a 'backups' directory next to the database file."""
    return Path(db_path).parent / "backups"


class DatabaseInitializer:
    """
    Runs connect -> migrate -> seed exactly once.

    Concurrent callers share the in-flight run.  A failed run leaves nothing
    marked as done, so the next call retries from the start.
    """

    def __init__(
        self,
        db: DatabaseConnection,
        migrator: MigrationRunner,
        seeder: Optional[SeedRunner] = None,
    ):
        self.db = db
        self.migrator = migrator
        self.seeder = seeder
        self._initialized = False
        self._pending = PendingOperation()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        if self._initialized:
            return
        self._pending.run(self._initialize)

    def _initialize(self) -> None:
        if self._initialized:
            return

        logger.info("Initializing database %s", self.db.db_path)
        try:
            self.db.connect()
            self.migrator.run_migrations()
            if self.seeder is not None:
                self.seeder.run_all_seeds()
        except Exception as e:
            logger.error("Database initialization failed: %s", e)
            raise

        self._initialized = True
        logger.info("Database ready (schema version %d)", self.migrator.get_current_version())

    def close(self) -> None:
        self.db.disconnect()
        self._initialized = False


class Application:
    """
    Wires the storage layer together.

    Usage:
        >>> app = Application(Path("data/simplestock.db"))
        >>> app.initialize()
        >>> app.product_service.get_active_products()
    """

    def __init__(
        self,
        db_path: Optional[Union[Path, str]] = None,
        settings: Optional[Dict[str, Any]] = None,
        backup_dir: Optional[Path] = None,
    ):
        self.settings = settings if settings is not None else load_settings()
        self.db = DatabaseConnection(db_path if db_path is not None else get_database_path())

        if not self.settings["backup_before_migrations"] or str(self.db.db_path) == MEMORY_DB:
            backup_dir = None
        elif backup_dir is None:
            backup_dir = default_backup_dir(self.db.db_path)

        self.migrator = MigrationRunner(self.db, backup_dir=backup_dir, max_backups=self.settings["max_backups"])
        self.seeder = SeedRunner(self.db)
        self.initializer = DatabaseInitializer(
            self.db,
            self.migrator,
            self.seeder if self.settings["seed_on_startup"] else None,
        )

        self.repositories = RepositoryFactory(self.db)
        self.products = self.repositories.products()
        self.categories = self.repositories.categories()
        self.reports = self.repositories.reports()
        self.report_details = self.repositories.report_details()
        self.temp_counts = self.repositories.temp_counts()
        self.admin = self.repositories.admin()

        self.product_service = ProductService(self.products, self.categories)
        self.category_service = CategoryService(self.categories)
        self.report_service = ReportService(self.reports, self.report_details, self.temp_counts)
        self.admin_service = AdminService(self.admin)
        self.export_service = ExportService(self.reports, self.products)

    def initialize(self) -> None:
        self.initializer.initialize()

    def close(self) -> None:
        self.initializer.close()

    def new_counting_session(self) -> CountingSession:
        session = CountingSession(self.report_service)
        session.load()
        return session


_default_app: Optional[Application] = None
_default_app_lock = threading.Lock()


def get_application() -> Application:
    """Process-wide Application, created on first use."""
    global _default_app
    with _default_app_lock:
        if _default_app is None:
            _default_app = Application()
        return _default_app


def set_application(app: Optional[Application]) -> None:
    """Replace the process-wide Application (None drops it)."""
    global _default_app
    with _default_app_lock:
        _default_app = app


def initialize_database() -> Application:
    """Connect, migrate and seed the default Application once; return it."""
    app = get_application()
    app.initialize()
    return app


def close_database() -> None:
    with _default_app_lock:
        app = _default_app
    if app is not None:
        app.close()
