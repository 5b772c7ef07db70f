"""Shared fixtures: every test gets its own database file under tmp_path."""

import pytest

from simplestock.bootstrap import Application
from simplestock.db import DatabaseConnection
from simplestock.migrations import MigrationRunner

TEST_SETTINGS = {
    "seed_on_startup": False,
    "backup_before_migrations": False,
    "max_backups": 10,
}


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture
def db(db_path):
    """Connected DatabaseConnection with an empty database."""
    database = DatabaseConnection(db_path)
    database.connect()
    yield database
    database.disconnect()


@pytest.fixture
def migrated_db(db):
    """Connected DatabaseConnection at the latest schema version, no seed data."""
    MigrationRunner(db).run_migrations()
    return db


@pytest.fixture
def app(tmp_path):
    """Initialized Application without seed data."""
    application = Application(tmp_path / "app.db", settings=dict(TEST_SETTINGS))
    application.initialize()
    yield application
    application.close()
