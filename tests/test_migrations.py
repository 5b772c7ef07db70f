"""
Migration runner tests

Tests:
1. Fresh database reaches the latest version
2. Only pending changesets run, in ascending order
3. No writes when already at the latest version
4. Duplicate-column tolerance (pre-check and engine error)
5. Fatal errors keep earlier progress
6. Pre-migration backup
"""

import sqlite3

import pytest

import simplestock.migrations as migrations_module
from simplestock.db import column_exists, table_exists
from simplestock.migrations import MIGRATIONS, Migration, MigrationError, MigrationRunner, split_statements


def _ledger_versions(db):
    rows = db.get_database().execute("SELECT version FROM migrations ORDER BY version").fetchall()
    return [row["version"] for row in rows]


def test_fresh_database_applies_all_migrations(db):
    runner = MigrationRunner(db)

    assert runner.get_current_version() == 0
    assert runner.run_migrations() == [1, 2, 3, 4]

    status = runner.get_status()
    assert status.current == 4
    assert status.latest == 4
    assert status.pending == 0
    assert status.up_to_date
    assert [row["name"] for row in runner.get_applied()] == [m.name for m in MIGRATIONS]

    conn = db.get_database()
    for table in ("products", "reports", "report_details", "temp_counts", "admin_credentials", "categories"):
        assert table_exists(conn, table)
    assert column_exists(conn, "products", "category_id")


def test_only_pending_migrations_run_in_order(db):
    MigrationRunner(db, migrations=MIGRATIONS[:1]).run_migrations()
    assert _ledger_versions(db) == [1]

    applied = MigrationRunner(db, migrations=MIGRATIONS[:3]).run_migrations()

    assert applied == [2, 3]
    assert _ledger_versions(db) == [1, 2, 3]
    assert not table_exists(db.get_database(), "categories")


def test_status_counts_pending_migrations(db):
    MigrationRunner(db, migrations=MIGRATIONS[:2]).run_migrations()

    status = MigrationRunner(db).get_status()

    assert status.current == 2
    assert status.pending == 2
    assert not status.up_to_date


def test_dry_run_lists_pending_without_applying(db):
    runner = MigrationRunner(db)

    assert runner.run_migrations(dry_run=True) == [1, 2, 3, 4]
    assert runner.get_current_version() == 0


def test_up_to_date_database_does_no_writes(db):
    runner = MigrationRunner(db)
    runner.run_migrations()

    statements = []
    db.get_database().set_trace_callback(statements.append)
    try:
        assert runner.run_migrations() == []
    finally:
        db.get_database().set_trace_callback(None)

    writes = [s for s in statements if s.lstrip().upper().startswith(("BEGIN", "INSERT", "CREATE", "ALTER", "UPDATE"))]
    assert writes == []


def test_existing_column_is_skipped_and_ledger_recorded(db):
    MigrationRunner(db, migrations=MIGRATIONS[:3]).run_migrations()
    # Legacy database: column added by hand before the changeset existed
    db.get_database().execute("ALTER TABLE products ADD COLUMN category_id INTEGER")

    applied = MigrationRunner(db).run_migrations()

    assert applied == [4]
    assert _ledger_versions(db) == [1, 2, 3, 4]
    assert table_exists(db.get_database(), "categories")
    columns = [row["name"] for row in db.get_database().execute("PRAGMA table_info(products)")]
    assert columns.count("category_id") == 1


def test_duplicate_column_error_from_engine_is_tolerated(db, monkeypatch):
    MigrationRunner(db, migrations=MIGRATIONS[:1]).run_migrations()
    # Force the ALTER to reach the engine even though the column exists
    monkeypatch.setattr(migrations_module, "column_exists", lambda conn, table, column: False)

    applied = MigrationRunner(db, migrations=MIGRATIONS[:2]).run_migrations()

    assert applied == [2]
    assert _ledger_versions(db) == [1, 2]


def test_fatal_error_keeps_earlier_progress(db):
    runner = MigrationRunner(db, migrations=[
        Migration(1, "create_a", "CREATE TABLE a (x INTEGER);"),
        Migration(2, "broken", "CREATE TABLE b (x INTEGER);\nINSERT INTO missing_table VALUES (1);"),
        Migration(3, "create_c", "CREATE TABLE c (x INTEGER);"),
    ])

    with pytest.raises(MigrationError) as exc_info:
        runner.run_migrations()

    assert exc_info.value.version == 2
    assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)

    conn = db.get_database()
    assert runner.get_current_version() == 1
    assert table_exists(conn, "a")
    assert not table_exists(conn, "b")
    assert not table_exists(conn, "c")


def test_gaps_in_versions_are_allowed(db):
    runner = MigrationRunner(db, migrations=[
        Migration(10, "ten", "CREATE TABLE ten (x INTEGER);"),
        Migration(5, "five", "CREATE TABLE five (x INTEGER);"),
    ])

    assert runner.run_migrations() == [5, 10]
    assert runner.get_current_version() == 10


def test_duplicate_versions_rejected(db):
    with pytest.raises(ValueError):
        MigrationRunner(db, migrations=[
            Migration(1, "a", "CREATE TABLE a (x);"),
            Migration(1, "b", "CREATE TABLE b (x);"),
        ])


def test_non_positive_versions_rejected(db):
    with pytest.raises(ValueError):
        MigrationRunner(db, migrations=[Migration(0, "zero", "CREATE TABLE z (x);")])


def test_split_statements_respects_strings_and_comments():
    script = (
        "CREATE TABLE a (x TEXT DEFAULT ';');\n"
        "-- second table\n"
        "CREATE TABLE b (y INTEGER);\n"
        "   \n"
    )

    statements = split_statements(script)

    assert len(statements) == 2
    assert statements[0] == "CREATE TABLE a (x TEXT DEFAULT ';');"
    assert statements[1].endswith("CREATE TABLE b (y INTEGER);")


def test_backup_created_before_migrating_existing_database(db, tmp_path):
    MigrationRunner(db, migrations=MIGRATIONS[:2]).run_migrations()
    backup_dir = tmp_path / "backups"

    MigrationRunner(db, backup_dir=backup_dir).run_migrations()

    backups = list(backup_dir.glob("*.db"))
    assert len(backups) == 1
    assert "v2_pre_migration" in backups[0].name


def test_no_backup_for_empty_database(db, tmp_path):
    backup_dir = tmp_path / "backups"

    MigrationRunner(db, backup_dir=backup_dir).run_migrations()

    assert not backup_dir.exists() or not list(backup_dir.glob("*.db"))
