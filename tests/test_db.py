"""
Connection manager tests

Tests:
1. PRAGMA configuration (WAL, foreign keys)
2. Access before connect() / after disconnect()
3. De-duplicated concurrent connect()
4. Retry after a failed open
5. Transaction commit / rollback / nesting, failing rollback
6. One transaction at a time across threads
7. PendingOperation sharing results and errors
"""

import logging
import sqlite3
import threading
import time

import pytest

import simplestock.db as db_module
from simplestock.db import (
    DatabaseConnection,
    DatabaseNotInitializedError,
    PendingOperation,
    backup_database,
    cleanup_old_backups,
    get_database_stats,
    integrity_check,
    open_connection,
)


# ============================================================
# Connection
# ============================================================

def test_open_connection_applies_pragmas(db_path):
    conn = open_connection(db_path)
    try:
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 5000
        assert conn.isolation_level is None
    finally:
        conn.close()


def test_get_database_before_connect_raises(db_path):
    db = DatabaseConnection(db_path)

    with pytest.raises(DatabaseNotInitializedError):
        db.get_database()
    assert not db.is_connected()


def test_connect_is_idempotent(db_path):
    db = DatabaseConnection(db_path)
    try:
        first = db.connect()
        assert db.connect() is first
        assert db.get_database() is first
    finally:
        db.disconnect()


def test_disconnect_then_reconnect(db_path):
    db = DatabaseConnection(db_path)
    first = db.connect()
    db.disconnect()

    with pytest.raises(DatabaseNotInitializedError):
        db.get_database()

    second = db.connect()
    try:
        assert second is not first
        assert second.execute("SELECT 1").fetchone()[0] == 1
    finally:
        db.disconnect()


def test_disconnect_without_connection_is_noop(db_path):
    DatabaseConnection(db_path).disconnect()


def test_concurrent_connect_opens_once(db_path, monkeypatch):
    calls = []
    real_open = db_module.open_connection

    def slow_open(path):
        calls.append(path)
        time.sleep(0.2)
        return real_open(path)

    monkeypatch.setattr(db_module, "open_connection", slow_open)

    db = DatabaseConnection(db_path)
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(db.connect())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    try:
        assert len(calls) == 1
        assert len(results) == 8
        assert all(conn is results[0] for conn in results)
    finally:
        db.disconnect()


def test_failed_open_leaves_manager_disconnected_and_retries(db_path, monkeypatch):
    real_open = db_module.open_connection
    attempts = []

    def flaky_open(path):
        attempts.append(path)
        if len(attempts) == 1:
            raise sqlite3.OperationalError("unable to open database file")
        return real_open(path)

    monkeypatch.setattr(db_module, "open_connection", flaky_open)
    db = DatabaseConnection(db_path)

    with pytest.raises(sqlite3.OperationalError):
        db.connect()
    assert not db.is_connected()

    try:
        assert db.connect() is not None
        assert len(attempts) == 2
    finally:
        db.disconnect()


# ============================================================
# Transactions
# ============================================================

@pytest.fixture
def items_db(db):
    db.get_database().execute("CREATE TABLE items (id INTEGER PRIMARY KEY, value TEXT NOT NULL)")
    return db


def _count(db):
    return db.get_database().execute("SELECT COUNT(*) FROM items").fetchone()[0]


def test_transaction_commits(items_db):
    with items_db.transaction() as conn:
        conn.execute("INSERT INTO items (value) VALUES ('a')")
        conn.execute("INSERT INTO items (value) VALUES ('b')")

    assert _count(items_db) == 2
    assert not items_db.get_database().in_transaction


def test_transaction_rolls_back_and_reraises_original_error(items_db):
    class Boom(Exception):
        pass

    with pytest.raises(Boom):
        with items_db.transaction() as conn:
            conn.execute("INSERT INTO items (value) VALUES ('a')")
            raise Boom()

    assert _count(items_db) == 0
    assert not items_db.get_database().in_transaction


def test_transaction_rolls_back_on_sql_error(items_db):
    with pytest.raises(sqlite3.IntegrityError):
        with items_db.transaction() as conn:
            conn.execute("INSERT INTO items (value) VALUES ('a')")
            conn.execute("INSERT INTO items (value) VALUES (NULL)")

    assert _count(items_db) == 0


def test_nested_transaction_joins_outer(items_db):
    with pytest.raises(RuntimeError):
        with items_db.transaction() as outer:
            outer.execute("INSERT INTO items (value) VALUES ('outer')")
            with items_db.transaction("IMMEDIATE") as inner:
                assert inner is outer
                inner.execute("INSERT INTO items (value) VALUES ('inner')")
            raise RuntimeError("abort after inner block")

    assert _count(items_db) == 0


def test_transaction_rejects_unknown_isolation_level(items_db):
    with pytest.raises(ValueError):
        with items_db.transaction("SERIALIZABLE"):
            pass


def test_run_in_transaction_returns_result(items_db):
    def insert(conn):
        return conn.execute("INSERT INTO items (value) VALUES ('x')").lastrowid

    row_id = items_db.run_in_transaction(insert, "IMMEDIATE")

    assert row_id == 1
    assert _count(items_db) == 1


def test_transaction_requires_connection(db_path):
    db = DatabaseConnection(db_path)
    with pytest.raises(DatabaseNotInitializedError):
        with db.transaction():
            pass


class _RollbackFails:
    """Connection wrapper whose rollback() raises."""

    def __init__(self, conn):
        self._conn = conn

    def __getattr__(self, name):
        return getattr(self._conn, name)

    def rollback(self):
        raise sqlite3.OperationalError("disk I/O error")


def test_failed_rollback_is_logged_and_original_error_propagates(items_db, monkeypatch, caplog):
    class Boom(Exception):
        pass

    real_conn = items_db.get_database()
    monkeypatch.setattr(items_db, "_conn", _RollbackFails(real_conn))

    try:
        with caplog.at_level(logging.ERROR, logger="simplestock.db"):
            with pytest.raises(Boom):
                with items_db.transaction() as conn:
                    conn.execute("INSERT INTO items (value) VALUES ('a')")
                    raise Boom()
    finally:
        real_conn.rollback()

    assert "Rollback failed" in caplog.text
    assert "disk I/O error" in caplog.text


def test_other_thread_waits_for_open_transaction(items_db):
    """A second thread's transaction neither joins nor is undone by the first one's rollback."""
    a_inside = threading.Event()
    b_started = threading.Event()
    errors = []

    def writer_b():
        a_inside.wait()
        b_started.set()
        try:
            with items_db.transaction() as conn:
                conn.execute("INSERT INTO items (value) VALUES ('b')")
        except Exception as e:  # pragma: no cover - reported below
            errors.append(e)

    thread_b = threading.Thread(target=writer_b)
    thread_b.start()

    with pytest.raises(RuntimeError):
        with items_db.transaction("IMMEDIATE") as conn:
            conn.execute("INSERT INTO items (value) VALUES ('a')")
            a_inside.set()
            b_started.wait()
            time.sleep(0.1)
            raise RuntimeError("abort A")

    thread_b.join()

    assert errors == []
    rows = items_db.get_database().execute("SELECT value FROM items").fetchall()
    assert [row["value"] for row in rows] == ["b"]


def test_concurrent_transactions_do_not_collide(items_db):
    errors = []
    barrier = threading.Barrier(8)

    def worker(n):
        barrier.wait()
        for i in range(25):
            try:
                with items_db.transaction() as conn:
                    conn.execute("INSERT INTO items (value) VALUES (?)", (f"{n}-{i}-first",))
                    conn.execute("INSERT INTO items (value) VALUES (?)", (f"{n}-{i}-second",))
            except Exception as e:  # pragma: no cover - reported below
                errors.append(repr(e))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert _count(items_db) == 8 * 25 * 2


def test_lock_timeout_raises(db_path):
    db = DatabaseConnection(db_path, lock_timeout=0.1)
    db.connect()
    release = threading.Event()
    holding = threading.Event()

    def hold():
        with db.transaction():
            holding.set()
            release.wait()

    holder = threading.Thread(target=hold)
    holder.start()
    holding.wait()
    try:
        with pytest.raises(TimeoutError):
            with db.serialized():
                pass
    finally:
        release.set()
        holder.join()
        db.disconnect()


# ============================================================
# PendingOperation
# ============================================================

def test_pending_operation_shares_one_run():
    pending = PendingOperation()
    calls = []
    results = []
    started = threading.Event()

    def operation():
        calls.append(1)
        started.set()
        time.sleep(0.2)
        return "done"

    def waiter():
        started.wait()
        results.append(pending.run(lambda: "second run"))

    owner = threading.Thread(target=lambda: results.append(pending.run(operation)))
    owner.start()
    waiters = [threading.Thread(target=waiter) for _ in range(4)]
    for t in waiters:
        t.start()
    owner.join()
    for t in waiters:
        t.join()

    assert results == ["done"] * 5
    assert len(calls) == 1
    assert not pending.in_flight


def test_pending_operation_clears_after_failure():
    pending = PendingOperation()

    def failing():
        raise ValueError("boom")

    with pytest.raises(ValueError):
        pending.run(failing)

    assert not pending.in_flight
    assert pending.run(lambda: 42) == 42


# ============================================================
# Backups & health checks
# ============================================================

def test_backup_database_copies_file_and_writes_manifest(migrated_db, db_path, tmp_path):
    backup_dir = tmp_path / "backups"

    backup_path = backup_database(db_path, "manual", backup_dir)

    assert backup_path.exists()
    assert backup_path.name.endswith("_manual.db")
    manifest = backup_path.with_name(backup_path.name + ".manifest")
    assert manifest.exists()
    assert backup_path.name in manifest.read_text(encoding="utf-8")


def test_backup_database_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        backup_database(tmp_path / "missing.db", "manual", tmp_path / "backups")


def test_cleanup_old_backups_keeps_newest(migrated_db, db_path, tmp_path):
    backup_dir = tmp_path / "backups"
    for i in range(4):
        backup_database(db_path, f"b{i}", backup_dir)

    deleted = cleanup_old_backups(2, backup_dir)

    assert deleted == 2
    assert len(list(backup_dir.glob("*.db"))) == 2
    assert len(list(backup_dir.glob("*.manifest"))) == 2


def test_integrity_check_and_stats(migrated_db, db_path):
    conn = migrated_db.get_database()

    assert integrity_check(conn) is True

    stats = get_database_stats(conn, db_path)
    assert stats["journal_mode"] == "wal"
    assert stats["tables_count"] >= 7
    assert stats["row_counts"]["migrations"] == 4
    assert "db_size_mb" in stats
