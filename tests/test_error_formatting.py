"""
Error UX & Messaging Tests

User-facing messages, error codes and dispatch by exception type.
"""

import sqlite3

from simplestock.db import DatabaseNotInitializedError
from simplestock.migrations import MigrationError
from simplestock.repositories import (
    BusinessRuleError,
    DuplicateKeyError,
    ForeignKeyError,
    NotFoundError,
    RepositoryError,
    UnsupportedValueError,
)
from simplestock.services import ValidationError
from simplestock.utils.error_formatting import ErrorContext, ErrorFormatter, ErrorSeverity, format_error


def test_error_context_format_for_display():
    ctx = ErrorContext(
        message="El elemento ya existe",
        severity=ErrorSeverity.ERROR,
        technical_details="DuplicateKeyError: UNIQUE constraint failed",
        context={"Operación": "crear producto", "Producto": None},
        recovery_steps=["Usa un nombre diferente", "O modifica el elemento existente"],
        error_code="REPO_001",
    )

    display = ctx.format_for_display()

    assert display.startswith("El elemento ya existe")
    assert "• Operación: crear producto" in display
    assert "Producto" not in display
    assert "1. Usa un nombre diferente" in display
    assert "2. O modifica el elemento existente" in display
    assert "Código de error: REPO_001" in display
    assert "UNIQUE constraint failed" not in display
    assert "UNIQUE constraint failed" in ctx.format_for_display(include_technical=True)


def test_error_context_format_for_log():
    ctx = ErrorContext(
        message="La base de datos está ocupada",
        severity=ErrorSeverity.WARNING,
        technical_details="database is locked",
        context={"Operación": "init"},
    )

    log_line = ctx.format_for_log()

    assert log_line.startswith("[WARNING]")
    assert "Operación=init" in log_line
    assert "database is locked" in log_line


def test_repository_error_codes():
    codes = {
        DuplicateKeyError("dup"): "REPO_001",
        ForeignKeyError("fk"): "REPO_002",
        NotFoundError("missing"): "REPO_003",
        BusinessRuleError("check"): "REPO_004",
        UnsupportedValueError("list"): "REPO_005",
        RepositoryError("other"): "REPO_999",
    }

    for exc, code in codes.items():
        ctx = ErrorFormatter.format_repository_error(exc, "guardar")
        assert ctx.error_code == code
        assert ctx.context["Operación"] == "guardar"


def test_not_found_is_a_warning():
    ctx = ErrorFormatter.format_repository_error(NotFoundError("x"), "buscar")

    assert ctx.severity == ErrorSeverity.WARNING


def test_validation_error_keeps_user_message():
    exc = ValidationError("El nombre del producto es requerido", field="name", value="")

    ctx = format_error(exc, "crear producto")

    assert ctx.message == "El nombre del producto es requerido"
    assert ctx.error_code == "VAL_001"
    assert ctx.context["Campo"] == "name"
    assert ctx.severity == ErrorSeverity.WARNING


def test_database_error_codes():
    cases = [
        (sqlite3.OperationalError("database is locked"), "DB_001"),
        (sqlite3.OperationalError("database or disk is full"), "DB_002"),
        (sqlite3.OperationalError("no such table: products"), "DB_003"),
        (sqlite3.IntegrityError("UNIQUE constraint failed: temp_counts.product_name"), "DB_004"),
        (sqlite3.IntegrityError("FOREIGN KEY constraint failed"), "DB_005"),
        (sqlite3.IntegrityError("CHECK constraint failed: quantity >= 0"), "DB_006"),
        (sqlite3.DatabaseError("file is not a database"), "DB_009"),
        (DatabaseNotInitializedError(), "DB_000"),
    ]

    for exc, code in cases:
        assert format_error(exc, "init").error_code == code


def test_migration_error_is_critical_with_version():
    cause = sqlite3.OperationalError("near \"TABL\": syntax error")
    exc = MigrationError(3, "create_admin_credentials", cause)

    ctx = format_error(exc, "init")

    assert ctx.severity == ErrorSeverity.CRITICAL
    assert ctx.error_code == "DB_008"
    assert ctx.context["Versión"] == 3
    assert "Migration 3" in ctx.technical_details


def test_unknown_error_falls_back_to_generic():
    ctx = format_error(LookupError("Report 9 not found"), "export")

    assert ctx.error_code == "GENERIC_999"
    assert ctx.message == "Error inesperado durante export"
    assert "LookupError" in ctx.technical_details
