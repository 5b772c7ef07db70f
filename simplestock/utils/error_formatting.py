"""
Error UX & Messaging Module

Turns technical exceptions into user-facing messages (Spanish) with
context and recovery steps.  Technical details are kept for the log.
"""

from typing import Dict, Optional, Any, List
from dataclasses import dataclass, field
from enum import Enum
import sqlite3


# ============================================================
# Error Severity Levels
# ============================================================

class ErrorSeverity(Enum):
    """Error severity classification for presentation."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# ============================================================
# Error Context
# ============================================================

@dataclass
class ErrorContext:
    """
    Structured error context for user-friendly messaging.

    Attributes:
        message: User-friendly error description
        severity: Error severity level
        technical_details: Technical error info (for logs/debugging)
        context: Additional context (operation, product, data)
        recovery_steps: List of recovery actions user can take
        error_code: Optional error code for support
    """
    message: str
    severity: ErrorSeverity
    technical_details: str
    context: Dict[str, Any] = field(default_factory=dict)
    recovery_steps: List[str] = field(default_factory=list)
    error_code: Optional[str] = None

    def format_for_display(self, include_technical: bool = False) -> str:
        lines = [self.message]

        if self.context:
            lines.append("")
            lines.append("Detalles:")
            for key, value in self.context.items():
                if value is not None:
                    lines.append(f"  • {key}: {value}")

        if self.recovery_steps:
            lines.append("")
            lines.append("Acciones sugeridas:")
            for i, step in enumerate(self.recovery_steps, 1):
                lines.append(f"  {i}. {step}")

        if include_technical and self.technical_details:
            lines.append("")
            lines.append("Detalles técnicos:")
            lines.append(f"  {self.technical_details}")

        if self.error_code:
            lines.append("")
            lines.append(f"Código de error: {self.error_code}")

        return "\n".join(lines)

    def format_for_log(self) -> str:
        """Format error for structured logging."""
        context_str = ", ".join(f"{k}={v}" for k, v in self.context.items() if v is not None)
        return f"[{self.severity.value.upper()}] {self.message} | Context: {context_str} | Technical: {self.technical_details}"


# ============================================================
# Error Formatters
# ============================================================

class ErrorFormatter:
    """Transforms exceptions into ErrorContext objects."""

    @staticmethod
    def format_repository_error(
        exc: Exception,
        operation: str,
        additional_context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        """Format errors raised by simplestock.repositories."""
        from ..repositories import (  # noqa: PLC0415
            DuplicateKeyError,
            ForeignKeyError,
            NotFoundError,
            BusinessRuleError,
            UnsupportedValueError,
            RepositoryError,
        )

        context = {"Operación": operation}
        if additional_context:
            context.update(additional_context)

        if isinstance(exc, DuplicateKeyError):
            return ErrorContext(
                message="El elemento ya existe",
                severity=ErrorSeverity.ERROR,
                technical_details=f"DuplicateKeyError: {exc}",
                context=context,
                recovery_steps=[
                    "Usa un nombre diferente",
                    "O modifica el elemento existente",
                ],
                error_code="REPO_001",
            )

        elif isinstance(exc, ForeignKeyError):
            return ErrorContext(
                message="Referencia no válida: el elemento relacionado no existe",
                severity=ErrorSeverity.ERROR,
                technical_details=f"ForeignKeyError: {exc}",
                context=context,
                recovery_steps=[
                    "Verifica que la categoría o el reporte existan",
                    "Crea primero el elemento faltante",
                ],
                error_code="REPO_002",
            )

        elif isinstance(exc, NotFoundError):
            return ErrorContext(
                message="Elemento no encontrado",
                severity=ErrorSeverity.WARNING,
                technical_details=f"NotFoundError: {exc}",
                context=context,
                recovery_steps=["Actualiza la lista y vuelve a intentarlo"],
                error_code="REPO_003",
            )

        elif isinstance(exc, BusinessRuleError):
            return ErrorContext(
                message="Valor no permitido",
                severity=ErrorSeverity.ERROR,
                technical_details=f"BusinessRuleError: {exc}",
                context=context,
                recovery_steps=[
                    "Las cantidades no pueden ser negativas",
                    "Completa todos los campos requeridos",
                ],
                error_code="REPO_004",
            )

        elif isinstance(exc, UnsupportedValueError):
            return ErrorContext(
                message="Tipo de dato no soportado",
                severity=ErrorSeverity.ERROR,
                technical_details=f"UnsupportedValueError: {exc}",
                context=context,
                recovery_steps=["Revisa los datos enviados"],
                error_code="REPO_005",
            )

        elif isinstance(exc, RepositoryError):
            return ErrorContext(
                message="Error en la operación",
                severity=ErrorSeverity.ERROR,
                technical_details=f"RepositoryError: {exc}",
                context=context,
                recovery_steps=[
                    "Revisa los datos ingresados",
                    "Vuelve a intentarlo",
                ],
                error_code="REPO_999",
            )

        return ErrorFormatter.format_generic_error(exc, operation, additional_context)

    @staticmethod
    def format_validation_error(exc: Exception, operation: Optional[str] = None) -> ErrorContext:
        """Format a services.ValidationError; its message is already user-facing."""
        context: Dict[str, Any] = {}
        if operation:
            context["Operación"] = operation
        field_name = getattr(exc, "field", None)
        if field_name:
            context["Campo"] = field_name

        return ErrorContext(
            message=str(exc),
            severity=ErrorSeverity.WARNING,
            technical_details=f"ValidationError: field={field_name}, value={getattr(exc, 'value', None)!r}",
            context=context,
            recovery_steps=["Corrige el dato indicado y vuelve a intentarlo"],
            error_code="VAL_001",
        )

    @staticmethod
    def format_database_error(
        exc: Exception,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        """Format database-level errors (initialization, migrations, SQLite)."""
        from ..db import DatabaseNotInitializedError  # noqa: PLC0415
        from ..migrations import MigrationError  # noqa: PLC0415

        ctx = {"Operación": operation}
        if context:
            ctx.update(context)

        if isinstance(exc, DatabaseNotInitializedError):
            return ErrorContext(
                message="La base de datos no está inicializada",
                severity=ErrorSeverity.CRITICAL,
                technical_details=str(exc),
                context=ctx,
                recovery_steps=[
                    "Reinicia la aplicación",
                    "Ejecuta 'simplestock init'",
                ],
                error_code="DB_000",
            )

        if isinstance(exc, MigrationError):
            ctx["Versión"] = exc.version
            return ErrorContext(
                message="No se pudo actualizar la estructura de la base de datos",
                severity=ErrorSeverity.CRITICAL,
                technical_details=f"{exc} (cause: {exc.__cause__})",
                context=ctx,
                recovery_steps=[
                    "Restaura la copia de seguridad más reciente de data/backups",
                    "Ejecuta 'simplestock verify' para revisar la base de datos",
                    "Contacta a soporte si el problema continúa",
                ],
                error_code="DB_008",
            )

        if isinstance(exc, sqlite3.OperationalError):
            exc_str = str(exc).lower()

            if "locked" in exc_str or "busy" in exc_str:
                return ErrorContext(
                    message="La base de datos está ocupada",
                    severity=ErrorSeverity.WARNING,
                    technical_details=str(exc),
                    context=ctx,
                    recovery_steps=[
                        "Espera unos segundos y vuelve a intentarlo",
                        "Cierra otras instancias de la aplicación",
                    ],
                    error_code="DB_001",
                )

            elif "disk" in exc_str or "full" in exc_str:
                return ErrorContext(
                    message="Espacio en disco insuficiente",
                    severity=ErrorSeverity.CRITICAL,
                    technical_details=str(exc),
                    context=ctx,
                    recovery_steps=[
                        "Libera espacio en disco",
                        "Elimina copias de seguridad antiguas",
                    ],
                    error_code="DB_002",
                )

            return ErrorContext(
                message="Error de acceso a la base de datos",
                severity=ErrorSeverity.ERROR,
                technical_details=str(exc),
                context=ctx,
                recovery_steps=[
                    "Verifica que el archivo de la base de datos sea accesible",
                    "Ejecuta 'simplestock verify'",
                ],
                error_code="DB_003",
            )

        elif isinstance(exc, sqlite3.IntegrityError):
            exc_str = str(exc).lower()

            if "unique" in exc_str:
                message, code = "El elemento ya existe", "DB_004"
            elif "foreign key" in exc_str:
                message, code = "Referencia no válida: el elemento relacionado no existe", "DB_005"
            elif "check" in exc_str:
                message, code = "Valor no permitido por las reglas de la base de datos", "DB_006"
            else:
                message, code = "Violación de integridad de la base de datos", "DB_007"

            return ErrorContext(
                message=message,
                severity=ErrorSeverity.ERROR,
                technical_details=str(exc),
                context=ctx,
                recovery_steps=["Revisa los datos ingresados"],
                error_code=code,
            )

        elif isinstance(exc, sqlite3.DatabaseError):
            exc_str = str(exc).lower()
            if "corrupt" in exc_str or "malformed" in exc_str or "not a database" in exc_str:
                return ErrorContext(
                    message="La base de datos está dañada",
                    severity=ErrorSeverity.CRITICAL,
                    technical_details=str(exc),
                    context=ctx,
                    recovery_steps=[
                        "Restaura la copia de seguridad más reciente de data/backups",
                        "Ejecuta 'simplestock verify'",
                    ],
                    error_code="DB_009",
                )
            return ErrorContext(
                message="Error de la base de datos",
                severity=ErrorSeverity.ERROR,
                technical_details=str(exc),
                context=ctx,
                recovery_steps=["Vuelve a intentarlo", "Reinicia la aplicación"],
                error_code="DB_999",
            )

        return ErrorFormatter.format_generic_error(exc, operation, context)

    @staticmethod
    def format_generic_error(
        exc: Exception,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        ctx = {"Operación": operation}
        if context:
            ctx.update(context)

        return ErrorContext(
            message=f"Error inesperado durante {operation}",
            severity=ErrorSeverity.ERROR,
            technical_details=f"{type(exc).__name__}: {exc}",
            context=ctx,
            recovery_steps=[
                "Vuelve a intentarlo",
                "Reinicia la aplicación si el problema continúa",
            ],
            error_code="GENERIC_999",
        )


def format_error(exc: Exception, operation: str, context: Optional[Dict[str, Any]] = None) -> ErrorContext:
    """Pick the formatter matching *exc*."""
    from ..db import DatabaseNotInitializedError  # noqa: PLC0415
    from ..migrations import MigrationError  # noqa: PLC0415
    from ..repositories import RepositoryError  # noqa: PLC0415
    from ..services import ValidationError  # noqa: PLC0415

    if isinstance(exc, ValidationError):
        return ErrorFormatter.format_validation_error(exc, operation)
    if isinstance(exc, RepositoryError):
        return ErrorFormatter.format_repository_error(exc, operation, context)
    if isinstance(exc, (DatabaseNotInitializedError, MigrationError, sqlite3.Error)):
        return ErrorFormatter.format_database_error(exc, operation, context)
    return ErrorFormatter.format_generic_error(exc, operation, context)
