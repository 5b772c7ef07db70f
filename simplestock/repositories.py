"""
Repository/DAL Layer for SQLite Storage

- TableRepository: generic CRUD primitive bound to one table + primary key
- ProductRepository / CategoryRepository: soft-delete catalog entities
- ReportRepository / ReportDetailRepository: saved counts (history)
- TempCountRepository: crash-recovery buffer for the counting session
- AdminRepository: single-row credentials table

Design Principles:
- Entity repositories hold a TableRepository instead of inheriting from one
- The connection is fetched from DatabaseConnection on every call; rows are
  never cached and are returned as plain dicts
- Every bound value goes through sanitize_value()
- IntegrityError mapped to repository exceptions
- Multi-statement writes wrapped in db.transaction()
"""

import logging
import re
import sqlite3
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from dateutil import parser as dateparser

from .config import UNCATEGORIZED_SECTION
from .db import DatabaseConnection
from .domain.models import LifecycleState, ProductSection, ReportSummary, ReportWithDetails, TempCount

logger = logging.getLogger(__name__)

Key = Union[int, str]
Conditions = Mapping[str, Any]

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ORDER_TERM_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*(\s+(ASC|DESC))?$", re.IGNORECASE)

# Keeps updated_at comparable with CURRENT_TIMESTAMP defaults (UTC, seconds)
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


# ============================================================
# Custom Exceptions
# ============================================================

class RepositoryError(Exception):
    """Base exception for repository operations"""
    pass


class DuplicateKeyError(RepositoryError):
    """Raised when UNIQUE / PRIMARY KEY constraint is violated"""
    pass


class ForeignKeyError(RepositoryError):
    """Raised when FOREIGN KEY constraint is violated"""
    pass


class NotFoundError(RepositoryError, LookupError):
    """Raised when entity not found"""
    pass


class BusinessRuleError(RepositoryError):
    """Raised when CHECK / NOT NULL constraint is violated"""
    pass


class UnsupportedValueError(RepositoryError, TypeError):
    """Raised when a value cannot be bound as a SQLite parameter"""
    pass


# ============================================================
# Value sanitization
# ============================================================

def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def format_timestamp(value: datetime) -> str:
    """Stored timestamp text; aware datetimes are converted to UTC first."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def sanitize_value(value: Any) -> Any:
    """
    Convert a Python value to a type SQLite accepts as a parameter.

    - None, str, int, float, bytes: unchanged
    - bool: 0/1 (checked before int)
    - Enum: its value
    - datetime: 'YYYY-MM-DD HH:MM:SS' (aware values in UTC); date: 'YYYY-MM-DD'
    - Decimal: float; paths: str
    - dict, list, tuple, set: rejected
    - anything else: str(value)
    """
    if value is None or isinstance(value, (str, bytes)):
        return value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, Enum):
        return sanitize_value(value.value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, PurePath):
        return str(value)
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, (dict, list, tuple, set, frozenset)):
        raise UnsupportedValueError(f"Cannot bind {type(value).__name__} value as a SQL parameter")
    return str(value)


def sanitize_params(values: Iterable[Any]) -> Tuple[Any, ...]:
    return tuple(sanitize_value(v) for v in values)


def _check_identifier(name: str) -> str:
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def _check_order_by(order_by: str) -> str:
    terms = [term.strip() for term in order_by.split(",")]
    if not terms or not all(_ORDER_TERM_RE.match(term) for term in terms):
        raise ValueError(f"Invalid ORDER BY clause: {order_by!r}")
    return ", ".join(terms)


def _map_integrity_error(table: str, error: sqlite3.IntegrityError) -> RepositoryError:
    error_msg = str(error).lower()
    if "foreign key" in error_msg:
        return ForeignKeyError(f"Foreign key constraint failed on {table}: {error}")
    if "unique" in error_msg or "primary key" in error_msg:
        return DuplicateKeyError(f"Duplicate key on {table}: {error}")
    if "check constraint" in error_msg or "not null" in error_msg:
        return BusinessRuleError(f"Business rule violated on {table}: {error}")
    return RepositoryError(f"Integrity error on {table}: {error}")


def _where(conditions: Conditions) -> Tuple[str, Tuple[Any, ...]]:
    clauses = []
    values = []
    for key, value in conditions.items():
        _check_identifier(key)
        if value is None:
            clauses.append(f"{key} IS NULL")
        else:
            clauses.append(f"{key} = ?")
            values.append(value)
    return " AND ".join(clauses), sanitize_params(values)


# ============================================================
# Generic Repository
# ============================================================

class TableRepository:
    """
    Generic CRUD operations on one table.

    Usage:
        >>> products = TableRepository(db, "products")
        >>> new_id = products.insert({"name": "Arroz", "unit": "kg"})
        >>> products.find_by_id(new_id)["unit"]
        'kg'
    """

    def __init__(self, db: DatabaseConnection, table: str, primary_key: str = "id"):
        self.db = db
        self.table = _check_identifier(table)
        self.primary_key = _check_identifier(primary_key)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute a write statement with sanitized params and mapped integrity errors."""
        try:
            with self.db.serialized() as conn:
                return conn.execute(sql, sanitize_params(params))
        except sqlite3.IntegrityError as e:
            raise _map_integrity_error(self.table, e) from e

    def find_all(self, order_by: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = f"SELECT * FROM {self.table}"
        if order_by:
            sql += f" ORDER BY {_check_order_by(order_by)}"
        return self.raw_query(sql)

    def find_by_id(self, key: Key) -> Optional[Dict[str, Any]]:
        return self.raw_query_one(
            f"SELECT * FROM {self.table} WHERE {self.primary_key} = ?", (key,)
        )

    def find_where(self, conditions: Conditions, order_by: Optional[str] = None) -> List[Dict[str, Any]]:
        if not conditions:
            return self.find_all(order_by)
        where_sql, values = _where(conditions)
        sql = f"SELECT * FROM {self.table} WHERE {where_sql}"
        if order_by:
            sql += f" ORDER BY {_check_order_by(order_by)}"
        return self.raw_query(sql, values)

    def find_one_where(self, conditions: Conditions) -> Optional[Dict[str, Any]]:
        if not conditions:
            return self.raw_query_one(f"SELECT * FROM {self.table} LIMIT 1")
        where_sql, values = _where(conditions)
        return self.raw_query_one(f"SELECT * FROM {self.table} WHERE {where_sql} LIMIT 1", values)

    def insert(self, data: Mapping[str, Any]) -> int:
        """
        Insert one row.

        Returns:
            rowid of the new row (the primary key for INTEGER PRIMARY KEY tables)
        """
        if not data:
            cursor = self.execute(f"INSERT INTO {self.table} DEFAULT VALUES")
            return cursor.lastrowid

        columns = [_check_identifier(key) for key in data]
        placeholders = ", ".join(["?"] * len(columns))
        cursor = self.execute(
            f"INSERT INTO {self.table} ({', '.join(columns)}) VALUES ({placeholders})",
            list(data.values()),
        )
        return cursor.lastrowid

    def update(self, key: Key, data: Mapping[str, Any]) -> int:
        """
        Apply a partial field set to the row with primary key *key*.

        Returns:
            Number of rows changed (0 if no row matched; not an error)
        """
        if not data:
            return 0
        set_clause = ", ".join(f"{_check_identifier(col)} = ?" for col in data)
        cursor = self.execute(
            f"UPDATE {self.table} SET {set_clause} WHERE {self.primary_key} = ?",
            [*data.values(), key],
        )
        return cursor.rowcount

    def delete(self, key: Key) -> int:
        """Physical delete by primary key.  Returns number of rows deleted."""
        cursor = self.execute(f"DELETE FROM {self.table} WHERE {self.primary_key} = ?", (key,))
        return cursor.rowcount

    def delete_where(self, conditions: Conditions) -> int:
        if not conditions:
            raise ValueError("delete_where() requires at least one condition; use delete_all()")
        where_sql, values = _where(conditions)
        return self.execute(f"DELETE FROM {self.table} WHERE {where_sql}", values).rowcount

    def delete_all(self) -> int:
        return self.execute(f"DELETE FROM {self.table}").rowcount

    def count(self, conditions: Optional[Conditions] = None) -> int:
        sql = f"SELECT COUNT(*) AS count FROM {self.table}"
        values: Tuple[Any, ...] = ()
        if conditions:
            where_sql, values = _where(conditions)
            sql += f" WHERE {where_sql}"
        row = self.raw_query_one(sql, values)
        return row["count"] if row else 0

    def exists(self, conditions: Conditions) -> bool:
        return self.count(conditions) > 0

    def raw_query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a SELECT the generic shape cannot express (joins, aggregates)."""
        with self.db.serialized() as conn:
            rows = conn.execute(sql, sanitize_params(params)).fetchall()
        return [dict(row) for row in rows]

    def raw_query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self.db.serialized() as conn:
            row = conn.execute(sql, sanitize_params(params)).fetchone()
        return dict(row) if row is not None else None


# ============================================================
# Product Repository
# ============================================================

_UNCHANGED = object()


class ProductRepository:
    """
    Repository for products.

    Products are never physically deleted: report history refers to them by
    name, so deactivation is the only destructive operation.
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db
        self.table = TableRepository(db, "products")

    def find_by_id(self, product_id: int) -> Optional[Dict[str, Any]]:
        return self.table.find_by_id(product_id)

    def find_active(self) -> List[Dict[str, Any]]:
        """
        Active products with their (active) category name.

        Ordered by category sort_order then product name; products without a
        category, or whose category is inactive, come last with
        category_name = None.
        """
        return self.table.raw_query(
            """
            SELECT p.*, c.name AS category_name, c.sort_order AS category_sort_order
            FROM products p
            LEFT JOIN categories c ON c.id = p.category_id AND c.active = 1
            WHERE p.active = 1
            ORDER BY (c.id IS NULL), c.sort_order, c.name, p.name
            """
        )

    def find_active_grouped_by_category(self) -> List[ProductSection]:
        """Active products split into sections; the uncategorized section is always last."""
        sections: List[ProductSection] = []
        by_category: Dict[int, ProductSection] = {}
        uncategorized = ProductSection(title=UNCATEGORIZED_SECTION, category_id=None)

        for product in self.find_active():
            if product["category_name"] is None:
                uncategorized.products.append(product)
                continue
            section = by_category.get(product["category_id"])
            if section is None:
                section = ProductSection(title=product["category_name"], category_id=product["category_id"])
                by_category[product["category_id"]] = section
                sections.append(section)
            section.products.append(product)

        if uncategorized.products:
            sections.append(uncategorized)
        return sections

    def find_all_ordered(self) -> List[Dict[str, Any]]:
        return self.table.find_all("name")

    def create(self, name: str, unit: str, category_id: Optional[int] = None) -> int:
        return self.table.insert({
            "name": name,
            "unit": unit,
            "active": LifecycleState.ACTIVE,
            "category_id": category_id,
        })

    def update_product(self, product_id: int, name: str, unit: str, category_id: Any = _UNCHANGED) -> int:
        """Update name and unit; category_id only when passed (None clears it)."""
        data: Dict[str, Any] = {"name": name, "unit": unit, "updated_at": utc_timestamp()}
        if category_id is not _UNCHANGED:
            data["category_id"] = category_id
        return self.table.update(product_id, data)

    def soft_delete(self, product_id: int) -> int:
        return self._set_state(product_id, LifecycleState.INACTIVE)

    def restore(self, product_id: int) -> int:
        return self._set_state(product_id, LifecycleState.ACTIVE)

    def _set_state(self, product_id: int, state: LifecycleState) -> int:
        return self.table.update(product_id, {"active": state, "updated_at": utc_timestamp()})

    def find_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        return self.table.find_one_where({"name": name})

    def exists_by_name(self, name: str) -> bool:
        return self.table.exists({"name": name})

    def count_active(self) -> int:
        return self.table.count({"active": LifecycleState.ACTIVE})

    def count_by_category(self, category_id: int) -> int:
        return self.table.count({"category_id": category_id, "active": LifecycleState.ACTIVE})


# ============================================================
# Category Repository
# ============================================================

class CategoryRepository:
    """
    Repository for product categories (soft delete).

    Deactivating a category leaves products.category_id untouched; those
    products are shown in the uncategorized section until it is restored.
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db
        self.table = TableRepository(db, "categories")

    def find_by_id(self, category_id: int) -> Optional[Dict[str, Any]]:
        return self.table.find_by_id(category_id)

    def find_active(self) -> List[Dict[str, Any]]:
        return self.table.find_where({"active": LifecycleState.ACTIVE}, "sort_order, name")

    def find_all_ordered(self) -> List[Dict[str, Any]]:
        return self.table.find_all("sort_order, name")

    def create(self, name: str) -> int:
        """Create a category at the end of the manual ordering (max sort_order + 1)."""
        with self.db.transaction("IMMEDIATE"):
            row = self.table.raw_query_one("SELECT MAX(sort_order) AS max_order FROM categories")
            next_order = (row["max_order"] or 0) + 1
            return self.table.insert({
                "name": name,
                "sort_order": next_order,
                "active": LifecycleState.ACTIVE,
            })

    def update_category(self, category_id: int, name: str) -> int:
        return self.table.update(category_id, {"name": name, "updated_at": utc_timestamp()})

    def soft_delete(self, category_id: int) -> int:
        return self.table.update(category_id, {"active": LifecycleState.INACTIVE, "updated_at": utc_timestamp()})

    def restore(self, category_id: int) -> int:
        return self.table.update(category_id, {"active": LifecycleState.ACTIVE, "updated_at": utc_timestamp()})

    def find_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        return self.table.find_one_where({"name": name})

    def find_active_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        return self.table.find_one_where({"name": name, "active": LifecycleState.ACTIVE})

    def exists_by_name(self, name: str) -> bool:
        return self.table.exists({"name": name})

    def reorder(self, ordered_ids: Sequence[int]) -> None:
        """Rewrite sort_order as 1..N following *ordered_ids*."""
        with self.db.transaction():
            for position, category_id in enumerate(ordered_ids, start=1):
                self.table.update(category_id, {"sort_order": position})

    def count_active(self) -> int:
        return self.table.count({"active": LifecycleState.ACTIVE})


# ============================================================
# Report Repositories
# ============================================================

def _normalize_bound(value: Union[str, date, datetime], end_of_day: bool) -> str:
    """
    Normalize a date-range bound to the stored 'YYYY-MM-DD HH:MM:SS' text.

    A bare date (or a date-only string) covers the whole day.
    """
    if isinstance(value, str):
        parsed = dateparser.parse(value)
        date_only = len(value.strip()) <= 10
        value = parsed.date() if date_only else parsed

    if isinstance(value, datetime):
        return format_timestamp(value)

    bound = datetime.combine(value, time.max if end_of_day else time.min)
    return bound.strftime(TIMESTAMP_FORMAT)


class ReportRepository:
    """Repository for saved reports and their details."""

    def __init__(self, db: DatabaseConnection):
        self.db = db
        self.table = TableRepository(db, "reports")
        self.details = TableRepository(db, "report_details")

    def find_by_id(self, report_id: int) -> Optional[Dict[str, Any]]:
        return self.table.find_by_id(report_id)

    def find_all_ordered(self) -> List[Dict[str, Any]]:
        """All reports, most recent first."""
        return self.table.find_all("date DESC, id DESC")

    def create_with_details(
        self,
        counts: Iterable[TempCount],
        report_date: Optional[Union[date, datetime]] = None,
    ) -> int:
        """
        Create a report and one detail row per count with quantity > 0.

        The report and its details are inserted in a single transaction:
        either all of them are stored or none.

        Returns:
            id of the new report
        """
        with self.db.transaction("IMMEDIATE"):
            report_id = self.table.insert({} if report_date is None else {"date": report_date})
            for count in counts:
                if count.quantity > 0:
                    self.details.insert({
                        "report_id": report_id,
                        "product_name": count.product_name,
                        "quantity": count.quantity,
                    })
        return report_id

    def get_details(self, report_id: int) -> List[Dict[str, Any]]:
        return self.details.raw_query(
            "SELECT id, report_id, product_name, quantity FROM report_details "
            "WHERE report_id = ? ORDER BY product_name",
            (report_id,),
        )

    def find_by_id_with_details(self, report_id: int) -> Optional[ReportWithDetails]:
        report = self.find_by_id(report_id)
        if report is None:
            return None
        return ReportWithDetails(report=report, details=self.get_details(report_id))

    def get_with_details(self, report_id: int) -> ReportWithDetails:
        """Like find_by_id_with_details() but raises NotFoundError for an unknown id."""
        data = self.find_by_id_with_details(report_id)
        if data is None:
            raise NotFoundError(f"Report {report_id} not found")
        return data

    def delete_with_details(self, report_id: int) -> bool:
        """
        Delete a report and its details.

        Details are removed explicitly before the report instead of relying
        only on ON DELETE CASCADE.
        """
        with self.db.transaction():
            self.details.delete_where({"report_id": report_id})
            deleted = self.table.delete(report_id)
        return deleted > 0

    def find_by_date_range(
        self,
        start: Union[str, date, datetime],
        end: Union[str, date, datetime],
    ) -> List[Dict[str, Any]]:
        """Reports with start <= date <= end, most recent first."""
        return self.table.raw_query(
            "SELECT * FROM reports WHERE date >= ? AND date <= ? ORDER BY date DESC, id DESC",
            (_normalize_bound(start, end_of_day=False), _normalize_bound(end, end_of_day=True)),
        )

    def count_items_in_report(self, report_id: int) -> float:
        """Sum of quantities in a report."""
        row = self.details.raw_query_one(
            "SELECT SUM(quantity) AS total FROM report_details WHERE report_id = ?",
            (report_id,),
        )
        return row["total"] or 0

    def get_summaries(self) -> List[ReportSummary]:
        rows = self.table.raw_query(
            """
            SELECT r.id, r.date,
                   COUNT(d.id) AS total_items,
                   COALESCE(SUM(d.quantity), 0) AS total_quantity
            FROM reports r
            LEFT JOIN report_details d ON d.report_id = r.id
            GROUP BY r.id
            ORDER BY r.date DESC, r.id DESC
            """
        )
        return [ReportSummary(**row) for row in rows]


class ReportDetailRepository:
    """Queries over report details across reports (product history)."""

    def __init__(self, db: DatabaseConnection):
        self.db = db
        self.table = TableRepository(db, "report_details")

    def find_by_report_id(self, report_id: int) -> List[Dict[str, Any]]:
        return self.table.find_where({"report_id": report_id}, "product_name")

    def find_by_product_name(self, product_name: str) -> List[Dict[str, Any]]:
        return self.table.find_where({"product_name": product_name}, "report_id DESC")

    def get_total_by_product(self, product_name: str) -> float:
        row = self.table.raw_query_one(
            "SELECT SUM(quantity) AS total FROM report_details WHERE product_name = ?",
            (product_name,),
        )
        return row["total"] or 0


# ============================================================
# Temp Count Repository
# ============================================================

_UPSERT_TEMP_COUNT_SQL = (
    "INSERT OR REPLACE INTO temp_counts (product_name, quantity, updated_at) "
    "VALUES (?, ?, CURRENT_TIMESTAMP)"
)


class TempCountRepository:
    """
    Persisted shadow of the in-progress counting session.

    At most one row per product name (product_name is the primary key).
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db
        self.table = TableRepository(db, "temp_counts", primary_key="product_name")

    def upsert(self, product_name: str, quantity: float) -> None:
        self.table.execute(_UPSERT_TEMP_COUNT_SQL, (product_name, quantity))

    def upsert_many(self, counts: Iterable[TempCount]) -> None:
        with self.db.transaction():
            for count in counts:
                self.table.execute(_UPSERT_TEMP_COUNT_SQL, (count.product_name, count.quantity))

    def get_all(self) -> List[TempCount]:
        return [TempCount.from_row(row) for row in self.table.find_all("product_name")]

    def get_by_product_name(self, product_name: str) -> Optional[TempCount]:
        row = self.table.find_by_id(product_name)
        return TempCount.from_row(row) if row else None

    def clear_all(self) -> int:
        return self.table.delete_all()

    def remove_by_product_name(self, product_name: str) -> int:
        return self.table.delete(product_name)

    def has_pending_counts(self) -> bool:
        return self.table.count() > 0

    def get_total_quantity(self) -> float:
        row = self.table.raw_query_one("SELECT SUM(quantity) AS total FROM temp_counts")
        return row["total"] or 0


# ============================================================
# Admin Repository
# ============================================================

ADMIN_ID = 1


class AdminRepository:
    """
    Administrator credentials.

    The table accepts a single row: its primary key is constrained to 1.
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db
        self.table = TableRepository(db, "admin_credentials")

    def is_configured(self) -> bool:
        return self.table.count() > 0

    def get_credentials(self) -> Optional[Dict[str, Any]]:
        return self.table.find_by_id(ADMIN_ID)

    def find_by_id(self, admin_id: int) -> Optional[Dict[str, Any]]:
        return self.table.find_by_id(admin_id)

    def create_credentials(self, username: str, password_hash: str) -> bool:
        """
        Store the credentials the first time.

        Returns:
            False if credentials already exist (they are not overwritten)
        """
        if self.is_configured():
            logger.info("Admin credentials already configured")
            return False

        try:
            self.table.insert({"id": ADMIN_ID, "username": username, "password_hash": password_hash})
        except DuplicateKeyError:
            logger.info("Admin credentials created concurrently, keeping the existing row")
            return False

        logger.info("Admin credentials created")
        return True

    def update_credentials(self, username: str, password_hash: str) -> bool:
        """Returns False when there is nothing to update."""
        updated = self.table.update(ADMIN_ID, {
            "username": username,
            "password_hash": password_hash,
            "updated_at": utc_timestamp(),
        })
        return updated > 0

    def verify_credentials(self, username: str, password_hash: str) -> bool:
        """Exact match of the stored username and password hash."""
        credentials = self.get_credentials()
        if credentials is None:
            return False
        return credentials["username"] == username and credentials["password_hash"] == password_hash


# ============================================================
# Repository Factory (Convenience)
# ============================================================

class RepositoryFactory:
    """
    Factory for creating repository instances sharing one DatabaseConnection.

    Usage:
        >>> repos = RepositoryFactory(db)
        >>> repos.products().find_active()
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def products(self) -> ProductRepository:
        return ProductRepository(self.db)

    def categories(self) -> CategoryRepository:
        return CategoryRepository(self.db)

    def reports(self) -> ReportRepository:
        return ReportRepository(self.db)

    def report_details(self) -> ReportDetailRepository:
        return ReportDetailRepository(self.db)

    def temp_counts(self) -> TempCountRepository:
        return TempCountRepository(self.db)

    def admin(self) -> AdminRepository:
        return AdminRepository(self.db)
