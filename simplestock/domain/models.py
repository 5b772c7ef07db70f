"""
Domain models for SimpleStock.

Pure data classes + value objects. No I/O, no side effects.
Repositories return plain dict records; these types describe the values that
cross the service boundary.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


class LifecycleState(Enum):
    """Soft-delete state shared by products and categories (stored in `active`)."""
    INACTIVE = 0
    ACTIVE = 1

    @classmethod
    def of(cls, active: Any) -> "LifecycleState":
        return cls.ACTIVE if active else cls.INACTIVE


@dataclass(frozen=True)
class TempCount:
    """One in-progress count for a product, keyed by product name."""
    product_name: str
    quantity: float
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TempCount":
        return cls(
            product_name=row["product_name"],
            quantity=row["quantity"],
            updated_at=row.get("updated_at"),
        )


@dataclass
class ProductSection:
    """Products of one category, in display order."""
    title: str
    category_id: Optional[int]
    products: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ReportWithDetails:
    report: Dict[str, Any]
    details: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class ReportSummary:
    id: int
    date: str
    total_items: int
    total_quantity: float


@dataclass(frozen=True)
class MigrationStatus:
    current: int
    latest: int
    pending: int

    @property
    def up_to_date(self) -> bool:
        return self.pending == 0


@dataclass
class ServiceResult(Generic[T]):
    """Outcome of a service call that reports failures as values."""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "ServiceResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ServiceResult[T]":
        return cls(success=False, error=error)
