"""
Business services on top of the repositories.

Services trim and validate user input before anything is written, so a
rejected request never touches stored state.  ProductService,
CategoryService and ReportService raise ValidationError; AdminService
reports failures as ServiceResult values.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .domain.models import ProductSection, ReportWithDetails, ServiceResult, TempCount
from .repositories import (
    AdminRepository,
    CategoryRepository,
    ProductRepository,
    RepositoryError,
    ReportDetailRepository,
    ReportRepository,
    TempCountRepository,
)

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    """Rejected input; carries a message suitable for the user."""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        super().__init__(message)
        self.field = field
        self.value = value


def _require_text(value: Optional[str], message: str, field: str) -> str:
    trimmed = (value or "").strip()
    if not trimmed:
        raise ValidationError(message, field=field, value=value)
    return trimmed


# ============================================================
# Products
# ============================================================

class ProductService:
    """Catalog management for products (soft delete only)."""

    def __init__(self, products: ProductRepository, categories: Optional[CategoryRepository] = None):
        self.products = products
        self.categories = categories

    def get_active_products(self) -> List[Dict[str, Any]]:
        return self.products.find_active()

    def get_grouped_products(self) -> List[ProductSection]:
        return self.products.find_active_grouped_by_category()

    def get_all_products(self) -> List[Dict[str, Any]]:
        return self.products.find_all_ordered()

    def get_product_by_id(self, product_id: int) -> Optional[Dict[str, Any]]:
        return self.products.find_by_id(product_id)

    def create_product(self, name: str, unit: str, category_id: Optional[int] = None) -> int:
        """
        Create a product.

        Raises:
            ValidationError: empty name/unit, duplicate name, unknown category
        """
        name = _require_text(name, "El nombre del producto es requerido", "name")
        unit = _require_text(unit, "La unidad de medida es requerida", "unit")

        if self.products.exists_by_name(name):
            raise ValidationError(f'Ya existe un producto con el nombre "{name}"', field="name", value=name)
        self._check_category(category_id)

        product_id = self.products.create(name, unit, category_id)
        logger.info("Product created: %s (id=%d)", name, product_id)
        return product_id

    def update_product(self, product_id: int, name: str, unit: str, **kwargs: Any) -> None:
        """
        Update name and unit.  Pass category_id=... to move the product
        (None makes it uncategorized); omit it to keep the current category.
        """
        name = _require_text(name, "El nombre del producto es requerido", "name")
        unit = _require_text(unit, "La unidad de medida es requerida", "unit")

        existing = self._get_existing(product_id)
        if existing["name"] != name:
            duplicate = self.products.find_by_name(name)
            if duplicate and duplicate["id"] != product_id:
                raise ValidationError(f'Ya existe un producto con el nombre "{name}"', field="name", value=name)

        if "category_id" in kwargs:
            self._check_category(kwargs["category_id"])
            self.products.update_product(product_id, name, unit, kwargs["category_id"])
        else:
            self.products.update_product(product_id, name, unit)

    def deactivate_product(self, product_id: int) -> None:
        """Soft delete: report history keeps referring to the product by name."""
        self._get_existing(product_id)
        self.products.soft_delete(product_id)

    def reactivate_product(self, product_id: int) -> None:
        self._get_existing(product_id)
        self.products.restore(product_id)

    def get_active_count(self) -> int:
        return self.products.count_active()

    def find_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        return self.products.find_by_name(name)

    def _get_existing(self, product_id: int) -> Dict[str, Any]:
        existing = self.products.find_by_id(product_id)
        if existing is None:
            raise ValidationError("Producto no encontrado", field="id", value=product_id)
        return existing

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is None or self.categories is None:
            return
        if self.categories.find_by_id(category_id) is None:
            raise ValidationError("Categoría no encontrada", field="category_id", value=category_id)


# ============================================================
# Categories
# ============================================================

class CategoryService:
    """Category management; names are unique among active categories."""

    def __init__(self, categories: CategoryRepository):
        self.categories = categories

    def get_active_categories(self) -> List[Dict[str, Any]]:
        return self.categories.find_active()

    def get_all_categories(self) -> List[Dict[str, Any]]:
        return self.categories.find_all_ordered()

    def get_category_by_id(self, category_id: int) -> Optional[Dict[str, Any]]:
        return self.categories.find_by_id(category_id)

    def create_category(self, name: str) -> int:
        name = _require_text(name, "El nombre de la categoría es requerido", "name")
        if self.categories.find_active_by_name(name):
            raise ValidationError(f'Ya existe una categoría con el nombre "{name}"', field="name", value=name)

        category_id = self.categories.create(name)
        logger.info("Category created: %s (id=%d)", name, category_id)
        return category_id

    def update_category(self, category_id: int, name: str) -> None:
        name = _require_text(name, "El nombre de la categoría es requerido", "name")
        existing = self._get_existing(category_id)

        if existing["name"] != name:
            duplicate = self.categories.find_active_by_name(name)
            if duplicate and duplicate["id"] != category_id:
                raise ValidationError(f'Ya existe una categoría con el nombre "{name}"', field="name", value=name)

        self.categories.update_category(category_id, name)

    def deactivate_category(self, category_id: int) -> None:
        """Products of an inactive category are listed under the uncategorized section."""
        self._get_existing(category_id)
        self.categories.soft_delete(category_id)

    def reactivate_category(self, category_id: int) -> None:
        existing = self._get_existing(category_id)
        duplicate = self.categories.find_active_by_name(existing["name"])
        if duplicate and duplicate["id"] != category_id:
            raise ValidationError(
                f'Ya existe una categoría con el nombre "{existing["name"]}"',
                field="name", value=existing["name"],
            )
        self.categories.restore(category_id)

    def reorder_categories(self, ordered_ids: Sequence[int]) -> None:
        if len(set(ordered_ids)) != len(ordered_ids):
            raise ValidationError("El orden contiene categorías repetidas", field="ordered_ids", value=list(ordered_ids))
        for category_id in ordered_ids:
            self._get_existing(category_id)
        self.categories.reorder(ordered_ids)

    def get_active_count(self) -> int:
        return self.categories.count_active()

    def _get_existing(self, category_id: int) -> Dict[str, Any]:
        existing = self.categories.find_by_id(category_id)
        if existing is None:
            raise ValidationError("Categoría no encontrada", field="id", value=category_id)
        return existing


# ============================================================
# Reports
# ============================================================

class ReportService:
    """Saved reports, product history and the temp-count buffer."""

    def __init__(
        self,
        reports: ReportRepository,
        details: ReportDetailRepository,
        temp_counts: TempCountRepository,
    ):
        self.reports = reports
        self.details = details
        self.temp_counts = temp_counts

    def get_all_reports(self) -> List[Dict[str, Any]]:
        return self.reports.find_all_ordered()

    def get_report_by_id(self, report_id: int) -> Optional[Dict[str, Any]]:
        return self.reports.find_by_id(report_id)

    def get_report_details(self, report_id: int) -> List[Dict[str, Any]]:
        return self.reports.get_details(report_id)

    def get_report_with_details(self, report_id: int) -> Optional[ReportWithDetails]:
        return self.reports.find_by_id_with_details(report_id)

    def save_report(self, counts: Iterable[TempCount]) -> int:
        """
        Store counts with quantity > 0 as a new report, then clear the
        temp-count buffer.

        Raises:
            ValidationError: no positive quantity to save
        """
        valid_counts = [count for count in counts if count.quantity > 0]
        if not valid_counts:
            raise ValidationError("No hay productos con cantidades para guardar", field="counts")

        report_id = self.reports.create_with_details(valid_counts)
        self.temp_counts.clear_all()
        logger.info("Report %d saved with %d item(s)", report_id, len(valid_counts))
        return report_id

    def delete_report(self, report_id: int) -> None:
        if self.reports.find_by_id(report_id) is None:
            raise ValidationError("Reporte no encontrado", field="id", value=report_id)
        self.reports.delete_with_details(report_id)
        logger.info("Report %d deleted", report_id)

    def get_reports_by_date_range(
        self,
        start: Union[str, date, datetime],
        end: Union[str, date, datetime],
    ) -> List[Dict[str, Any]]:
        try:
            return self.reports.find_by_date_range(start, end)
        except (ValueError, OverflowError) as e:
            raise ValidationError(f"Fecha no válida: {e}", field="date") from e

    def get_report_total(self, report_id: int) -> float:
        return self.reports.count_items_in_report(report_id)

    def get_product_history(self, product_name: str) -> List[Dict[str, Any]]:
        return self.details.find_by_product_name(product_name)

    def get_product_total_history(self, product_name: str) -> float:
        return self.details.get_total_by_product(product_name)

    # === Temp counts ===

    def save_temp_count(self, product_name: str, quantity: float) -> None:
        self.temp_counts.upsert(product_name, quantity)

    def save_temp_counts(self, counts: Iterable[TempCount]) -> None:
        self.temp_counts.upsert_many(counts)

    def get_temp_counts(self) -> List[TempCount]:
        return self.temp_counts.get_all()

    def clear_temp_counts(self) -> None:
        self.temp_counts.clear_all()

    def has_pending_counts(self) -> bool:
        return self.temp_counts.has_pending_counts()


# ============================================================
# Admin
# ============================================================

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 4
PBKDF2_ITERATIONS = 200_000
_HASH_SCHEME = "pbkdf2_sha256"


def hash_password(password: str, salt: Optional[str] = None, iterations: int = PBKDF2_ITERATIONS) -> str:
    """Salted PBKDF2-SHA256, encoded as 'pbkdf2_sha256$iterations$salt$hexdigest'."""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"{_HASH_SCHEME}${iterations}${salt}${digest.hex()}"


def check_password(password: str, encoded: str) -> bool:
    try:
        scheme, iterations, salt, _ = encoded.split("$", 3)
        rounds = int(iterations)
    except ValueError:
        return False
    if scheme != _HASH_SCHEME:
        return False
    return hmac.compare_digest(hash_password(password, salt, rounds), encoded)


class AdminService:
    """Administrator setup and login."""

    def __init__(self, admin: AdminRepository):
        self.admin = admin

    def is_configured(self) -> bool:
        return self.admin.is_configured()

    def setup_admin(self, username: str, password: str) -> ServiceResult[None]:
        """Create the credentials; only possible while none exist."""
        error = self._validate(username, password, new=False)
        if error:
            return ServiceResult.fail(error)

        try:
            if self.admin.is_configured():
                return ServiceResult.fail("Ya existe un administrador configurado")
            created = self.admin.create_credentials(username.strip(), hash_password(password))
        except RepositoryError as e:
            logger.error("setup_admin failed: %s", e)
            return ServiceResult.fail("Error interno al configurar admin")

        if not created:
            return ServiceResult.fail("Ya existe un administrador configurado")
        logger.info("Admin configured")
        return ServiceResult.ok()

    def login(self, username: str, password: str) -> ServiceResult[None]:
        if not username or not password:
            return ServiceResult.fail("Usuario y contraseña son requeridos")

        try:
            credentials = self.admin.get_credentials()
        except RepositoryError as e:
            logger.error("login failed: %s", e)
            return ServiceResult.fail("Error interno al iniciar sesión")

        if (
            credentials is None
            or credentials["username"] != username.strip()
            or not check_password(password, credentials["password_hash"])
        ):
            logger.info("Invalid admin credentials")
            return ServiceResult.fail("Usuario o contraseña incorrectos")

        return ServiceResult.ok()

    def update_credentials(self, current_password: str, new_username: str, new_password: str) -> ServiceResult[None]:
        """Replace username and password; requires the current password."""
        error = self._validate(new_username, new_password, new=True)
        if error:
            return ServiceResult.fail(error)

        try:
            credentials = self.admin.get_credentials()
            if credentials is None:
                return ServiceResult.fail("No hay credenciales configuradas")
            if not check_password(current_password or "", credentials["password_hash"]):
                return ServiceResult.fail("Contraseña actual incorrecta")

            updated = self.admin.update_credentials(new_username.strip(), hash_password(new_password))
        except RepositoryError as e:
            logger.error("update_credentials failed: %s", e)
            return ServiceResult.fail("Error interno al actualizar")

        if not updated:
            return ServiceResult.fail("Error al actualizar credenciales")
        logger.info("Admin credentials updated")
        return ServiceResult.ok()

    @staticmethod
    def _validate(username: Optional[str], password: Optional[str], new: bool) -> Optional[str]:
        prefix = "El nuevo usuario" if new else "El usuario"
        if not username or len(username.strip()) < MIN_USERNAME_LENGTH:
            return f"{prefix} debe tener al menos {MIN_USERNAME_LENGTH} caracteres"
        prefix = "La nueva contraseña" if new else "La contraseña"
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            return f"{prefix} debe tener al menos {MIN_PASSWORD_LENGTH} caracteres"
        return None


# ============================================================
# Counting session
# ============================================================

class CountingSession:
    """
    In-progress stock count.

    The in-memory mapping is authoritative; every change is mirrored to
    temp_counts so a crash loses nothing.  Mirroring failures are logged and
    do not interrupt counting.
    """

    def __init__(self, reports: ReportService):
        self.reports = reports
        self._counts: Dict[str, float] = {}

    @property
    def counts(self) -> Mapping[str, float]:
        return dict(self._counts)

    def load(self) -> int:
        """Recover counts left by a previous run.  Returns how many were recovered."""
        self._counts = {count.product_name: count.quantity for count in self.reports.get_temp_counts()}
        if self._counts:
            logger.info("Recovered %d pending count(s)", len(self._counts))
        return len(self._counts)

    def set_count(self, product_name: str, quantity: float) -> None:
        if quantity < 0:
            raise ValidationError("La cantidad no puede ser negativa", field="quantity", value=quantity)

        self._counts[product_name] = quantity
        try:
            self.reports.save_temp_count(product_name, quantity)
        except Exception as e:
            logger.warning("Could not persist count for %s: %s", product_name, e)

    def get_count(self, product_name: str) -> float:
        return self._counts.get(product_name, 0)

    def total_quantity(self) -> float:
        return sum(self._counts.values())

    def clear(self) -> None:
        self._counts.clear()
        try:
            self.reports.clear_temp_counts()
        except Exception as e:
            logger.warning("Could not clear persisted counts: %s", e)

    def to_temp_counts(self) -> List[TempCount]:
        return [TempCount(product_name=name, quantity=qty) for name, qty in self._counts.items()]

    def save_report(self) -> int:
        """Save the session as a report and start a new, empty one."""
        report_id = self.reports.save_report(self.to_temp_counts())
        self._counts.clear()
        return report_id
