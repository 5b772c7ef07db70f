"""
CSV export of saved reports and product history.

Units are looked up by product name at export time; products that no
longer exist are exported with the unit "unidad".
"""
import csv
import io
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from dateutil import parser as dateparser

from .repositories import ProductRepository, ReportRepository

logger = logging.getLogger(__name__)

DEFAULT_UNIT = "unidad"
DETAIL_HEADER = ["Producto", "Cantidad", "Unidad"]


def _display_date(value: Optional[str]) -> str:
    if not value:
        return ""
    return dateparser.parse(value).strftime("%d/%m/%Y")


class ExportService:
    """Builds CSV text for reports and writes it to files."""

    def __init__(self, reports: ReportRepository, products: ProductRepository):
        self.reports = reports
        self.products = products

    def _unit_for(self, product_name: str) -> str:
        product = self.products.find_by_name(product_name)
        return product["unit"] if product else DEFAULT_UNIT

    def _write_details(self, writer, details: Iterable[dict]) -> None:
        writer.writerow(DETAIL_HEADER)
        for detail in details:
            writer.writerow([detail["product_name"], detail["quantity"], self._unit_for(detail["product_name"])])

    def generate_report_csv(self, report_id: int) -> str:
        """
        Raises:
            NotFoundError: the report does not exist
        """
        data = self.reports.get_with_details(report_id)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["Reporte de Inventario"])
        writer.writerow([f"Fecha: {_display_date(data.report['date'])}"])
        writer.writerow([f"ID Reporte: {data.report['id']}"])
        writer.writerow([])
        self._write_details(writer, data.details)
        return buffer.getvalue()

    def generate_multiple_reports_csv(self, report_ids: List[int]) -> str:
        """Missing report ids are skipped."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["Exportación de Múltiples Reportes"])
        writer.writerow([f"Fecha de exportación: {datetime.now().strftime('%d/%m/%Y')}"])
        writer.writerow([f"Total de reportes: {len(report_ids)}"])
        writer.writerow([])

        for report_id in report_ids:
            data = self.reports.find_by_id_with_details(report_id)
            if data is None:
                continue
            writer.writerow([f"--- Reporte del {_display_date(data.report['date'])} (ID: {report_id}) ---"])
            self._write_details(writer, data.details)
            writer.writerow([])

        return buffer.getvalue()

    def generate_product_history_csv(self, product_name: str) -> str:
        history = self.reports.table.raw_query(
            """
            SELECT r.date, rd.quantity
            FROM report_details rd
            JOIN reports r ON r.id = rd.report_id
            WHERE rd.product_name = ?
            ORDER BY r.date DESC, r.id DESC
            """,
            (product_name,),
        )

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow([f"Historial de {product_name}"])
        writer.writerow([f"Unidad: {self._unit_for(product_name)}"])
        writer.writerow([f"Fecha de exportación: {datetime.now().strftime('%d/%m/%Y')}"])
        writer.writerow([])
        writer.writerow(["Fecha", "Cantidad"])
        for record in history:
            writer.writerow([_display_date(record["date"]), record["quantity"]])
        writer.writerow([])
        writer.writerow(["Total histórico", sum(record["quantity"] for record in history)])
        return buffer.getvalue()

    def export_report_to_file(self, report_id: int, output_dir: Path) -> Path:
        """Write one report to output_dir/reporte_<id>_<timestamp>.csv."""
        content = self.generate_report_csv(report_id)
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / f"reporte_{report_id}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
        with open(path, "w", newline="", encoding="utf-8") as f:
            f.write(content)
        logger.info("Report %d exported to %s", report_id, path)
        return path
