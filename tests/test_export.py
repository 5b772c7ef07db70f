"""
CSV export tests
"""

from datetime import datetime

import pytest

from simplestock.domain.models import TempCount
from simplestock.repositories import NotFoundError


@pytest.fixture
def stocked_app(app):
    app.product_service.create_product("Arroz", "kg")
    app.product_service.create_product("Leche, entera", "litros")
    return app


def test_generate_report_csv(stocked_app):
    report_id = stocked_app.reports.create_with_details(
        [TempCount("Arroz", 2.5), TempCount("Leche, entera", 1.5), TempCount("Producto borrado", 4)],
        report_date=datetime(2024, 3, 15, 10, 30),
    )

    lines = stocked_app.export_service.generate_report_csv(report_id).splitlines()

    assert lines[0] == "Reporte de Inventario"
    assert lines[1] == "Fecha: 15/03/2024"
    assert lines[2] == f"ID Reporte: {report_id}"
    assert "Producto,Cantidad,Unidad" in lines
    assert "Arroz,2.5,kg" in lines
    assert '"Leche, entera",1.5,litros' in lines
    assert "Producto borrado,4.0,unidad" in lines


def test_generate_report_csv_missing_report(stocked_app):
    with pytest.raises(NotFoundError):
        stocked_app.export_service.generate_report_csv(999)


def test_generate_multiple_reports_csv_skips_missing(stocked_app):
    first = stocked_app.reports.create_with_details([TempCount("Arroz", 1)], datetime(2024, 1, 10))
    second = stocked_app.reports.create_with_details([TempCount("Arroz", 2)], datetime(2024, 2, 10))

    content = stocked_app.export_service.generate_multiple_reports_csv([first, 999, second])

    assert "Total de reportes: 3" in content
    assert f"--- Reporte del 10/01/2024 (ID: {first}) ---" in content
    assert f"--- Reporte del 10/02/2024 (ID: {second}) ---" in content
    assert "ID: 999" not in content


def test_generate_product_history_csv(stocked_app):
    stocked_app.reports.create_with_details([TempCount("Arroz", 2.5)], datetime(2024, 1, 10))
    stocked_app.reports.create_with_details([TempCount("Arroz", 1.5)], datetime(2024, 2, 10))

    lines = stocked_app.export_service.generate_product_history_csv("Arroz").splitlines()

    assert lines[0] == "Historial de Arroz"
    assert lines[1] == "Unidad: kg"
    assert lines[4] == "Fecha,Cantidad"
    assert lines[5:7] == ["10/02/2024,1.5", "10/01/2024,2.5"]
    assert lines[-1] == "Total histórico,4.0"


def test_export_report_to_file(stocked_app, tmp_path):
    report_id = stocked_app.reports.create_with_details([TempCount("Arroz", 2.5)])

    path = stocked_app.export_service.export_report_to_file(report_id, tmp_path / "out")

    assert path.parent == tmp_path / "out"
    assert path.read_text(encoding="utf-8").startswith("Reporte de Inventario")
