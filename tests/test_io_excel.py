from __future__ import annotations

from datetime import datetime

import pandas as pd
from openpyxl import Workbook

from cert_registry.compliance import query_compliance
from cert_registry.importer import import_excel
from cert_registry.io_excel import (
    DATA_SHEET,
    INSTRUCTIONS_SHEET,
    list_sheets,
    read_sheet,
    write_import_template,
    write_report_xlsx,
)
from cert_registry.models import CERTIFICATES
from cert_registry.registry import (
    add_requirement,
    create_employee,
    create_position,
    ensure_certificate_type,
    issue_certificate,
)
from cert_registry.repository import MemoryRepository


def test_template_has_headers_examples_and_instructions(tmp_path) -> None:
    out = write_import_template(tmp_path / "t" / "template.xlsx")
    assert list_sheets(out) == [DATA_SHEET, INSTRUCTIONS_SHEET]

    df, header_row = read_sheet(out, DATA_SHEET)
    assert header_row == 0
    assert list(df.columns) == [
        "Name",
        "Position Title",
        "Department",
        "Type",
        "Booking Date",
        "Expiry Date",
        "Company",
    ]
    assert df["Name"].tolist() == ["John Smith", "Jane Doe"]


def test_template_imports_cleanly(tmp_path) -> None:
    out = write_import_template(tmp_path / "template.xlsx")
    repo = MemoryRepository()

    result = import_excel(out, repo, now=datetime(2025, 3, 1))
    assert result.stats.processed_count == 2
    assert result.stats.errors == []
    assert [o.row for o in result.outcomes] == [2, 3]

    certs = {c["staff_member_name"]: c for c in repo.find_all(CERTIFICATES)}
    assert certs["John Smith"]["issue_date"].startswith("2025-01-15")
    assert certs["John Smith"]["expiration_date"].startswith("2026-01-15")


def test_header_row_is_detected_below_a_title(tmp_path) -> None:
    path = tmp_path / "export.xlsx"
    wb = Workbook()
    ws = wb.active
    ws.title = "Export"
    ws.append(["Training export"])
    ws.append(["Generated 2025-03-01"])
    ws.append(["Name", "Position Title", "Type", "Booking Date"])
    ws.append(["Ann Lee", "Welder", "First Aid", "01/02/2025"])
    wb.save(path)

    df, header_row = read_sheet(path, "Export")
    assert header_row == 2
    assert df["Name"].tolist() == ["Ann Lee"]

    result = import_excel(path, MemoryRepository(), now=datetime(2025, 3, 1))
    assert result.stats.processed_count == 1
    assert result.outcomes[0].row == 4


def test_report_workbook_sheets(tmp_path) -> None:
    repo = MemoryRepository()
    welder = create_position(repo, "Welder")
    create_position(repo, "Idle")
    ensure_certificate_type(repo, "First Aid")
    add_requirement(repo, welder.id, "First Aid", 12)
    add_requirement(repo, welder.id, "Forklift", 12)
    create_employee(repo, "Ann", positions=[welder.id])
    issue_certificate(repo, "Ann", "First Aid", datetime(2025, 1, 1), datetime(2026, 1, 1), now=datetime(2025, 1, 1))

    report = query_compliance(repo, now=datetime(2025, 3, 1))
    out = tmp_path / "out" / "report.xlsx"
    write_report_xlsx(report, out)

    sheets = pd.read_excel(out, sheet_name=None)
    assert list(sheets) == ["Requirements", "Positions", "Needs Attention"]
    assert sorted(sheets["Requirements"]["outcome"]) == ["compliant", "missing"]
    assert set(sheets["Positions"]["position_title"]) == {"Welder", "Idle"}
    attention = sheets["Needs Attention"]
    assert attention["position_id"].tolist() == [welder.id]
    assert attention["rate"].tolist() == [0.5]


def test_report_workbook_with_nothing_ranked(tmp_path) -> None:
    report = query_compliance(MemoryRepository(), now=datetime(2025, 3, 1))
    out = tmp_path / "empty.xlsx"
    write_report_xlsx(report, out)

    sheets = pd.read_excel(out, sheet_name=None)
    assert list(sheets) == ["Requirements", "Positions", "Needs Attention"]
    assert sheets["Needs Attention"].empty
    assert "position_id" in sheets["Needs Attention"].columns
