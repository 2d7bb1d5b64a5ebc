from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, List, Literal, Optional, Tuple

import pandas as pd
from openpyxl.comments import Comment
from openpyxl.styles import Alignment, Font, PatternFill

from .field_map import IMPORT_COLUMNS, REQUIRED_IMPORT_COLUMNS, TEMPLATE_HEADERS, canonical_header

if TYPE_CHECKING:
    from .compliance import ComplianceReport

DATA_SHEET = "Training Records"
INSTRUCTIONS_SHEET = "Instructions"

_HEADER_FILL = "EFEFEF"
_REQUIRED_FILL = "FFEB9C"
_COLUMN_WIDTHS = {
    "name": 20,
    "position_title": 20,
    "department": 15,
    "certificate_type": 20,
    "issue_date": 15,
    "expiry_date": 15,
    "email": 30,
}
_HEADER_NOTES = {
    "name": "Required: Full name of the employee",
    "position_title": "Required: Employee's position title",
    "department": "Optional: Department name",
    "certificate_type": "Required: Type of certificate/training",
    "issue_date": "Optional: DD/MM/YYYY (defaults to today)",
    "expiry_date": "Optional: DD/MM/YYYY (calculated if not provided)",
    "email": "Optional: Employee's email address",
}
_EXAMPLE_ROWS = [
    ["John Smith", "Welder", "Fabrication", "First Aid", "15/01/2025", "15/01/2026", "john.smith@company.com"],
    ["Jane Doe", "Project Manager", "Operations", "Fire Safety", "20/02/2025", "20/02/2026", "jane.doe@company.com"],
]
_INSTRUCTIONS = [
    ["Training Certificate Import - Instructions"],
    [],
    ["Required Columns:"],
    ["Name", "Full name of the employee (required)"],
    ["Position Title", "Employee's position (required, will create if it doesn't exist)"],
    ["Type", "Type of certificate/training (required, will create if it doesn't exist)"],
    [],
    ["Optional Columns:"],
    ["Department", "Department the position belongs to (defaults to 'General')"],
    ["Booking Date", "Date training was completed, DD/MM/YYYY or YYYY-MM-DD (defaults to today)"],
    ["Expiry Date", "Date the certificate expires, DD/MM/YYYY or YYYY-MM-DD (calculated if not provided)"],
    ["Company", "Employee's email address"],
    [],
    ["Notes:"],
    ["1. Do not change the column headers"],
    ["2. You can add as many rows as needed"],
    ["3. Yellow cells indicate required fields"],
    ["4. Existing employees will be updated with new certificates"],
    ["5. If expiry date is not provided, it will be calculated based on certificate type"],
]


def _engine_for(path: Path) -> Literal["openpyxl", "xlrd"]:
    suffix = path.suffix.lower()
    if suffix in (".xlsx", ".xlsm", ".xltx", ".xltm"):
        return "openpyxl"
    return "xlrd"


def list_sheets(xls_path: Path) -> List[str]:
    with pd.ExcelFile(xls_path, engine=_engine_for(xls_path)) as xf:
        return list(map(str, xf.sheet_names))


def _detect_header_row(df: pd.DataFrame) -> Optional[int]:
    """First row (of the top 20) holding at least two known import headers."""
    for i in range(min(20, len(df))):
        hits = {canonical_header(v) for v in df.iloc[i].tolist() if pd.notna(v)}
        hits.discard(None)
        if len(hits) >= 2:
            return i
    return None


def read_sheet(
    xls_path: Path, sheet_name: str | int, header_row_override: int | None = None
) -> Tuple[pd.DataFrame, Optional[int]]:
    """Read one sheet as strings/objects with its header row located.

    Returns the frame and the 0-based header row. Fully blank rows are
    dropped but the index is kept, so ``index + header_row + 2`` is the
    1-based sheet row of each record.
    """
    engine = _engine_for(xls_path)
    header_row: Optional[int]
    if header_row_override is not None:
        header_row = header_row_override
    else:
        raw = pd.read_excel(xls_path, sheet_name=sheet_name, header=None, engine=engine)
        header_row = _detect_header_row(raw)
        if header_row is None:
            counts = raw.notna().sum(axis=1)
            nz = counts[counts > 0]
            header_row = int(nz.index.min()) if not nz.empty else 0

    df = pd.read_excel(
        xls_path,
        sheet_name=sheet_name,
        header=header_row,
        dtype="object",
        engine=engine,
    )
    df = df.dropna(axis=1, how="all").dropna(axis=0, how="all")
    df.columns = [str(c).strip() for c in df.columns]
    return df, header_row


def write_import_template(out_path: Path) -> Path:
    """Workbook with the import headers, two example rows and an instructions sheet."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    headers = [TEMPLATE_HEADERS[c] for c in IMPORT_COLUMNS]
    data = pd.DataFrame([*_EXAMPLE_ROWS, [None] * len(headers)], columns=headers)
    with pd.ExcelWriter(out_path, engine="openpyxl") as xw:
        data.to_excel(xw, sheet_name=DATA_SHEET, index=False)
        ws = xw.sheets[DATA_SHEET]
        for idx, column in enumerate(IMPORT_COLUMNS, start=1):
            cell = ws.cell(row=1, column=idx)
            fill = _REQUIRED_FILL if column in REQUIRED_IMPORT_COLUMNS else _HEADER_FILL
            cell.font = Font(bold=True)
            cell.fill = PatternFill(start_color=fill, end_color=fill, fill_type="solid")
            cell.comment = Comment(_HEADER_NOTES[column], "System")
            ws.column_dimensions[cell.column_letter].width = _COLUMN_WIDTHS[column]

        pd.DataFrame(_INSTRUCTIONS).to_excel(
            xw, sheet_name=INSTRUCTIONS_SHEET, index=False, header=False
        )
        wi = xw.sheets[INSTRUCTIONS_SHEET]
        wi.column_dimensions["A"].width = 20
        wi.column_dimensions["B"].width = 60
        wi["A1"].font = Font(bold=True, size=14)
        wi["A1"].alignment = Alignment(horizontal="center")
        for ref in ("A3", "A8", "A14"):
            wi[ref].font = Font(bold=True)
    return out_path


def write_csv(df: pd.DataFrame, out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, index=False, encoding="utf-8-sig")


def write_report_xlsx(report: "ComplianceReport", out_path: Path) -> None:
    """Requirement-level rows, per-position figures and the ranking, one sheet each."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    positions = report.positions_frame()
    ranked_ids = [p.position_id for p in report.positions_needing_attention()]
    attention = positions.set_index("position_id").loc[ranked_ids].reset_index()
    with pd.ExcelWriter(out_path, engine="openpyxl") as xw:
        report.to_frame().to_excel(xw, sheet_name="Requirements", index=False)
        positions.to_excel(xw, sheet_name="Positions", index=False)
        attention.to_excel(xw, sheet_name="Needs Attention", index=False)


__all__ = [
    "DATA_SHEET",
    "INSTRUCTIONS_SHEET",
    "list_sheets",
    "read_sheet",
    "write_import_template",
    "write_csv",
    "write_report_xlsx",
]
