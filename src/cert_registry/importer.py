"""Bulk import of certificate rows.

Each row names an employee, a position title, a certificate type and
optionally the department, issue ("Booking") date, expiry date and email
("Company"). Positions, employees and certificate types are resolved by
case-insensitive natural key and created on demand; every valid row then
appends one certificate. A bad row is recorded and skipped, never fatal.
Storage failures stop the batch at the row boundary with
:class:`ImportAborted`, which still carries the statistics gathered so far.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .assignments import add_position, ensure_consistent
from .config import Settings
from .dates import is_blank, parse_import_date
from .errors import CertRegistryError, ReferenceResolutionError, RepositoryError, ValidationError
from .field_map import REQUIRED_IMPORT_COLUMNS, TEMPLATE_HEADERS, canonicalize_row
from .io_excel import list_sheets, read_sheet
from .models import CERTIFICATE_TYPES, CERTIFICATES, EMPLOYEES, POSITIONS, Employee
from .registry import (
    build_certificate,
    clean_label,
    ensure_certificate_type,
    ensure_position,
    position_ids,
)
from .repository import Repository

log = logging.getLogger(__name__)


@dataclass
class RowError:
    row: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"row": self.row, "reason": self.reason}


@dataclass
class RowOutcome:
    row: int
    processed: bool = False
    created_position: bool = False
    created_employee: bool = False
    created_cert_type: bool = False
    certificate_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ImportStats:
    total: int = 0
    processed_count: int = 0
    new_positions: int = 0
    new_employees: int = 0
    new_cert_types: int = 0
    errors: List[RowError] = field(default_factory=list)

    def record(self, outcome: RowOutcome) -> None:
        if outcome.error is not None:
            self.errors.append(RowError(outcome.row, outcome.error))
            return
        self.processed_count += 1
        self.new_positions += int(outcome.created_position)
        self.new_employees += int(outcome.created_employee)
        self.new_cert_types += int(outcome.created_cert_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processedCount": self.processed_count,
            "newPositions": self.new_positions,
            "newEmployees": self.new_employees,
            "newCertTypes": self.new_cert_types,
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class ImportResult:
    message: str
    stats: ImportStats
    outcomes: List[RowOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "stats": self.stats.to_dict()}


class ImportAborted(CertRegistryError):
    """Storage failed mid-batch; rows before ``row`` were fully written."""

    def __init__(self, row: int, stats: ImportStats, cause: Exception) -> None:
        super().__init__(f"import stopped at row {row}: {cause}")
        self.row = row
        self.stats = stats
        self.cause = cause


def _label(column: str) -> str:
    return TEMPLATE_HEADERS.get(column, column)


def _read_date(row: Mapping[str, Any], column: str) -> Optional[date]:
    raw = row.get(column)
    if is_blank(raw):
        return None
    parsed = parse_import_date(raw)
    if parsed is None:
        raise ValidationError(f"invalid {_label(column)}: {raw!r}", field=column, value=raw)
    return parsed


class _Importer:
    def __init__(self, repo: Repository, now: datetime, settings: Settings) -> None:
        self.repo = repo
        self.now = now
        self.settings = settings
        self.valid_positions: Set[str] = position_ids(repo)

    def _employee(
        self, name: str, email: Optional[str], position_id: str
    ) -> Tuple[Employee, bool]:
        record = self.repo.find_by_unique_field(EMPLOYEES, "name", name)
        if record is None:
            employee = Employee(
                name=name, email=email, positions=[position_id], primary_position=position_id
            )
            record, created = self.repo.upsert(
                EMPLOYEES, name, employee.to_record(), overwrite=False
            )
            if created:
                log.info("created employee %s", record["id"])
                return Employee.from_record(record), True

        employee = ensure_consistent(Employee.from_record(record), self.valid_positions)
        if not employee.active:
            employee.active = True
            log.info("reactivated employee %s", employee.id)
        if position_id not in employee.positions:
            employee = add_position(employee, position_id, self.valid_positions)
        if email and not employee.email:
            employee.email = email
        merged = {**record, **employee.to_record()}
        if merged != record:
            self.repo.update(EMPLOYEES, merged)
        return employee, False

    def row(self, raw: Mapping[str, Any], row_no: int) -> RowOutcome:
        outcome = RowOutcome(row=row_no)
        row = canonicalize_row(raw)
        missing = [_label(c) for c in REQUIRED_IMPORT_COLUMNS if is_blank(row.get(c))]
        if missing:
            raise ValidationError(f"missing required field(s): {', '.join(missing)}")

        issue = _read_date(row, "issue_date") or self.now.date()
        expiry = _read_date(row, "expiry_date")
        name = clean_label(row["name"], "employee name", EMPLOYEES)
        title = clean_label(row["position_title"], "position title", POSITIONS)
        type_name = clean_label(row["certificate_type"], "certificate type", CERTIFICATE_TYPES)
        email = None if is_blank(row.get("email")) else str(row["email"]).strip()

        position, outcome.created_position = ensure_position(
            self.repo, title, row.get("department"), settings=self.settings
        )
        self.valid_positions.add(position.id)
        employee, outcome.created_employee = self._employee(name, email, position.id)
        ctype, outcome.created_cert_type = ensure_certificate_type(
            self.repo, type_name, settings=self.settings
        )

        cert = build_certificate(
            employee.name,
            ctype,
            issue,
            expiry,
            self.now,
            position_id=position.id,
            settings=self.settings,
        )
        self.repo.insert(CERTIFICATES, cert.to_record())
        outcome.certificate_id = cert.id
        outcome.processed = True
        return outcome


def import_rows(
    rows: Iterable[Mapping[str, Any]],
    repo: Repository,
    *,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
    row_offset: int = 1,
    row_numbers: Optional[Sequence[int]] = None,
) -> ImportResult:
    """Import rows in order.

    Rows are numbered from ``row_offset`` unless ``row_numbers`` gives the
    number to report for each row (e.g. spreadsheet rows after blanks were
    dropped).
    """
    now = now or datetime.now()
    settings = settings or Settings()
    stats = ImportStats()
    outcomes: List[RowOutcome] = []
    importer = _Importer(repo, now, settings)

    for i, raw in enumerate(rows):
        row_no = row_numbers[i] if row_numbers is not None else row_offset + i
        stats.total += 1
        try:
            outcome = importer.row(raw, row_no)
        except RepositoryError as exc:
            log.error("import aborted at row %d after %d processed rows", row_no, stats.processed_count)
            raise ImportAborted(row_no, stats, exc) from exc
        except (ValidationError, ReferenceResolutionError) as exc:
            outcome = RowOutcome(row=row_no, error=str(exc))
            log.warning("row %d skipped: %s", row_no, exc)
        stats.record(outcome)
        outcomes.append(outcome)

    message = f"Processed {stats.processed_count} of {stats.total} rows"
    if stats.errors:
        message += f" ({len(stats.errors)} with errors)"
    log.info(
        "%s; new positions=%d employees=%d certificate types=%d",
        message,
        stats.new_positions,
        stats.new_employees,
        stats.new_cert_types,
    )
    return ImportResult(message=message, stats=stats, outcomes=outcomes)


def import_excel(
    path: Path | str,
    repo: Repository,
    sheet: str | int | None = None,
    *,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> ImportResult:
    """Import the first (or the named) sheet of an ``.xlsx``/``.xls`` workbook."""
    xls = Path(path)
    if sheet is None:
        sheets = list_sheets(xls)
        if not sheets:
            raise ValidationError(f"{xls} has no sheets")
        sheet = sheets[0]
    df, header_row = read_sheet(xls, sheet)
    log.info("importing %d rows from %s [%s] (header row %s)", len(df), xls.name, sheet, header_row)
    records = df.to_dict(orient="records")
    # 1-based sheet row of each data row; the frame index counts rows below the header
    numbers = [int(header_row or 0) + 2 + int(idx) for idx in df.index]
    return import_rows(records, repo, now=now, settings=settings, row_numbers=numbers)


__all__ = [
    "RowError",
    "RowOutcome",
    "ImportStats",
    "ImportResult",
    "ImportAborted",
    "import_rows",
    "import_excel",
]
