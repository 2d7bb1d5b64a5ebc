from __future__ import annotations

from datetime import datetime

import pytest

from cert_registry.config import Settings
from cert_registry.errors import RepositoryError
from cert_registry.importer import ImportAborted, import_rows
from cert_registry.models import CERTIFICATE_TYPES, CERTIFICATES, EMPLOYEES, POSITIONS
from cert_registry.registry import create_employee, create_position, deactivate_employee, ensure_certificate_type
from cert_registry.repository import MemoryRepository

NOW = datetime(2025, 3, 1, 9, 0)

JOHN = {
    "Name": "John Smith",
    "Position Title": "Welder",
    "Type": "First Aid",
    "Booking Date": "15/01/2025",
}


class FailingRepository(MemoryRepository):
    """Stops accepting certificates after ``limit`` inserts."""

    def __init__(self, limit: int) -> None:
        super().__init__()
        self.limit = limit
        self.written = 0

    def _insert(self, collection, record, key):
        if collection == CERTIFICATES:
            if self.written >= self.limit:
                raise RepositoryError("disk full")
            self.written += 1
        return super()._insert(collection, record, key)


def test_single_row_creates_everything() -> None:
    repo = MemoryRepository()
    ensure_certificate_type(repo, "First Aid", 12)

    result = import_rows([JOHN], repo, now=NOW)
    stats = result.stats
    assert (stats.processed_count, stats.new_positions, stats.new_employees, stats.new_cert_types) == (1, 1, 1, 0)
    assert result.message == "Processed 1 of 1 rows"

    [position] = repo.find_all(POSITIONS)
    assert position["department"] == "General"
    [employee] = repo.find_all(EMPLOYEES)
    assert employee["positions"] == [position["id"]]
    assert employee["primary_position"] == position["id"]
    [cert] = repo.find_all(CERTIFICATES)
    assert cert["issue_date"].startswith("2025-01-15")
    assert cert["expiration_date"].startswith("2026-01-15")
    assert cert["status"] == "Active"
    assert cert["position_id"] == position["id"]


def test_replay_only_appends_certificates() -> None:
    repo = MemoryRepository()
    first = import_rows([JOHN], repo, now=NOW)
    assert first.stats.new_cert_types == 1

    second = import_rows([dict(JOHN, Name="john smith", **{"Position Title": "WELDER"})], repo, now=NOW)
    assert (second.stats.new_positions, second.stats.new_employees, second.stats.new_cert_types) == (0, 0, 0)

    assert len(repo.find_all(POSITIONS)) == 1
    assert len(repo.find_all(EMPLOYEES)) == 1
    assert len(repo.find_all(CERTIFICATE_TYPES)) == 1
    certs = repo.find_all(CERTIFICATES)
    assert len(certs) == 2
    assert {c["staff_member_name"] for c in certs} == {"John Smith"}


def test_bad_rows_are_reported_and_skipped() -> None:
    repo = MemoryRepository()
    rows = [
        {"Name": "", "Position Title": "Welder", "Type": "First Aid"},
        dict(JOHN, **{"Booking Date": "someday"}),
        {"Name": "!!!", "Position Title": "Welder", "Type": "First Aid"},
        JOHN,
    ]
    result = import_rows(rows, repo, now=NOW, row_offset=2)

    assert result.stats.total == 4
    assert result.stats.processed_count == 1
    assert [e.row for e in result.stats.errors] == [2, 3, 4]
    assert "Name" in result.stats.errors[0].reason
    assert "Booking Date" in result.stats.errors[1].reason
    assert result.message == "Processed 1 of 4 rows (3 with errors)"
    # failed rows left nothing behind
    assert len(repo.find_all(POSITIONS)) == 1
    assert len(repo.find_all(CERTIFICATES)) == 1


def test_dates_default_and_explicit_expiry() -> None:
    repo = MemoryRepository()
    ensure_certificate_type(repo, "Forklift", 24)
    rows = [
        {"Name": "Ann", "Position Title": "Driver", "Type": "Forklift", "Booking Date": "1/1/2025"},
        {"Name": "Bob", "Position Title": "Driver", "Type": "Forklift", "Expiry Date": "13/01/2026"},
        {"Name": "Cy", "Position Title": "Driver", "Type": "Forklift", "Booking Date": datetime(2025, 2, 3)},
    ]
    import_rows(rows, repo, now=NOW)
    certs = {c["staff_member_name"]: c for c in repo.find_all(CERTIFICATES)}

    assert certs["Ann"]["expiration_date"].startswith("2027-01-01")
    assert certs["Bob"]["issue_date"].startswith("2025-03-01")
    assert certs["Bob"]["expiration_date"].startswith("2026-01-13")
    assert certs["Cy"]["issue_date"].startswith("2025-02-03")


def test_status_is_derived_not_copied() -> None:
    repo = MemoryRepository()
    row = dict(JOHN, **{"Booking Date": "01/01/2023", "Status": "Active"})
    import_rows([row], repo, now=NOW)
    [cert] = repo.find_all(CERTIFICATES)
    assert cert["status"] == "Expired"


def test_existing_employee_gains_position_and_is_reactivated() -> None:
    repo = MemoryRepository()
    fitter = create_position(repo, "Fitter")
    emp = create_employee(repo, "John Smith", positions=[fitter.id])
    deactivate_employee(repo, emp.id)

    result = import_rows([dict(JOHN, Company="john@example.com")], repo, now=NOW)
    assert result.stats.new_employees == 0
    assert result.stats.new_positions == 1

    stored = repo.find_by_id(EMPLOYEES, emp.id)
    welder = repo.find_by_unique_field(POSITIONS, "title", "Welder")
    assert stored["active"] is True
    assert stored["positions"] == [fitter.id, welder["id"]]
    assert stored["primary_position"] == fitter.id
    assert stored["email"] == "john@example.com"


def test_canonical_keys_and_settings() -> None:
    repo = MemoryRepository()
    row = {"name": "Ann", "position_title": "Rigger", "certificate_type": "Rigging"}
    settings = Settings(default_department="Lifting", default_validity_months=6)
    import_rows([row], repo, now=NOW, settings=settings)

    assert repo.find_all(POSITIONS)[0]["department"] == "Lifting"
    assert repo.find_all(CERTIFICATE_TYPES)[0]["validity_period_months"] == 6
    assert repo.find_all(CERTIFICATES)[0]["expiration_date"].startswith("2025-09-01")


def test_to_dict_uses_camel_case() -> None:
    result = import_rows([JOHN, {"Name": "x"}], MemoryRepository(), now=NOW)
    payload = result.to_dict()
    assert payload["message"] == "Processed 1 of 2 rows (1 with errors)"
    assert payload["stats"]["processedCount"] == 1
    assert payload["stats"]["newPositions"] == 1
    assert payload["stats"]["newEmployees"] == 1
    assert payload["stats"]["newCertTypes"] == 1
    assert payload["stats"]["errors"][0]["row"] == 2


def test_storage_failure_aborts_with_partial_stats() -> None:
    repo = FailingRepository(limit=1)
    rows = [JOHN, dict(JOHN, Name="Jane Doe"), dict(JOHN, Name="Jim Beam")]

    with pytest.raises(ImportAborted) as info:
        import_rows(rows, repo, now=NOW)

    assert info.value.row == 2
    assert info.value.stats.processed_count == 1
    assert isinstance(info.value.cause, RepositoryError)
    assert len(repo.find_all(CERTIFICATES)) == 1
