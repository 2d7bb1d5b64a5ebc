"""Compliance of employees against the certificates their positions require.

The fold runs over a :class:`Snapshot` (everything read up front, then
computed), bottom-up:

requirement instance -> employee x position -> position -> organization

A requirement instance is one required, active :class:`PositionRequirement`
for one active employee holding that (active) position. It is matched against
the certificates carrying the employee's exact name and the requirement's
certificate type; among several matches the latest expiration wins, even when
that one is expired. The instance counts as compliant when the match exists
and is not expired.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from .models import (
    Certificate,
    CertificateStatus,
    Employee,
    Position,
    PositionRequirement,
    natural_key,
)
from .refs import ref_id
from .registry import (
    load_certificates,
    load_employees,
    load_positions,
    load_requirements,
)
from .repository import Repository
from .status import EXPIRING_WINDOW, days_until_expiration, derive_status

log = logging.getLogger(__name__)

COMPLIANT = "compliant"
EXPIRING = "expiring"
EXPIRED = "expired"
MISSING = "missing"

NO_DEPARTMENT = "No Department"
ALL = "all"

_OUTCOME_FOR_STATUS = {
    CertificateStatus.ACTIVE: COMPLIANT,
    CertificateStatus.EXPIRING_SOON: EXPIRING,
    CertificateStatus.EXPIRED: EXPIRED,
}


def _rate(compliant: int, total: int) -> float:
    return compliant / total if total else 0.0


@dataclass
class Snapshot:
    employees: List[Employee] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)
    requirements: List[PositionRequirement] = field(default_factory=list)
    certificates: List[Certificate] = field(default_factory=list)


def load_snapshot(repo: Repository) -> Snapshot:
    return Snapshot(
        employees=load_employees(repo),
        positions=load_positions(repo),
        requirements=load_requirements(repo),
        certificates=load_certificates(repo),
    )


@dataclass
class RequirementCompliance:
    employee_id: str
    employee_name: str
    position_id: str
    position_title: str
    requirement_id: str
    certificate_type_name: str
    outcome: str
    matched_certificate: Optional[Certificate] = None
    days_until_expiration: Optional[int] = None

    @property
    def is_compliant(self) -> bool:
        return self.outcome in (COMPLIANT, EXPIRING)


class _Counts:
    """Shared outcome tallies for the rolled-up levels."""

    total: int
    compliant: int
    expiring: int
    expired: int
    missing: int

    @property
    def rate(self) -> float:
        return _rate(self.compliant, self.total)

    @property
    def rate_percent(self) -> int:
        return round(self.rate * 100)

    def _add(self, records: Iterable[RequirementCompliance]) -> None:
        for rec in records:
            self.total += 1
            if rec.is_compliant:
                self.compliant += 1
            if rec.outcome == EXPIRING:
                self.expiring += 1
            elif rec.outcome == EXPIRED:
                self.expired += 1
            elif rec.outcome == MISSING:
                self.missing += 1


@dataclass
class EmployeePositionCompliance(_Counts):
    employee_id: str
    employee_name: str
    position_id: str
    position_title: str
    department: str
    is_primary: bool
    requirements: List[RequirementCompliance] = field(default_factory=list)
    total: int = 0
    compliant: int = 0
    expiring: int = 0
    expired: int = 0
    missing: int = 0


@dataclass
class PositionCompliance(_Counts):
    position_id: str
    position_title: str
    department: str
    employee_count: int = 0
    total: int = 0
    compliant: int = 0
    expiring: int = 0
    expired: int = 0
    missing: int = 0

    @property
    def ranked(self) -> bool:
        """Only positions with people and requirements get a score."""
        return self.employee_count > 0 and self.total > 0


@dataclass
class OrganizationCompliance(_Counts):
    employee_count: int = 0
    position_count: int = 0
    total: int = 0
    compliant: int = 0
    expiring: int = 0
    expired: int = 0
    missing: int = 0


@dataclass
class ComplianceReport:
    as_of: datetime
    records: List[RequirementCompliance] = field(default_factory=list)
    employees: List[EmployeePositionCompliance] = field(default_factory=list)
    positions: List[PositionCompliance] = field(default_factory=list)
    organization: OrganizationCompliance = field(default_factory=OrganizationCompliance)

    @property
    def rate(self) -> float:
        return self.organization.rate

    def positions_needing_attention(self) -> List[PositionCompliance]:
        return positions_needing_attention(self.positions)

    def to_frame(self) -> pd.DataFrame:
        """One row per requirement instance."""
        rows = []
        for rec in self.records:
            cert = rec.matched_certificate
            rows.append(
                {
                    "employee_id": rec.employee_id,
                    "employee_name": rec.employee_name,
                    "position_id": rec.position_id,
                    "position_title": rec.position_title,
                    "certificate_type_name": rec.certificate_type_name,
                    "outcome": rec.outcome,
                    "is_compliant": rec.is_compliant,
                    "certificate_id": cert.id if cert else None,
                    "issue_date": cert.issue_date.date() if cert else None,
                    "expiry_date": cert.expiration_date.date() if cert else None,
                    "days_until_expiration": rec.days_until_expiration,
                }
            )
        frame = pd.DataFrame(rows, columns=_RECORD_COLUMNS)
        frame["days_until_expiration"] = frame["days_until_expiration"].astype("Int64")
        return frame

    def positions_frame(self) -> pd.DataFrame:
        rows = [
            {
                "position_id": p.position_id,
                "position_title": p.position_title,
                "department": p.department,
                "employee_count": p.employee_count,
                "total": p.total,
                "compliant": p.compliant,
                "expiring": p.expiring,
                "expired": p.expired,
                "missing": p.missing,
                "rate": p.rate,
                "ranked": p.ranked,
            }
            for p in self.positions
        ]
        return pd.DataFrame(rows, columns=_POSITION_COLUMNS)


_RECORD_COLUMNS = [
    "employee_id",
    "employee_name",
    "position_id",
    "position_title",
    "certificate_type_name",
    "outcome",
    "is_compliant",
    "certificate_id",
    "issue_date",
    "expiry_date",
    "days_until_expiration",
]
_POSITION_COLUMNS = [
    "position_id",
    "position_title",
    "department",
    "employee_count",
    "total",
    "compliant",
    "expiring",
    "expired",
    "missing",
    "rate",
    "ranked",
]


def select_certificate(candidates: Iterable[Certificate]) -> Optional[Certificate]:
    """Latest expiration wins; input order does not matter."""
    best: Optional[Certificate] = None
    for cert in candidates:
        if best is None or _sort_key(cert) > _sort_key(best):
            best = cert
    return best


def _sort_key(cert: Certificate) -> Tuple[datetime, datetime, str]:
    return (cert.expiration_date, cert.created_at or datetime.min, cert.id)


def _index_certificates(
    certificates: Iterable[Certificate],
) -> Dict[Tuple[str, str], List[Certificate]]:
    index: Dict[Tuple[str, str], List[Certificate]] = defaultdict(list)
    for cert in certificates:
        if not cert.staff_member_name or not cert.certificate_type_name:
            continue
        index[(cert.staff_member_name, natural_key(cert.certificate_type_name))].append(cert)
    return index


def _employee_position_ids(employee: Employee) -> List[str]:
    ids = [ref_id(p) for p in (employee.positions or [])]
    return list(dict.fromkeys(i for i in ids if i))


def compute_compliance(
    snapshot: Snapshot,
    now: datetime,
    *,
    window: timedelta = EXPIRING_WINDOW,
) -> ComplianceReport:
    """Fold a snapshot into a :class:`ComplianceReport` as of ``now``."""
    positions = {p.id: p for p in snapshot.positions if p.active}
    requirements: Dict[str, List[PositionRequirement]] = defaultdict(list)
    for req in snapshot.requirements:
        if req.active and req.is_required and req.position_id in positions:
            requirements[req.position_id].append(req)
    certificates = _index_certificates(snapshot.certificates)

    report = ComplianceReport(as_of=now)
    holders: Dict[str, int] = defaultdict(int)
    by_position: Dict[str, List[RequirementCompliance]] = defaultdict(list)
    active_employees = [e for e in snapshot.employees if e.active]

    for employee in active_employees:
        primary = ref_id(employee.primary_position)
        for pid in _employee_position_ids(employee):
            position = positions.get(pid)
            if position is None:
                continue
            holders[pid] += 1
            entry = EmployeePositionCompliance(
                employee_id=employee.id,
                employee_name=employee.name,
                position_id=pid,
                position_title=position.title,
                department=position.department or NO_DEPARTMENT,
                is_primary=primary == pid,
            )
            for req in requirements.get(pid, []):
                match = select_certificate(
                    certificates.get((employee.name, natural_key(req.certificate_type_name)), [])
                )
                if match is None:
                    outcome, days = MISSING, None
                else:
                    status = derive_status(match.expiration_date, now, window=window)
                    outcome = _OUTCOME_FOR_STATUS[status]
                    days = days_until_expiration(match.expiration_date, now)
                entry.requirements.append(
                    RequirementCompliance(
                        employee_id=employee.id,
                        employee_name=employee.name,
                        position_id=pid,
                        position_title=position.title,
                        requirement_id=req.id,
                        certificate_type_name=req.certificate_type_name,
                        outcome=outcome,
                        matched_certificate=match,
                        days_until_expiration=days,
                    )
                )
            entry._add(entry.requirements)
            report.employees.append(entry)
            report.records.extend(entry.requirements)
            by_position[pid].extend(entry.requirements)

    for pid, position in positions.items():
        stats = PositionCompliance(
            position_id=pid,
            position_title=position.title,
            department=position.department or NO_DEPARTMENT,
            employee_count=holders.get(pid, 0),
        )
        stats._add(by_position.get(pid, []))
        report.positions.append(stats)

    org = OrganizationCompliance(
        employee_count=len(active_employees),
        position_count=len(positions),
    )
    org._add(report.records)
    report.organization = org
    log.info(
        "compliance as of %s: %d/%d requirement instances compliant across %d employees",
        now.isoformat(),
        org.compliant,
        org.total,
        org.employee_count,
    )
    return report


def positions_needing_attention(positions: Iterable[PositionCompliance]) -> List[PositionCompliance]:
    """Scored positions, worst rate first (ties by title)."""
    ranked = [p for p in positions if p.ranked]
    return sorted(ranked, key=lambda p: (p.rate, natural_key(p.position_title)))


def query_compliance(
    repo: Repository,
    employee_id: str = ALL,
    now: Optional[datetime] = None,
    *,
    window: timedelta = EXPIRING_WINDOW,
) -> ComplianceReport:
    """Compliance for one employee id, or for everyone with ``"all"``.

    An unknown or inactive employee yields an empty report, not an error.
    """
    now = now or datetime.now()
    snapshot = load_snapshot(repo)
    if employee_id != ALL:
        wanted = ref_id(employee_id)
        snapshot.employees = [e for e in snapshot.employees if e.id == wanted]
        if not snapshot.employees:
            log.info("compliance query for unknown employee %s", employee_id)
    return compute_compliance(snapshot, now, window=window)


@dataclass
class CertificateSummary:
    """Certificate counts by derived status, every record included."""

    total: int = 0
    active: int = 0
    expiring_soon: int = 0
    expired: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "active": self.active,
            "expiringSoon": self.expiring_soon,
            "expired": self.expired,
        }


def summarize_certificates(
    certs: Iterable[Certificate], now: datetime, *, window: timedelta = EXPIRING_WINDOW
) -> CertificateSummary:
    summary = CertificateSummary()
    for cert in certs:
        summary.total += 1
        status = derive_status(cert.expiration_date, now, window=window)
        if status is CertificateStatus.EXPIRED:
            summary.expired += 1
        elif status is CertificateStatus.EXPIRING_SOON:
            summary.expiring_soon += 1
        else:
            summary.active += 1
    return summary


def certificate_summary(
    repo: Repository,
    employee_id: str = ALL,
    now: Optional[datetime] = None,
    *,
    window: timedelta = EXPIRING_WINDOW,
) -> CertificateSummary:
    """Status counts for all certificates, or for those one employee holds.

    Certificates belong to an employee by exact name. An unknown employee id
    gives an all-zero summary.
    """
    now = now or datetime.now()
    certs = load_certificates(repo)
    if employee_id != ALL:
        wanted = ref_id(employee_id)
        names = {e.name for e in load_employees(repo) if e.id == wanted}
        certs = [c for c in certs if c.staff_member_name in names]
    return summarize_certificates(certs, now, window=window)


__all__ = [
    "COMPLIANT",
    "EXPIRING",
    "EXPIRED",
    "MISSING",
    "NO_DEPARTMENT",
    "ALL",
    "Snapshot",
    "load_snapshot",
    "RequirementCompliance",
    "EmployeePositionCompliance",
    "PositionCompliance",
    "OrganizationCompliance",
    "ComplianceReport",
    "select_certificate",
    "compute_compliance",
    "positions_needing_attention",
    "query_compliance",
    "CertificateSummary",
    "summarize_certificates",
    "certificate_summary",
]
