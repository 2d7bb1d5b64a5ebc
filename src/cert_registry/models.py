from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .dates import is_blank, to_datetime
from .field_map import (
    POSITION_REF_ALIASES,
    REQUIREMENT_TYPE_ALIASES,
    VALIDITY_ALIASES,
    certificate_type_of,
    first_present,
    staff_name_of,
)
from .refs import ref_id

# Collection names used by every repository backend
POSITIONS = "positions"
CERTIFICATE_TYPES = "certificate_types"
EMPLOYEES = "employees"
CERTIFICATES = "certificates"
POSITION_REQUIREMENTS = "position_requirements"
COLLECTIONS = (POSITIONS, CERTIFICATE_TYPES, EMPLOYEES, CERTIFICATES, POSITION_REQUIREMENTS)

DEFAULT_DEPARTMENT = "General"
DEFAULT_VALIDITY_MONTHS = 12


class CertificateStatus(str, Enum):
    ACTIVE = "Active"
    EXPIRING_SOON = "Expiring Soon"
    EXPIRED = "Expired"


def new_id() -> str:
    return uuid.uuid4().hex


def _as_bool(value: Any, default: bool = True) -> bool:
    if is_blank(value):
        return default
    if isinstance(value, str):
        return value.strip().lower() not in {"false", "0", "no", "n", "off"}
    return bool(value)


def _as_int(value: Any, default: int) -> int:
    if is_blank(value):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _record_id(record: Mapping[str, Any]) -> str:
    return ref_id(record.get("id") if "id" in record else record.get("_id")) or new_id()


def natural_key(value: Any) -> str:
    """Case-insensitive unique key used for titles, names and type names."""
    return " ".join(str(value or "").split()).casefold()


def requirement_key(position_id: str, certificate_type_name: str) -> str:
    return f"{position_id}|{natural_key(certificate_type_name)}"


@dataclass
class Position:
    title: str
    department: str = DEFAULT_DEPARTMENT
    active: bool = True
    id: str = field(default_factory=new_id)

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "department": self.department, "active": self.active}

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Position":
        dept = record.get("department")
        return cls(
            id=_record_id(record),
            title=str(record.get("title") or ""),
            department=DEFAULT_DEPARTMENT if is_blank(dept) else str(dept),
            active=_as_bool(record.get("active")),
        )


@dataclass
class CertificateType:
    name: str
    validity_period_months: int = DEFAULT_VALIDITY_MONTHS
    description: Optional[str] = None
    active: bool = True
    id: str = field(default_factory=new_id)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "validity_period_months": self.validity_period_months,
            "description": self.description,
            "active": self.active,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "CertificateType":
        desc = record.get("description")
        return cls(
            id=_record_id(record),
            name=str(record.get("name") or ""),
            validity_period_months=_as_int(
                first_present(record, VALIDITY_ALIASES), DEFAULT_VALIDITY_MONTHS
            ),
            description=None if is_blank(desc) else str(desc),
            active=_as_bool(record.get("active")),
        )


@dataclass
class PositionRequirement:
    position_id: str
    certificate_type_name: str
    validity_period_months: int = DEFAULT_VALIDITY_MONTHS
    is_required: bool = True
    active: bool = True
    notes: Optional[str] = None
    id: str = field(default_factory=new_id)

    @property
    def key(self) -> str:
        return requirement_key(self.position_id, self.certificate_type_name)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "position_id": self.position_id,
            "certificate_type_name": self.certificate_type_name,
            "validity_period_months": self.validity_period_months,
            "is_required": self.is_required,
            "active": self.active,
            "notes": self.notes,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "PositionRequirement":
        type_name = first_present(record, REQUIREMENT_TYPE_ALIASES)
        notes = record.get("notes")
        return cls(
            id=_record_id(record),
            position_id=ref_id(first_present(record, POSITION_REF_ALIASES)) or "",
            certificate_type_name="" if type_name is None else str(type_name).strip(),
            validity_period_months=_as_int(
                first_present(record, VALIDITY_ALIASES), DEFAULT_VALIDITY_MONTHS
            ),
            is_required=_as_bool(record.get("is_required", record.get("isRequired"))),
            active=_as_bool(record.get("active")),
            notes=None if is_blank(notes) else str(notes),
        )


@dataclass
class Employee:
    """An employee and the positions they hold.

    ``positions`` and ``primary_position`` are kept as loaded, so legacy
    records holding embedded objects or stale ids survive until the
    normalizer in ``assignments`` repairs them.
    """

    name: str
    email: Optional[str] = None
    positions: List[Any] = field(default_factory=list)
    primary_position: Any = None
    active: bool = True
    id: str = field(default_factory=new_id)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "positions": list(self.positions),
            "primary_position": self.primary_position,
            "active": self.active,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Employee":
        positions = record.get("positions")
        if positions is None and "position" in record:
            # single-position layout predating multi-position employees
            positions = [] if is_blank(record.get("position")) else [record["position"]]
        if isinstance(positions, (str, bytes)) or isinstance(positions, Mapping):
            positions = [positions]
        primary = record.get("primary_position", record.get("primaryPosition"))
        email = record.get("email")
        return cls(
            id=_record_id(record),
            name=str(record.get("name") or ""),
            email=None if is_blank(email) else str(email),
            positions=list(positions or []),
            primary_position=primary,
            active=_as_bool(record.get("active")),
        )


@dataclass
class Certificate:
    staff_member_name: str
    position_id: Optional[str]
    certificate_type_name: str
    issue_date: datetime
    expiration_date: datetime
    status: CertificateStatus = CertificateStatus.ACTIVE
    created_at: Optional[datetime] = None
    supersedes: Optional[str] = None
    id: str = field(default_factory=new_id)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "staff_member_name": self.staff_member_name,
            "position_id": self.position_id,
            "certificate_type_name": self.certificate_type_name,
            "issue_date": _iso(self.issue_date),
            "expiration_date": _iso(self.expiration_date),
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "supersedes": self.supersedes,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Certificate":
        """Load a stored certificate; ``status`` is taken as a stale cache only."""
        raw_status = record.get("status")
        try:
            status = CertificateStatus(raw_status)
        except ValueError:
            status = CertificateStatus.EXPIRED
        expiration = to_datetime(record.get("expiration_date", record.get("expirationDate")))
        issue = to_datetime(record.get("issue_date", record.get("issueDate")))
        return cls(
            id=_record_id(record),
            staff_member_name=staff_name_of(record) or "",
            position_id=ref_id(first_present(record, POSITION_REF_ALIASES)),
            certificate_type_name=certificate_type_of(record) or "",
            issue_date=issue or expiration or datetime.min,
            expiration_date=expiration or datetime.min,
            status=status,
            created_at=to_datetime(record.get("created_at", record.get("createdAt"))),
            supersedes=ref_id(record.get("supersedes")),
        )


__all__ = [
    "POSITIONS",
    "CERTIFICATE_TYPES",
    "EMPLOYEES",
    "CERTIFICATES",
    "POSITION_REQUIREMENTS",
    "COLLECTIONS",
    "DEFAULT_DEPARTMENT",
    "DEFAULT_VALIDITY_MONTHS",
    "CertificateStatus",
    "Position",
    "CertificateType",
    "PositionRequirement",
    "Employee",
    "Certificate",
    "new_id",
    "natural_key",
    "requirement_key",
]
