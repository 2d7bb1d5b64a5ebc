"""Setup and record-keeping operations over a :class:`Repository`.

These are the write paths used by the CLI and the bulk import: positions and
certificate types are created on demand by natural key, employees are always
written through the assignment normalizer, and certificates are append-only
(a renewal is a new record pointing back at the one it supersedes).
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .assignments import (
    add_position,
    ensure_consistent,
    remove_position,
    set_primary_position,
)
from .config import Settings
from .dates import add_months, is_blank, to_datetime
from .errors import DuplicateKeyError, ReferenceResolutionError, RepositoryError, ValidationError
from .field_map import CERT_TYPE_ALIASES, STAFF_NAME_ALIASES, certificate_type_of, staff_name_of
from .models import (
    CERTIFICATE_TYPES,
    CERTIFICATES,
    EMPLOYEES,
    POSITION_REQUIREMENTS,
    POSITIONS,
    Certificate,
    CertificateType,
    Employee,
    Position,
    PositionRequirement,
    natural_key,
    requirement_key,
)
from .refs import ref_id
from .repository import Repository
from .status import derive_status

log = logging.getLogger(__name__)


def clean_label(value: Any, what: str, collection: str) -> str:
    """Collapse whitespace; reject labels that cannot serve as a natural key."""
    if is_blank(value):
        raise ReferenceResolutionError(f"{what} is empty", collection=collection, key=value)
    text = " ".join(str(value).split())
    if not any(ch.isalnum() for ch in text):
        raise ReferenceResolutionError(f"malformed {what}: {text!r}", collection=collection, key=value)
    return text


# --- loaders -----------------------------------------------------------------


def load_positions(repo: Repository, *, active_only: bool = False) -> List[Position]:
    records = repo.find_all_active(POSITIONS) if active_only else repo.find_all(POSITIONS)
    return [Position.from_record(r) for r in records]


def load_certificate_types(repo: Repository, *, active_only: bool = False) -> List[CertificateType]:
    records = (
        repo.find_all_active(CERTIFICATE_TYPES) if active_only else repo.find_all(CERTIFICATE_TYPES)
    )
    return [CertificateType.from_record(r) for r in records]


def load_requirements(repo: Repository, *, active_only: bool = False) -> List[PositionRequirement]:
    records = (
        repo.find_all_active(POSITION_REQUIREMENTS)
        if active_only
        else repo.find_all(POSITION_REQUIREMENTS)
    )
    return [PositionRequirement.from_record(r) for r in records]


def load_employees(repo: Repository, *, active_only: bool = False) -> List[Employee]:
    records = repo.find_all_active(EMPLOYEES) if active_only else repo.find_all(EMPLOYEES)
    return [Employee.from_record(r) for r in records]


def load_certificates(repo: Repository) -> List[Certificate]:
    return [Certificate.from_record(r) for r in repo.find_all(CERTIFICATES)]


def position_ids(repo: Repository) -> set[str]:
    return {p.id for p in load_positions(repo)}


def _require(repo: Repository, collection: str, record_id: Any) -> Dict[str, Any]:
    rid = ref_id(record_id)
    record = repo.find_by_id(collection, rid) if rid else None
    if record is None:
        raise ReferenceResolutionError(
            f"no {collection} record with id {record_id!r}", collection=collection, key=record_id
        )
    return record


def _write_unique(repo: Repository, collection: str, record: Dict[str, Any], label: str) -> Dict[str, Any]:
    try:
        return repo.update(collection, record)
    except DuplicateKeyError as exc:
        raise ValidationError(f"{label} already exists", value=exc.natural_key) from exc


def _positive_months(value: Any) -> int:
    months = int(value)
    if months <= 0:
        raise ValidationError("validity period must be positive", field="validity_period_months", value=value)
    return months


# --- positions and certificate types ----------------------------------------


def ensure_position(
    repo: Repository, title: Any, department: Any = None, *, settings: Optional[Settings] = None
) -> Tuple[Position, bool]:
    """Find a position by title (case-insensitive) or create it.

    An existing but inactive position is reactivated.
    """
    settings = settings or Settings()
    title = clean_label(title, "position title", POSITIONS)
    dept = settings.default_department if is_blank(department) else str(department).strip()
    fresh = Position(title=title, department=dept)
    record, created = repo.upsert(POSITIONS, title, fresh.to_record(), overwrite=False)
    position = Position.from_record(record)
    if created:
        log.info("created position %s (%s)", position.id, position.department)
    elif not position.active:
        position.active = True
        repo.update(POSITIONS, {**record, **position.to_record()})
        log.info("reactivated position %s", position.id)
    return position, created


def create_position(
    repo: Repository, title: Any, department: Any = None, *, settings: Optional[Settings] = None
) -> Position:
    title = clean_label(title, "position title", POSITIONS)
    if repo.find_by_unique_field(POSITIONS, "title", title) is not None:
        raise ValidationError(f"position {title!r} already exists", field="title", value=title)
    position, _ = ensure_position(repo, title, department, settings=settings)
    return position


def deactivate_position(repo: Repository, position_id: Any) -> Position:
    record = _require(repo, POSITIONS, position_id)
    record["active"] = False
    repo.update(POSITIONS, record)
    log.info("deactivated position %s", record["id"])
    return Position.from_record(record)


def update_position(
    repo: Repository,
    position_id: Any,
    *,
    title: Any = None,
    department: Any = None,
    settings: Optional[Settings] = None,
) -> Position:
    """Rename a position or move it to another department.

    Requirements and employees point at the id, so nothing else is rewritten.
    """
    record = _require(repo, POSITIONS, position_id)
    position = Position.from_record(record)
    if title is not None:
        position.title = clean_label(title, "position title", POSITIONS)
    if department is not None:
        default = (settings or Settings()).default_department
        position.department = default if is_blank(department) else str(department).strip()
    _write_unique(repo, POSITIONS, {**record, **position.to_record()}, f"position {position.title!r}")
    log.info("updated position %s", position.id)
    return position


def ensure_certificate_type(
    repo: Repository,
    name: Any,
    validity_period_months: Optional[int] = None,
    *,
    settings: Optional[Settings] = None,
) -> Tuple[CertificateType, bool]:
    settings = settings or Settings()
    name = clean_label(name, "certificate type", CERTIFICATE_TYPES)
    months = settings.default_validity_months if validity_period_months is None else int(validity_period_months)
    if months <= 0:
        raise ValidationError("validity period must be positive", field="validity_period_months", value=months)
    fresh = CertificateType(name=name, validity_period_months=months)
    record, created = repo.upsert(CERTIFICATE_TYPES, name, fresh.to_record(), overwrite=False)
    ctype = CertificateType.from_record(record)
    if created:
        log.info("created certificate type %s (%d months)", ctype.id, ctype.validity_period_months)
    return ctype, created


def create_certificate_type(
    repo: Repository,
    name: Any,
    validity_period_months: Optional[int] = None,
    description: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
) -> CertificateType:
    name = clean_label(name, "certificate type", CERTIFICATE_TYPES)
    if repo.find_by_unique_field(CERTIFICATE_TYPES, "name", name) is not None:
        raise ValidationError(f"certificate type {name!r} already exists", field="name", value=name)
    ctype, _ = ensure_certificate_type(repo, name, validity_period_months, settings=settings)
    if description:
        ctype.description = description
        repo.update(CERTIFICATE_TYPES, ctype.to_record())
    return ctype


def deactivate_certificate_type(repo: Repository, type_id: Any) -> CertificateType:
    record = _require(repo, CERTIFICATE_TYPES, type_id)
    record["active"] = False
    repo.update(CERTIFICATE_TYPES, record)
    return CertificateType.from_record(record)


def update_certificate_type(
    repo: Repository,
    type_id: Any,
    *,
    name: Any = None,
    validity_period_months: Optional[int] = None,
    description: Optional[str] = None,
) -> CertificateType:
    """Change a certificate type's name, validity or description.

    Requirements and certificates refer to the type by name, so a rename is
    carried over to both. A rename that would give a position two
    requirements for the same type is refused before anything is written.
    """
    record = _require(repo, CERTIFICATE_TYPES, type_id)
    ctype = CertificateType.from_record(record)
    old_name = ctype.name
    if name is not None:
        ctype.name = clean_label(name, "certificate type", CERTIFICATE_TYPES)
    if validity_period_months is not None:
        ctype.validity_period_months = _positive_months(validity_period_months)
    if description is not None:
        ctype.description = description.strip() or None

    renamed = ctype.name != old_name
    old_key = natural_key(old_name)
    requirements = []
    if renamed:
        stored = [(r, PositionRequirement.from_record(r)) for r in repo.find_all(POSITION_REQUIREMENTS)]
        owners = {req.key: req.id for _, req in stored}
        for r, req in stored:
            if natural_key(req.certificate_type_name) != old_key:
                continue
            owner = owners.get(requirement_key(req.position_id, ctype.name))
            if owner is not None and owner != req.id:
                raise ValidationError(
                    f"position {req.position_id} already requires {ctype.name!r}",
                    field="name",
                    value=ctype.name,
                )
            requirements.append((r, req))

    _write_unique(
        repo, CERTIFICATE_TYPES, {**record, **ctype.to_record()}, f"certificate type {ctype.name!r}"
    )
    if renamed:
        for r, req in requirements:
            req.certificate_type_name = ctype.name
            repo.update(POSITION_REQUIREMENTS, {**r, **req.to_record()})
        certs = 0
        for r in repo.find_all(CERTIFICATES):
            if natural_key(certificate_type_of(r)) == old_key:
                repo.update(CERTIFICATES, {**r, "certificate_type_name": ctype.name})
                certs += 1
        log.info(
            "renamed certificate type %s: %d requirements, %d certificates",
            ctype.id,
            len(requirements),
            certs,
        )
    return ctype


# --- requirements --------------------------------------------------------------


def add_requirement(
    repo: Repository,
    position_id: Any,
    certificate_type_name: Any,
    validity_period_months: Optional[int] = None,
    *,
    is_required: bool = True,
    notes: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> PositionRequirement:
    """Attach a certificate type to a position.

    At most one requirement exists per position and (case-insensitive) type
    name; adding an already active pair is a ValidationError, adding a
    deactivated one reactivates it with the new values.
    """
    position = Position.from_record(_require(repo, POSITIONS, position_id))
    type_name = clean_label(certificate_type_name, "certificate type", POSITION_REQUIREMENTS)
    ctype = repo.find_by_unique_field(CERTIFICATE_TYPES, "name", type_name)
    if validity_period_months is None:
        if ctype is not None:
            validity_period_months = CertificateType.from_record(ctype).validity_period_months
        else:
            validity_period_months = (settings or Settings()).default_validity_months

    requirement = PositionRequirement(
        position_id=position.id,
        certificate_type_name=type_name,
        validity_period_months=int(validity_period_months),
        is_required=is_required,
        notes=notes,
    )
    key = requirement_key(position.id, type_name)
    record, created = repo.upsert(POSITION_REQUIREMENTS, key, requirement.to_record(), overwrite=False)
    if created:
        log.info("added requirement %s to position %s", record["id"], position.id)
        return PositionRequirement.from_record(record)

    existing = PositionRequirement.from_record(record)
    if existing.active:
        raise ValidationError(
            f"position {position.title!r} already requires {type_name!r}",
            field="certificate_type_name",
            value=type_name,
        )
    requirement.id = existing.id
    repo.update(POSITION_REQUIREMENTS, {**record, **requirement.to_record()})
    log.info("reactivated requirement %s", existing.id)
    return requirement


def deactivate_requirement(repo: Repository, requirement_id: Any) -> PositionRequirement:
    record = _require(repo, POSITION_REQUIREMENTS, requirement_id)
    record["active"] = False
    repo.update(POSITION_REQUIREMENTS, record)
    return PositionRequirement.from_record(record)


def update_requirement(
    repo: Repository,
    requirement_id: Any,
    *,
    certificate_type_name: Any = None,
    validity_period_months: Optional[int] = None,
    is_required: Optional[bool] = None,
    notes: Optional[str] = None,
) -> PositionRequirement:
    record = _require(repo, POSITION_REQUIREMENTS, requirement_id)
    requirement = PositionRequirement.from_record(record)
    if certificate_type_name is not None:
        requirement.certificate_type_name = clean_label(
            certificate_type_name, "certificate type", POSITION_REQUIREMENTS
        )
    if validity_period_months is not None:
        requirement.validity_period_months = _positive_months(validity_period_months)
    if is_required is not None:
        requirement.is_required = bool(is_required)
    if notes is not None:
        requirement.notes = notes.strip() or None
    _write_unique(
        repo,
        POSITION_REQUIREMENTS,
        {**record, **requirement.to_record()},
        f"requirement for {requirement.certificate_type_name!r} on position {requirement.position_id}",
    )
    return requirement


# --- employees -----------------------------------------------------------------


def resolve_employee_by_name(
    repo: Repository, name: Any, *, case_insensitive: bool = False
) -> Optional[Employee]:
    """Employee a certificate belongs to.

    Certificates carry the holder's name rather than an id, so this is the
    single place where a name is turned back into an employee. Exact match
    by default, as compliance matching uses.
    """
    record = repo.find_by_unique_field(EMPLOYEES, "name", name, case_insensitive=case_insensitive)
    return Employee.from_record(record) if record is not None else None


def save_employee(repo: Repository, employee: Employee) -> Employee:
    """Write an employee after running it through the normalizer."""
    clean = ensure_consistent(employee, position_ids(repo))
    existing = repo.find_by_id(EMPLOYEES, clean.id)
    if existing is None:
        repo.insert(EMPLOYEES, clean.to_record())
    else:
        repo.update(EMPLOYEES, {**existing, **clean.to_record()})
    return clean


def create_employee(
    repo: Repository,
    name: Any,
    *,
    email: Optional[str] = None,
    positions: Iterable[Any] = (),
    primary_position: Any = None,
) -> Employee:
    name = clean_label(name, "employee name", EMPLOYEES)
    if repo.find_by_unique_field(EMPLOYEES, "name", name) is not None:
        raise ValidationError(f"employee {name!r} already exists", field="name", value=name)
    valid = position_ids(repo)
    wanted = [ref_id(p) for p in positions]
    missing = [p for p in wanted if p is None or p not in valid]
    if missing:
        raise ReferenceResolutionError(
            f"unknown positions: {', '.join(map(str, missing))}", collection=POSITIONS, key=missing
        )
    primary = ref_id(primary_position) if primary_position is not None else None
    if primary is not None and primary not in wanted:
        raise ValidationError(
            "primary position must be one of the employee's positions",
            field="primary_position",
            value=primary_position,
        )
    employee = Employee(
        name=name,
        email=email,
        positions=list(dict.fromkeys(wanted)),
        primary_position=primary or (wanted[0] if wanted else None),
    )
    return save_employee(repo, employee)


def _load_employee(repo: Repository, employee_id: Any) -> Employee:
    return Employee.from_record(_require(repo, EMPLOYEES, employee_id))


def assign_position(repo: Repository, employee_id: Any, position_id: Any) -> Employee:
    employee = _load_employee(repo, employee_id)
    return save_employee(repo, add_position(employee, position_id, position_ids(repo)))


def unassign_position(repo: Repository, employee_id: Any, position_id: Any) -> Employee:
    employee = _load_employee(repo, employee_id)
    return save_employee(repo, remove_position(employee, position_id, position_ids(repo)))


def change_primary_position(repo: Repository, employee_id: Any, position_id: Any) -> Employee:
    employee = _load_employee(repo, employee_id)
    return save_employee(repo, set_primary_position(employee, position_id, position_ids(repo)))


def deactivate_employee(repo: Repository, employee_id: Any) -> Employee:
    employee = _load_employee(repo, employee_id)
    employee.active = False
    return save_employee(repo, employee)


def update_employee(
    repo: Repository, employee_id: Any, *, name: Any = None, email: Optional[str] = None
) -> Employee:
    """Change an employee's name or email.

    Certificates are held by exact name, so a rename moves the certificates
    recorded under the old name along with it.
    """
    employee = _load_employee(repo, employee_id)
    old_name = employee.name
    if name is not None:
        employee.name = clean_label(name, "employee name", EMPLOYEES)
    if email is not None:
        employee.email = email.strip() or None
    try:
        employee = save_employee(repo, employee)
    except DuplicateKeyError as exc:
        raise ValidationError(
            f"employee {employee.name!r} already exists", field="name", value=employee.name
        ) from exc

    if employee.name != old_name:
        moved = 0
        for r in repo.find_all(CERTIFICATES):
            if staff_name_of(r) == old_name:
                repo.update(CERTIFICATES, {**r, "staff_member_name": employee.name})
                moved += 1
        log.info("renamed employee %s; %d certificates follow", employee.id, moved)
    return employee


# --- certificates --------------------------------------------------------------


def build_certificate(
    staff_member_name: str,
    certificate_type: CertificateType,
    issue_date: date | datetime,
    expiration_date: Optional[date | datetime],
    now: datetime,
    *,
    position_id: Optional[str] = None,
    supersedes: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Certificate:
    """New certificate record with its status derived as of ``now``.

    A missing expiration is ``issue_date`` plus the type's validity period.
    """
    settings = settings or Settings()
    issue = to_datetime(issue_date)
    if issue is None:
        raise ValidationError("issue date is required", field="issue_date", value=issue_date)
    if expiration_date is None:
        expiry = to_datetime(add_months(issue.date(), certificate_type.validity_period_months))
    else:
        expiry = to_datetime(expiration_date)
    if expiry is None:
        raise ValidationError("unreadable expiration date", field="expiration_date", value=expiration_date)
    return Certificate(
        staff_member_name=staff_member_name,
        position_id=position_id,
        certificate_type_name=certificate_type.name,
        issue_date=issue,
        expiration_date=expiry,
        status=derive_status(expiry, now, window=settings.expiring_window),
        created_at=now,
        supersedes=supersedes,
    )


def issue_certificate(
    repo: Repository,
    staff_member_name: Any,
    certificate_type_name: Any,
    issue_date: date | datetime,
    expiration_date: Optional[date | datetime] = None,
    *,
    position_id: Any = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> Certificate:
    now = now or datetime.now()
    staff = clean_label(staff_member_name, "staff member name", CERTIFICATES)
    ctype_record = repo.find_by_unique_field(CERTIFICATE_TYPES, "name", certificate_type_name)
    if ctype_record is None:
        raise ReferenceResolutionError(
            f"unknown certificate type {certificate_type_name!r}",
            collection=CERTIFICATE_TYPES,
            key=certificate_type_name,
        )
    pid = None
    if position_id is not None:
        pid = Position.from_record(_require(repo, POSITIONS, position_id)).id
    cert = build_certificate(
        staff,
        CertificateType.from_record(ctype_record),
        issue_date,
        expiration_date,
        now,
        position_id=pid,
        settings=settings,
    )
    repo.insert(CERTIFICATES, cert.to_record())
    return cert


def renew_certificate(
    repo: Repository,
    certificate_id: Any,
    issue_date: date | datetime,
    expiration_date: Optional[date | datetime] = None,
    *,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> Certificate:
    """Record a renewal as a new certificate; the old one is left untouched."""
    now = now or datetime.now()
    old = Certificate.from_record(_require(repo, CERTIFICATES, certificate_id))
    ctype_record = repo.find_by_unique_field(CERTIFICATE_TYPES, "name", old.certificate_type_name)
    ctype = (
        CertificateType.from_record(ctype_record)
        if ctype_record is not None
        else CertificateType(
            name=old.certificate_type_name,
            validity_period_months=(settings or Settings()).default_validity_months,
        )
    )
    cert = build_certificate(
        old.staff_member_name,
        ctype,
        issue_date,
        expiration_date,
        now,
        position_id=old.position_id,
        supersedes=old.id,
        settings=settings,
    )
    repo.insert(CERTIFICATES, cert.to_record())
    log.info("certificate %s renewed as %s", old.id, cert.id)
    return cert


def refresh_statuses(
    repo: Repository, now: datetime, *, settings: Optional[Settings] = None
) -> int:
    """Rewrite the cached status of every certificate; returns how many changed."""
    settings = settings or Settings()
    changed = 0
    for record in repo.find_all(CERTIFICATES):
        cert = Certificate.from_record(record)
        status = derive_status(cert.expiration_date, now, window=settings.expiring_window)
        if record.get("status") == status.value:
            continue
        repo.update(CERTIFICATES, {**record, "status": status.value})
        changed += 1
    log.info("refreshed certificate statuses: %d changed", changed)
    return changed


def migrate_certificate_aliases(repo: Repository, *, dry_run: bool = False) -> int:
    """Rewrite legacy certificate field names to the canonical ones.

    Reads keep resolving the aliases either way; this only tidies storage.
    Returns the number of records that were (or would be) rewritten.
    """
    touched = 0
    legacy_keys = {*CERT_TYPE_ALIASES[1:], *STAFF_NAME_ALIASES[1:]}
    for record in repo.find_all(CERTIFICATES):
        present = legacy_keys.intersection(record)
        if not present:
            continue
        clean = {k: v for k, v in record.items() if k not in legacy_keys}
        clean["certificate_type_name"] = certificate_type_of(record) or ""
        clean["staff_member_name"] = staff_name_of(record) or ""
        touched += 1
        if not dry_run:
            try:
                repo.update(CERTIFICATES, clean)
            except RepositoryError:
                log.error("alias migration stopped at certificate %s", record.get("id"))
                raise
    log.info("certificate alias migration: %d records %s", touched, "to rewrite" if dry_run else "rewritten")
    return touched


__all__ = [
    "clean_label",
    "load_positions",
    "load_certificate_types",
    "load_requirements",
    "load_employees",
    "load_certificates",
    "position_ids",
    "ensure_position",
    "create_position",
    "deactivate_position",
    "update_position",
    "ensure_certificate_type",
    "create_certificate_type",
    "deactivate_certificate_type",
    "update_certificate_type",
    "add_requirement",
    "deactivate_requirement",
    "update_requirement",
    "resolve_employee_by_name",
    "save_employee",
    "create_employee",
    "assign_position",
    "unassign_position",
    "change_primary_position",
    "deactivate_employee",
    "update_employee",
    "build_certificate",
    "issue_certificate",
    "renew_certificate",
    "refresh_statuses",
    "migrate_certificate_aliases",
]
