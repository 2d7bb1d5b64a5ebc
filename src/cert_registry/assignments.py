"""Employee <-> position assignment rules.

Every stored employee must satisfy:

* ``positions`` holds plain position ids, with no duplicates and none pointing
  at a position that does not exist;
* ``primary_position`` is a member of ``positions``, or None when the list is
  empty.

:func:`normalize_employee` repairs a record towards that shape and reports
what it changed; :func:`repair_employees` runs it over a whole repository.
The mutation helpers (``add_position`` and friends) go through the same
normalizer so the rules are enforced in one place.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field, replace
from typing import Any, Collection, Dict, List, Optional, Tuple

from .errors import CertRegistryError, InvariantViolation, RepositoryError, ValidationError
from .models import EMPLOYEES, POSITIONS, Employee, Position
from .refs import Unresolvable, resolve_ref
from .repository import Repository

log = logging.getLogger(__name__)


@dataclass
class ChangeReport:
    employee_id: str
    positions_removed: List[str] = field(default_factory=list)
    positions_added: List[str] = field(default_factory=list)
    primary_changed: bool = False
    dropped_refs: List[Unresolvable] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    # set when the id list changed shape (object -> id, duplicate removed)
    rewritten: bool = False

    @property
    def changed(self) -> bool:
        return bool(
            self.positions_removed
            or self.positions_added
            or self.primary_changed
            or self.dropped_refs
            or self.rewritten
        )


@dataclass
class FixSummary:
    fixed: int = 0
    skipped: int = 0
    errors: int = 0
    reports: List[ChangeReport] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, int]:
        return {"fixed": self.fixed, "skipped": self.skipped, "errors": self.errors}


def normalize_employee(
    employee: Employee,
    valid_position_ids: Collection[str],
    fallback_position_id: Optional[str] = None,
) -> Tuple[Employee, ChangeReport]:
    """Return a repaired copy of ``employee`` and a report of the repairs.

    The input is not modified. Running the result through again reports no
    changes.
    """
    report = ChangeReport(employee_id=employee.id)
    valid = set(valid_position_ids)

    raw_positions = employee.positions
    if not isinstance(raw_positions, list):
        raw_positions = [] if raw_positions is None else [raw_positions]
        report.rewritten = True

    coerced: List[str] = []
    for item in raw_positions:
        ref = resolve_ref(item)
        if isinstance(ref, Unresolvable):
            report.dropped_refs.append(ref)
            log.info("employee %s: dropping position ref (%s)", employee.id, ref.reason)
            continue
        if ref != item:
            report.rewritten = True
        coerced.append(ref)

    deduped = list(dict.fromkeys(coerced))
    if len(deduped) != len(coerced):
        report.rewritten = True

    positions: List[str] = []
    for pid in deduped:
        if pid in valid:
            positions.append(pid)
        else:
            report.positions_removed.append(pid)
            log.info("employee %s: removing unknown position %s", employee.id, pid)

    if not positions:
        if fallback_position_id is not None and fallback_position_id in valid:
            positions.append(fallback_position_id)
            report.positions_added.append(fallback_position_id)
            log.info("employee %s: assigned fallback position %s", employee.id, fallback_position_id)
        else:
            msg = f"employee {employee.id} has no positions and no fallback position exists"
            report.warnings.append(msg)
            log.warning(msg)

    primary_ref = resolve_ref(employee.primary_position)
    primary = primary_ref if isinstance(primary_ref, str) else None
    if primary not in positions:
        primary = positions[0] if positions else None
    if primary != employee.primary_position:
        report.primary_changed = True

    fixed = replace(employee, positions=positions, primary_position=primary)
    return fixed, report


def check_invariants(employee: Employee, valid_position_ids: Collection[str]) -> List[str]:
    """List the rules ``employee`` currently breaks; empty when it is consistent."""
    problems: List[str] = []
    positions = employee.positions if isinstance(employee.positions, list) else None
    if positions is None:
        return ["positions is not a list"]
    valid = set(valid_position_ids)
    seen = set()
    for item in positions:
        if not isinstance(item, str):
            problems.append(f"position entry {item!r} is not a plain id")
            continue
        if item in seen:
            problems.append(f"position {item} assigned twice")
        seen.add(item)
        if item not in valid:
            problems.append(f"position {item} does not exist")
    primary = employee.primary_position
    if positions and primary not in positions:
        problems.append(f"primary position {primary!r} is not among the assigned positions")
    if not positions and primary is not None:
        problems.append(f"primary position {primary!r} set without any positions")
    return problems


def _heal(
    employee: Employee, valid_position_ids: Collection[str]
) -> Tuple[Employee, ChangeReport]:
    problems = check_invariants(employee, valid_position_ids)
    if problems:
        msg = f"employee {employee.id}: " + "; ".join(problems)
        warnings.warn(msg, InvariantViolation, stacklevel=3)
        log.warning("repairing %s", msg)
    return normalize_employee(employee, valid_position_ids)


def add_position(
    employee: Employee, position_id: Any, valid_position_ids: Collection[str]
) -> Employee:
    """Assign one more position; it becomes primary when none is set."""
    ref = resolve_ref(position_id)
    if isinstance(ref, Unresolvable):
        raise ValidationError(f"invalid position reference: {ref.reason}", field="position", value=position_id)
    if ref not in set(valid_position_ids):
        raise ValidationError(f"position {ref} does not exist", field="position", value=ref)
    current, _ = _heal(employee, valid_position_ids)
    if ref in current.positions:
        raise ValidationError(
            f"employee already has position {ref}", field="position", value=ref
        )
    primary = current.primary_position or ref
    return replace(current, positions=[*current.positions, ref], primary_position=primary)


def remove_position(
    employee: Employee, position_id: Any, valid_position_ids: Collection[str]
) -> Employee:
    """Unassign a position; the primary moves to the first remaining one (or None)."""
    ref = resolve_ref(position_id)
    current, _ = _heal(employee, valid_position_ids)
    if isinstance(ref, Unresolvable) or ref not in current.positions:
        raise ValidationError("employee does not have that position", field="position", value=position_id)
    remaining = [p for p in current.positions if p != ref]
    primary = current.primary_position
    if primary == ref or primary not in remaining:
        primary = remaining[0] if remaining else None
    return replace(current, positions=remaining, primary_position=primary)


def set_primary_position(
    employee: Employee, position_id: Any, valid_position_ids: Collection[str]
) -> Employee:
    ref = resolve_ref(position_id)
    current, _ = _heal(employee, valid_position_ids)
    if isinstance(ref, Unresolvable) or ref not in current.positions:
        raise ValidationError(
            "primary position must be one of the employee's positions",
            field="primary_position",
            value=position_id,
        )
    return replace(current, primary_position=ref)


def ensure_consistent(employee: Employee, valid_position_ids: Collection[str]) -> Employee:
    """Last step before any employee write: self-heal instead of raising."""
    fixed, _ = _heal(employee, valid_position_ids)
    return fixed


def pick_fallback_position(positions: List[Position], strategy: str = "first") -> Optional[str]:
    """Id of the position handed to employees left with none.

    ``first`` takes the first active position in creation order; ``none``
    disables the fallback so such employees only produce a warning.
    """
    if strategy == "none":
        return None
    for pos in positions:
        if pos.active:
            return pos.id
    return None


def repair_employees(repo: Repository, *, fallback: str = "first", dry_run: bool = False) -> FixSummary:
    """Normalize every stored employee; one bad record never stops the run."""
    positions = [Position.from_record(r) for r in repo.find_all(POSITIONS)]
    valid_ids = {p.id for p in positions}
    fallback_id = pick_fallback_position(positions, fallback)
    if fallback_id is None and fallback != "none":
        log.warning("no active positions exist; employees without positions stay empty")

    summary = FixSummary()
    records = repo.find_all(EMPLOYEES)
    log.info("checking %d employees against %d positions", len(records), len(valid_ids))
    for record in records:
        rid = str(record.get("id", "?"))
        try:
            employee = Employee.from_record(record)
            fixed, report = normalize_employee(employee, valid_ids, fallback_id)
            if not report.changed:
                summary.skipped += 1
                continue
            if not dry_run:
                repo.update(EMPLOYEES, {**record, **fixed.to_record()})
            summary.fixed += 1
            summary.reports.append(report)
        except RepositoryError:
            raise
        except (CertRegistryError, TypeError, ValueError, KeyError) as exc:
            summary.errors += 1
            summary.failures.append((rid, str(exc)))
            log.warning("employee %s could not be repaired: %s", rid, exc)
    log.info(
        "position repair done: fixed=%d skipped=%d errors=%d",
        summary.fixed,
        summary.skipped,
        summary.errors,
    )
    return summary


__all__ = [
    "ChangeReport",
    "FixSummary",
    "normalize_employee",
    "check_invariants",
    "add_position",
    "remove_position",
    "set_primary_position",
    "ensure_consistent",
    "pick_fallback_position",
    "repair_employees",
]
