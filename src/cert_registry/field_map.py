from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence
import unicodedata as _ud

import yaml

from .dates import is_blank

# Canonical import columns, in template order
IMPORT_COLUMNS = [
    "name",
    "position_title",
    "department",
    "certificate_type",
    "issue_date",
    "expiry_date",
    "email",
]
REQUIRED_IMPORT_COLUMNS = ("name", "position_title", "certificate_type")

# Spreadsheet header each canonical column is written back as
TEMPLATE_HEADERS = {
    "name": "Name",
    "position_title": "Position Title",
    "department": "Department",
    "certificate_type": "Type",
    "issue_date": "Booking Date",
    "expiry_date": "Expiry Date",
    "email": "Company",
}

# Historical field names for the same concept on stored certificate records,
# consulted in priority order.
CERT_TYPE_ALIASES: Sequence[str] = (
    "certificate_type_name",
    "certificateTypeName",
    "certType",
    "CertType",
    "certificateName",
    "certificateType",
    "cert_type",
)
STAFF_NAME_ALIASES: Sequence[str] = (
    "staff_member_name",
    "staffMemberName",
    "staffMember",
    "staff_member",
)
POSITION_REF_ALIASES: Sequence[str] = ("position_id", "positionId", "position")
REQUIREMENT_TYPE_ALIASES: Sequence[str] = (
    "certificate_type_name",
    "certificateTypeName",
    "certificateType",
    "certType",
)
VALIDITY_ALIASES: Sequence[str] = (
    "validity_period_months",
    "validityPeriodMonths",
    "validityPeriod",
)


def first_present(record: Mapping[str, Any], aliases: Iterable[str]) -> Optional[Any]:
    """Return the first non-blank value among ``aliases`` (in order), else None."""
    for key in aliases:
        if key in record:
            value = record[key]
            if not is_blank(value):
                return value
    return None


def certificate_type_of(record: Mapping[str, Any]) -> Optional[str]:
    value = first_present(record, CERT_TYPE_ALIASES)
    return None if value is None else str(value).strip()


def staff_name_of(record: Mapping[str, Any]) -> Optional[str]:
    value = first_present(record, STAFF_NAME_ALIASES)
    return None if value is None else str(value)


def _norm_token(s: str) -> str:
    if s is None:
        return ""
    t = _ud.normalize("NFKC", str(s)).strip()
    if t.lower().startswith("unnamed:"):
        return t.lower()
    for l, r in [("(", ")"), ("[", "]"), ("{", "}")]:
        while l in t and r in t and t.index(l) < t.index(r):
            li, ri = t.index(l), t.index(r)
            t = (t[:li] + t[ri + 1 :]).strip()
    return re.sub(r"\s+", " ", t).casefold()


def _project_root(start: Path) -> Path:
    cur = start
    for _ in range(6):
        if (cur / "pyproject.toml").exists() or (cur / ".git").exists():
            return cur
        cur = cur.parent
    return start


def _ensure_str_list(x) -> Iterable[str]:
    if isinstance(x, (list, tuple, set)):
        return [str(i) if i is not None else "" for i in x]
    return [str(x) if x is not None else ""]


def _load_yaml_overrides(path: Optional[Path] = None) -> Dict[str, list[str]]:
    if path is None:
        here = Path(__file__).resolve()
        path = _project_root(here.parent.parent) / "docs" / "field_map.yaml"
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        return {}
    out: Dict[str, list[str]] = {}
    for canon, tokens in data.items():
        if isinstance(tokens, list):
            out[str(canon)] = list(_ensure_str_list(tokens))
    return out


@lru_cache(maxsize=1)
def get_header_map() -> Dict[str, str]:
    """Reverse map of spreadsheet headers -> canonical import keys.

    Built-in synonyms can be extended with ``docs/field_map.yaml``
    (``canonical_key: [header, ...]``). Lookups should go through
    ``_norm_token`` so case, width and parenthesised notes don't matter.
    """
    base: Dict[str, list[str]] = {
        "name": ["Name", "Employee", "Employee Name", "Staff Member", "Full Name"],
        "position_title": ["Position Title", "Position", "Job Title", "Role"],
        "department": ["Department", "Dept", "Division"],
        "certificate_type": ["Type", "Certificate Type", "Cert Type", "Certificate", "Training"],
        "issue_date": ["Booking Date", "Issue Date", "Training Date", "Completed"],
        "expiry_date": ["Expiry Date", "Expiration Date", "Expires", "Valid Until"],
        "email": ["Company", "Email", "E-mail", "Company Email"],
    }

    try:
        overrides = _load_yaml_overrides()
    except (OSError, yaml.YAMLError):
        overrides = {}
    for canon, tokens in overrides.items():
        base.setdefault(canon, [])
        base[canon] = list(dict.fromkeys([*base[canon], *tokens]))

    rev: Dict[str, str] = {}
    for canon, tokens in base.items():
        for tok in [canon, *tokens]:
            if not tok:
                continue
            rev[_norm_token(tok)] = canon
    return rev


def canonical_header(label: Any) -> Optional[str]:
    return get_header_map().get(_norm_token(label))


def canonicalize_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Re-key one raw row to canonical import keys; unknown columns are dropped.

    When two headers map to the same key, the first non-blank value wins.
    """
    out: Dict[str, Any] = {}
    for label, value in row.items():
        canon = canonical_header(label)
        if canon is None:
            continue
        if canon in out and not is_blank(out[canon]):
            continue
        out[canon] = value
    return out


__all__ = [
    "IMPORT_COLUMNS",
    "REQUIRED_IMPORT_COLUMNS",
    "TEMPLATE_HEADERS",
    "CERT_TYPE_ALIASES",
    "STAFF_NAME_ALIASES",
    "POSITION_REF_ALIASES",
    "REQUIREMENT_TYPE_ALIASES",
    "VALIDITY_ALIASES",
    "first_present",
    "certificate_type_of",
    "staff_name_of",
    "get_header_map",
    "canonical_header",
    "canonicalize_row",
]
