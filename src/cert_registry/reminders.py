from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from hashlib import sha1
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

import pandas as pd

from .dates import to_datetime
from .models import Certificate, CertificateStatus, natural_key
from .status import days_until_expiration, derive_status


@dataclass
class DueConfig:
    window_days: int = 60  # include certificates expiring within N days
    include_overdue: bool = True
    first_notice_days: int = 60
    second_notice_days: int = 30
    final_notice_days: int = 7


@dataclass(frozen=True)
class ReminderRecord:
    """What a notification sender needs for one certificate."""

    certificate_id: str
    staff_member_name: str
    certificate_type_name: str
    expiration_date: datetime
    days_until_expiration: int


def latest_only(certs: Iterable[Certificate]) -> List[Certificate]:
    """Drop certificates that a renewal (or a later one of the same type) replaced."""
    certs = list(certs)
    superseded = {c.supersedes for c in certs if c.supersedes}
    best: dict[tuple[str, str], Certificate] = {}
    for cert in certs:
        if cert.id in superseded:
            continue
        key = (cert.staff_member_name, natural_key(cert.certificate_type_name))
        cur = best.get(key)
        if cur is None or cert.expiration_date > cur.expiration_date:
            best[key] = cert
    return list(best.values())


def reminder_records(
    certs: Iterable[Certificate], now: datetime, cfg: DueConfig | None = None
) -> Iterator[ReminderRecord]:
    """Certificates expiring within ``cfg.window_days`` of ``now`` (and expired ones unless disabled)."""
    cfg = cfg or DueConfig()
    ref = to_datetime(now)
    if ref is None:
        raise ValueError("now is required")
    for cert in certs:
        days = days_until_expiration(cert.expiration_date, ref)
        if days is None or days > cfg.window_days:
            continue
        expired = derive_status(cert.expiration_date, ref) is CertificateStatus.EXPIRED
        if expired and not cfg.include_overdue:
            continue
        yield ReminderRecord(
            certificate_id=cert.id,
            staff_member_name=cert.staff_member_name,
            certificate_type_name=cert.certificate_type_name,
            expiration_date=cert.expiration_date,
            days_until_expiration=days,
        )


def certificates_frame(certs: Iterable[Certificate]) -> pd.DataFrame:
    rows = [
        {
            "certificate_id": c.id,
            "name": c.staff_member_name,
            "certificate_type": c.certificate_type_name,
            "issue_date": c.issue_date.date(),
            "expiry_date": c.expiration_date,
        }
        for c in certs
    ]
    return pd.DataFrame(
        rows, columns=["certificate_id", "name", "certificate_type", "issue_date", "expiry_date"]
    )


def _to_date(v) -> Optional[date]:
    dt = to_datetime(v)
    return dt.date() if dt is not None else None


def _project_due(exp: Optional[datetime], now: datetime, cfg: DueConfig) -> tuple[Optional[int], bool, str, str]:
    if exp is None:
        return None, False, "", ""

    days = days_until_expiration(exp, now)
    if derive_status(exp, now) is CertificateStatus.EXPIRED:
        if cfg.include_overdue:
            return days, True, "expired", ""
        return days, False, "", ""
    if days > cfg.window_days:
        return days, False, "", ""

    today = now.date()
    milestones = [
        ("first", exp.date() - timedelta(days=cfg.first_notice_days)),
        ("second", exp.date() - timedelta(days=cfg.second_notice_days)),
        ("final", exp.date() - timedelta(days=cfg.final_notice_days)),
    ]
    for label, dt in milestones:
        if dt >= today:
            return days, True, label, dt.isoformat()
    return days, True, "same-day", today.isoformat()


def annotate_due(
    df: pd.DataFrame, as_of: date | datetime | None = None, cfg: DueConfig | None = None
) -> pd.DataFrame:
    """Annotate every row with due metadata without filtering the window.

    Expiry is compared at datetime precision, so a row is "expired" exactly
    when ``derive_status`` would call it Expired. A plain date ``as_of``
    means midnight of that day.
    """
    now = to_datetime(as_of) if as_of is not None else datetime.now()
    cfg = cfg or DueConfig()

    if "expiry_date" not in df.columns:
        raise ValueError("DataFrame must contain 'expiry_date'")

    result = df.copy()
    projected = [_project_due(to_datetime(v), now, cfg) for v in result["expiry_date"].tolist()]

    result["days_to_expiry"] = pd.Series([p[0] for p in projected], index=result.index, dtype="Int64")
    result["notice_stage"] = pd.Series([p[2] for p in projected], index=result.index, dtype="string")
    result["next_notice_date"] = pd.Series([p[3] for p in projected], index=result.index, dtype="string")
    result["due_within_window"] = pd.Series([p[1] for p in projected], index=result.index, dtype="boolean")
    return result


def compute_due(
    df: pd.DataFrame, as_of: date | None = None, cfg: DueConfig | None = None
) -> pd.DataFrame:
    """Return rows with an expiry within window or already overdue."""
    annotated = annotate_due(df, as_of=as_of, cfg=cfg)
    mask = annotated["due_within_window"].fillna(False).astype(bool)
    out = annotated.loc[mask].drop(columns=["due_within_window"])

    sort_cols = [c for c in ("days_to_expiry", "name") if c in out.columns]
    if sort_cols:
        out = out.sort_values(by=sort_cols, kind="stable")
    return out


def _ics_escape(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\n", "\\n")
    )


def write_ics(
    df: pd.DataFrame, out_path: Path, summary_tpl: str = "Certificate expires: {name} ({certificate_type})"
) -> None:
    """Write a minimal ICS calendar with one all-day event per expiry_date.
    summary_tpl can reference columns like {name}, {certificate_type}.
    """
    out_path.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//cert-registry//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
    ]

    for _, row in df.iterrows():
        exp = _to_date(row.get("expiry_date"))
        if not exp:
            continue
        ymd = exp.strftime("%Y%m%d")
        end = (exp + timedelta(days=1)).strftime("%Y%m%d")
        summary = summary_tpl.format(**{k: (str(row[k]) if k in row else "") for k in df.columns})
        summary = _ics_escape(summary)
        uid_src = f"{row.get('certificate_id', '')}-{row.get('name', '')}-{ymd}".encode("utf-8", "ignore")
        uid = sha1(uid_src).hexdigest() + "@cert-registry"
        lines += [
            "BEGIN:VEVENT",
            f"DTSTART;VALUE=DATE:{ymd}",
            f"DTEND;VALUE=DATE:{end}",
            f"SUMMARY:{summary}",
            f"UID:{uid}",
            "TRANSP:TRANSPARENT",
            "END:VEVENT",
        ]

    lines.append("END:VCALENDAR")
    out_path.write_text("\r\n".join(lines), encoding="utf-8")


__all__ = [
    "DueConfig",
    "ReminderRecord",
    "latest_only",
    "reminder_records",
    "certificates_frame",
    "annotate_due",
    "compute_due",
    "write_ics",
]
