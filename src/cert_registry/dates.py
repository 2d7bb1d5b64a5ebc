from __future__ import annotations

import math
import numbers
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

import pandas as pd

# Spreadsheet serial day 0 (Excel's 1900 leap-year bug included)
_EXCEL_EPOCH = pd.Timestamp("1899-12-30")
_EXCEL_SERIAL_RANGE = (1, 2958465)  # 1900-01-01 .. 9999-12-31

_DMY = re.compile(r"^\s*(\d{1,2})\s*/\s*(\d{1,2})\s*/\s*(\d{4})\s*$")


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if value is pd.NaT:
        return True
    if isinstance(value, str):
        return value.strip().lower() in {"", "nan", "none", "null", "nat", "<na>"}
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def parse_dmy(text: str) -> Optional[date]:
    """Read ``DD/MM/YYYY`` (1- or 2-digit day and month).

    Returns None when the string is not in that shape, when a part is out of
    range (day 1-31, month 1-12, year >= 1900), or when the calendar rejects
    the combination (e.g. 31/02/2025).
    """
    m = _DMY.match(str(text))
    if not m:
        return None
    day, month, year = map(int, m.groups())
    if not (1 <= day <= 31 and 1 <= month <= 12 and year >= 1900):
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _from_excel_serial(value: float) -> Optional[date]:
    lo, hi = _EXCEL_SERIAL_RANGE
    if not (lo <= value <= hi):
        return None
    return (_EXCEL_EPOCH + pd.to_timedelta(int(value), unit="D")).date()


def parse_import_date(value: Any) -> Optional[date]:
    """Dual-format reader used by the bulk import.

    DD/MM/YYYY wins over every other reading, so "1/2/2025" is 1 February.
    Anything else, including a slashed date DD/MM cannot accept, falls back
    to pandas' generic parser (ISO ``YYYY-MM-DD`` and friends). Native
    date/datetime cells and spreadsheet serial numbers are accepted as-is.
    Returns None for blanks, for unparsable text and for text without a
    single digit ("today", "now"), which pandas would otherwise resolve to
    the run date.
    """
    if is_blank(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        return _from_excel_serial(float(value))

    s = str(value).strip()
    dmy = parse_dmy(s)
    if dmy is not None:
        return dmy
    if not any(ch.isdigit() for ch in s):
        return None

    try:
        ts = pd.to_datetime(s, errors="coerce")
    except (TypeError, ValueError, OverflowError):
        return None
    if pd.isna(ts):
        return None
    return ts.date()


def to_datetime(value: Any) -> Optional[datetime]:
    """Coerce a stored date-ish value to a naive datetime (UTC for aware inputs)."""
    if is_blank(value):
        return None
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        ts = pd.to_datetime(str(value), errors="coerce")
    except (TypeError, ValueError, OverflowError):
        return None
    if pd.isna(ts):
        return None
    return to_datetime(ts)


def add_months(start: date, months: int) -> date:
    """Calendar month arithmetic; 31 Jan + 1 month clamps to the end of February."""
    if isinstance(start, datetime):
        start = start.date()
    return (pd.Timestamp(start) + pd.DateOffset(months=int(months))).date()


def format_dmy(value: Any) -> str:
    dt = to_datetime(value)
    if dt is None:
        return ""
    return dt.strftime("%d/%m/%Y")


__all__ = [
    "is_blank",
    "parse_dmy",
    "parse_import_date",
    "to_datetime",
    "add_months",
    "format_dmy",
]
