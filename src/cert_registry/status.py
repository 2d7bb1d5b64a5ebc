from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from typing import Optional

from .dates import to_datetime
from .models import CertificateStatus

EXPIRING_WINDOW = timedelta(days=30)


def derive_status(
    expiration: date | datetime | str,
    now: datetime,
    *,
    window: timedelta = EXPIRING_WINDOW,
) -> CertificateStatus:
    """Lifecycle state of a certificate as of ``now``.

    Both bounds are inclusive toward the worse state: expiring exactly at
    ``now`` is Expired, expiring exactly at ``now + window`` is Expiring Soon.
    A missing or unreadable expiration counts as Expired.
    """
    exp = to_datetime(expiration)
    ref = to_datetime(now)
    if ref is None:
        raise ValueError("now is required")
    if exp is None or exp <= ref:
        return CertificateStatus.EXPIRED
    if exp <= ref + window:
        return CertificateStatus.EXPIRING_SOON
    return CertificateStatus.ACTIVE


def days_until_expiration(expiration: date | datetime | str, now: datetime) -> Optional[int]:
    """Whole days left, rounded up; negative once expired."""
    exp = to_datetime(expiration)
    ref = to_datetime(now)
    if exp is None or ref is None:
        return None
    return math.ceil((exp - ref).total_seconds() / 86400)


__all__ = ["EXPIRING_WINDOW", "derive_status", "days_until_expiration"]
