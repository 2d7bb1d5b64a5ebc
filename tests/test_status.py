from datetime import date, datetime, timedelta

import pytest

from cert_registry.models import CertificateStatus
from cert_registry.status import days_until_expiration, derive_status

NOW = datetime(2025, 6, 1, 12, 0)


def test_boundaries_favour_the_worse_state() -> None:
    assert derive_status(NOW + timedelta(days=30), NOW) is CertificateStatus.EXPIRING_SOON
    assert derive_status(NOW + timedelta(days=30, milliseconds=1), NOW) is CertificateStatus.ACTIVE
    assert derive_status(NOW, NOW) is CertificateStatus.EXPIRED


def test_regular_ranges() -> None:
    assert derive_status(NOW - timedelta(seconds=1), NOW) is CertificateStatus.EXPIRED
    assert derive_status(NOW + timedelta(days=1), NOW) is CertificateStatus.EXPIRING_SOON
    assert derive_status(NOW + timedelta(days=365), NOW) is CertificateStatus.ACTIVE


def test_dates_are_read_as_midnight() -> None:
    # 2025-07-01 00:00 is 29.5 days after NOW
    assert derive_status(date(2025, 7, 1), NOW) is CertificateStatus.EXPIRING_SOON
    assert derive_status("2025-07-02", NOW) is CertificateStatus.ACTIVE


def test_missing_expiration_counts_as_expired() -> None:
    assert derive_status(None, NOW) is CertificateStatus.EXPIRED


def test_now_is_required() -> None:
    with pytest.raises(ValueError):
        derive_status(NOW, None)


def test_custom_window() -> None:
    soon = NOW + timedelta(days=10)
    assert derive_status(soon, NOW, window=timedelta(days=7)) is CertificateStatus.ACTIVE


def test_days_until_expiration_rounds_up() -> None:
    assert days_until_expiration(NOW + timedelta(hours=1), NOW) == 1
    assert days_until_expiration(NOW + timedelta(days=30), NOW) == 30
    assert days_until_expiration(NOW - timedelta(days=1), NOW) == -1
    assert days_until_expiration(NOW - timedelta(hours=12), NOW) == 0
    assert days_until_expiration(None, NOW) is None
