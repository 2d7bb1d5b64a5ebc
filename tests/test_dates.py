from datetime import date, datetime, timedelta, timezone

import numpy as np
import pandas as pd

from cert_registry.dates import add_months, format_dmy, is_blank, parse_dmy, parse_import_date, to_datetime


def test_day_first_wins_for_slashed_dates() -> None:
    assert parse_import_date("1/1/2025") == date(2025, 1, 1)
    assert parse_import_date("13/01/2025") == date(2025, 1, 13)
    assert parse_import_date("02/03/2025") == date(2025, 3, 2)
    assert parse_import_date(" 15 / 01 / 2025 ") == date(2025, 1, 15)


def test_parse_dmy_rejects_out_of_range_parts() -> None:
    assert parse_dmy("32/01/2025") is None
    assert parse_dmy("01/13/2025") is None
    assert parse_dmy("01/01/1899") is None
    assert parse_dmy("31/02/2025") is None
    assert parse_dmy("2025-01-15") is None


def test_generic_fallback_covers_iso_and_month_first() -> None:
    assert parse_import_date("2025-01-15") == date(2025, 1, 15)
    # not a valid DD/MM reading, so the generic parser takes it
    assert parse_import_date("01/13/2025") == date(2025, 1, 13)


def test_unreadable_and_blank_values() -> None:
    assert parse_import_date("someday") is None
    assert parse_import_date("") is None
    assert parse_import_date(None) is None
    assert parse_import_date(float("nan")) is None


def test_native_cells_and_excel_serials() -> None:
    assert parse_import_date(datetime(2025, 1, 15, 8, 30)) == date(2025, 1, 15)
    assert parse_import_date(pd.Timestamp("2025-01-15")) == date(2025, 1, 15)
    assert parse_import_date(date(2025, 1, 15)) == date(2025, 1, 15)
    assert parse_import_date(45658) == date(2025, 1, 1)
    assert parse_import_date(-3) is None


def test_is_blank() -> None:
    for value in (None, "", "  ", "nan", "None", "NaT", float("nan"), pd.NaT):
        assert is_blank(value), value
    for value in ("x", 0, False, date(2025, 1, 1)):
        assert not is_blank(value), value


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(date(2025, 1, 15), 12) == date(2026, 1, 15)
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2024, 2, 29), 12) == date(2025, 2, 28)
    assert add_months(datetime(2025, 3, 10, 14, 0), 6) == date(2025, 9, 10)


def test_to_datetime_widens_and_strips_timezone() -> None:
    assert to_datetime(date(2025, 1, 15)) == datetime(2025, 1, 15)
    aware = datetime(2025, 1, 15, 9, 0, tzinfo=timezone(timedelta(hours=9)))
    assert to_datetime(aware) == datetime(2025, 1, 15, 0, 0)
    assert to_datetime("2025-01-15T10:00:00") == datetime(2025, 1, 15, 10, 0)
    assert to_datetime("garbage") is None
    assert to_datetime(None) is None


def test_format_dmy() -> None:
    assert format_dmy(date(2025, 1, 5)) == "05/01/2025"
    assert format_dmy(None) == ""


def test_numpy_scalars_count_as_excel_serials() -> None:
    assert parse_import_date(np.int64(45672)) == date(2025, 1, 15)
    assert parse_import_date(np.float64(45672.0)) == date(2025, 1, 15)


def test_relative_words_are_not_dates() -> None:
    for word in ("today", "now", "Tomorrow", "yesterday"):
        assert parse_import_date(word) is None
