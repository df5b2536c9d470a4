from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from escrowline.core.payouts import format_address, report_window
from escrowline.errors import ValidationError

NOW = datetime(2026, 5, 15, 14, 30, tzinfo=UTC)


def test_all_has_no_bounds() -> None:
    assert report_window("all", now=NOW) == (None, None)


def test_daily_starts_at_midnight() -> None:
    start, end = report_window("daily", now=NOW)
    assert start == datetime(2026, 5, 15, tzinfo=UTC)
    assert end == NOW


def test_weekly_and_monthly_windows() -> None:
    assert report_window("weekly", now=NOW)[0] == NOW - timedelta(days=7)
    assert report_window("monthly", now=NOW)[0] == NOW - timedelta(days=30)


def test_custom_window_validation() -> None:
    start = datetime(2026, 5, 1, tzinfo=UTC)
    assert report_window("custom", start=start, now=NOW) == (start, None)
    with pytest.raises(ValidationError):
        report_window("custom", now=NOW)
    with pytest.raises(ValidationError):
        report_window("custom", start=NOW, end=start, now=NOW)
    with pytest.raises(ValidationError):
        report_window("yearly", now=NOW)


def test_format_address_skips_missing_parts() -> None:
    address = {"street": "Av. Corrientes 1234", "city": "Buenos Aires", "country": "AR"}
    assert format_address(address) == "Av. Corrientes 1234, Buenos Aires, AR"
    assert format_address({}) == ""


def test_custom_window_mixes_naive_and_aware_bounds() -> None:
    start, end = report_window(
        "custom",
        start=datetime(2026, 1, 1, tzinfo=UTC),
        end=datetime(2026, 2, 1),
        now=NOW,
    )
    assert start == datetime(2026, 1, 1, tzinfo=UTC)
    assert end == datetime(2026, 2, 1, tzinfo=UTC)

    offset = timezone(timedelta(hours=-3))
    start, _ = report_window("custom", start=datetime(2026, 1, 1, 21, tzinfo=offset), now=NOW)
    assert start == datetime(2026, 1, 2, tzinfo=UTC)

    with pytest.raises(ValidationError):
        report_window("custom", start=datetime(2026, 3, 1), end=datetime(2026, 2, 1, tzinfo=UTC), now=NOW)
