from datetime import date

import pytest

from periods import PeriodKind, month_bounds, resolve_period


def test_daily_is_today_only() -> None:
    period = resolve_period("daily", today=date(2025, 3, 9))
    assert (period.start, period.end) == (date(2025, 3, 9), date(2025, 3, 9))


def test_monthly_covers_leap_february() -> None:
    period = resolve_period(PeriodKind.monthly, today=date(2024, 2, 15))
    assert period.start == date(2024, 2, 1)
    assert period.end == date(2024, 2, 29)


def test_month_bounds_wraps_december() -> None:
    assert month_bounds(date(2025, 12, 31)) == (date(2025, 12, 1), date(2025, 12, 31))


def test_custom_uses_bounds_verbatim_even_when_reversed() -> None:
    period = resolve_period("custom", "2025-05-10", "2025-05-01")
    assert period.slug == "custom"
    assert period.start == date(2025, 5, 10)
    assert period.end == date(2025, 5, 1)


@pytest.mark.parametrize("start,end", [(None, "2025-01-31"), ("2025-01-01", None)])
def test_custom_requires_both_bounds(start, end) -> None:
    with pytest.raises(ValueError, match="requires start and end"):
        resolve_period("custom", start, end)


def test_unknown_kind_is_rejected() -> None:
    with pytest.raises(ValueError):
        resolve_period("weekly")


def test_missing_kind_defaults_to_daily() -> None:
    assert resolve_period(None, today=date(2025, 1, 2)).slug == "daily"
