from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional, Union


class PeriodKind(str, Enum):
    daily = "daily"
    monthly = "monthly"
    custom = "custom"


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_bounds(day: date) -> tuple[date, date]:
    first = day.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return first, next_month - date.resolution


def _as_date(value: Union[date, str]) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip())


def resolve_period(
    kind: Union[PeriodKind, str, None],
    start: Union[date, str, None] = None,
    end: Union[date, str, None] = None,
    *,
    today: Optional[date] = None,
) -> Period:
    """Turn a report period request into concrete inclusive bounds.

    ``custom`` bounds are used verbatim; an end before the start is passed
    through untouched and simply matches nothing.
    """
    today = today or date.today()
    kind = PeriodKind(kind or PeriodKind.daily)

    if kind == PeriodKind.daily:
        return Period(kind.value, today, today)
    if kind == PeriodKind.monthly:
        first, last = month_bounds(today)
        return Period(kind.value, first, last)

    if not start or not end:
        raise ValueError("Custom period requires start and end dates")
    return Period(kind.value, _as_date(start), _as_date(end))
