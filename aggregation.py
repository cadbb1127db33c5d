"""Pure aggregation helpers shared by the dashboard, reports and budgets.

Every function here works on records that were already fetched for one user
and one period. Records may be ORM rows or plain mappings; a missing or null
numeric field counts as zero.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

UNCATEGORIZED = "Uncategorized"

NEAR_THRESHOLD_PERCENT = 80
OVER_THRESHOLD_PERCENT = 100


def _value(record: Any, field: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(field)
    return getattr(record, field, None)


def sum_field(records: Iterable[Any], field: str) -> int:
    total = 0
    for record in records:
        total += _value(record, field) or 0
    return total


def category_name(expense: Any) -> str:
    category = _value(expense, "category")
    if category is None:
        return UNCATEGORIZED
    if isinstance(category, str):
        return category or UNCATEGORIZED
    return _value(category, "name") or UNCATEGORIZED


def group_by_category(
    expenses: Iterable[Any], field: str = "total_cents"
) -> dict[str, int]:
    breakdown: dict[str, int] = {}
    for expense in expenses:
        name = category_name(expense)
        breakdown[name] = breakdown.get(name, 0) + (_value(expense, field) or 0)
    return breakdown


def balance(funds: Iterable[Any], expenses: Iterable[Any]) -> int:
    # Negative balances are meaningful (overspending) and are never clamped.
    return sum_field(funds, "amount_cents") - sum_field(expenses, "total_cents")


class BudgetStatus(str, Enum):
    ok = "ok"
    near = "near"
    over = "over"


@dataclass(frozen=True)
class BudgetUtilization:
    limit_cents: int
    spent_cents: int
    percent: Optional[float]
    status: BudgetStatus

    @property
    def remaining_cents(self) -> int:
        return self.limit_cents - self.spent_cents


def budget_utilization(limit_cents: int, spent_cents: int) -> BudgetUtilization:
    if limit_cents <= 0:
        return BudgetUtilization(limit_cents, spent_cents, None, BudgetStatus.over)

    percent = spent_cents / limit_cents * 100
    # Compare on integers so 80% and 100% boundaries are exact.
    if spent_cents * 100 >= limit_cents * OVER_THRESHOLD_PERCENT:
        status = BudgetStatus.over
    elif spent_cents * 100 >= limit_cents * NEAR_THRESHOLD_PERCENT:
        status = BudgetStatus.near
    else:
        status = BudgetStatus.ok
    return BudgetUtilization(limit_cents, spent_cents, percent, status)
