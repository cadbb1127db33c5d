from types import SimpleNamespace

from aggregation import (
    UNCATEGORIZED,
    BudgetStatus,
    balance,
    budget_utilization,
    group_by_category,
    sum_field,
)


def test_sum_field_handles_empty_and_missing_values() -> None:
    assert sum_field([], "total_cents") == 0
    records = [{"total_cents": 100}, {"total_cents": None}, {}, {"total_cents": 250}]
    assert sum_field(records, "total_cents") == 350


def test_sum_field_reads_attributes() -> None:
    records = [SimpleNamespace(amount_cents=1000), SimpleNamespace(amount_cents=1)]
    assert sum_field(records, "amount_cents") == 1001


def test_balance_is_funds_minus_expenses_without_floor() -> None:
    funds = [{"amount_cents": 50000}]
    expenses = [{"total_cents": 30000}, {"total_cents": 25000}]
    assert balance(funds, expenses) == -5000
    assert balance([], []) == 0
    assert balance(funds, []) == 50000


def test_group_by_category_partitions_every_expense() -> None:
    groceries = SimpleNamespace(name="Groceries")
    expenses = [
        SimpleNamespace(category=groceries, total_cents=12000),
        SimpleNamespace(category=None, total_cents=500),
        SimpleNamespace(category=groceries, total_cents=3000),
        {"category": "Transport", "total_cents": 2000},
        {"category": "", "total_cents": 100},
    ]
    breakdown = group_by_category(expenses)
    assert breakdown == {
        "Groceries": 15000,
        UNCATEGORIZED: 600,
        "Transport": 2000,
    }
    assert sum(breakdown.values()) == sum_field(expenses, "total_cents")


def test_budget_utilization_thresholds() -> None:
    assert budget_utilization(10000, 0).status == BudgetStatus.ok
    assert budget_utilization(10000, 7999).status == BudgetStatus.ok
    assert budget_utilization(10000, 8000).status == BudgetStatus.near
    assert budget_utilization(10000, 9999).status == BudgetStatus.near
    assert budget_utilization(10000, 10000).status == BudgetStatus.over
    assert budget_utilization(10000, 15000).status == BudgetStatus.over

    util = budget_utilization(20000, 5000)
    assert util.percent == 25
    assert util.remaining_cents == 15000


def test_budget_utilization_non_positive_limit_is_over_without_percent() -> None:
    for limit in (0, -100):
        util = budget_utilization(limit, 0)
        assert util.status == BudgetStatus.over
        assert util.percent is None
