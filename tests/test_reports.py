from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from reports import ReportCache, ReportComposer, ReportGenerationError, report_payload
from schemas import CategoryIn, ExpenseIn, FundIn
from services import CategoryService, EntryFilters, ExpenseService, FundService


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _seed(session: Session, user_id: int = 1) -> None:
    groceries = CategoryService(session, user_id).create(CategoryIn(name="Groceries"))
    FundService(session, user_id).create(
        FundIn(fund_date=date(2025, 6, 1), amount_cents=50000, source_note="Gift")
    )
    expenses = ExpenseService(session, user_id)
    expenses.create(
        ExpenseIn(
            expense_date=date(2025, 6, 1),
            item_name="Rice",
            category_id=groceries.id,
            total_cents=12000,
        )
    )
    expenses.create(
        ExpenseIn(expense_date=date(2025, 6, 1), item_name="Tea", total_cents=1500)
    )
    expenses.create(
        ExpenseIn(expense_date=date(2025, 6, 20), item_name="Soap", total_cents=8000)
    )


def test_daily_report_totals_and_breakdown(tmp_path) -> None:
    with _session() as session:
        _seed(session)
        composer = ReportComposer(session, 1, cache=ReportCache(1, tmp_path))

        report = composer.generate("daily", today=date(2025, 6, 1))

        assert (report.start_date, report.end_date) == (date(2025, 6, 1), date(2025, 6, 1))
        assert report.total_funds == 50000
        assert report.total_expenses == 13500
        assert report.balance == 36500
        assert report.category_breakdown == {"Groceries": 12000, "Uncategorized": 1500}
        assert sum(report.category_breakdown.values()) == report.total_expenses
        assert composer.current == report


def test_monthly_report_spans_the_whole_month(tmp_path) -> None:
    with _session() as session:
        _seed(session)
        composer = ReportComposer(session, 1, cache=ReportCache(1, tmp_path))

        report = composer.generate("monthly", today=date(2025, 6, 15))

        assert report.start_date == date(2025, 6, 1)
        assert report.end_date == date(2025, 6, 30)
        assert report.total_expenses == 21500
        assert report.balance == 28500


def test_custom_report_category_filter_keeps_funds(tmp_path) -> None:
    with _session() as session:
        _seed(session)
        groceries = CategoryService(session, 1).list_all()[0]
        composer = ReportComposer(session, 1, cache=ReportCache(1, tmp_path))

        report = composer.generate(
            "custom",
            "2025-06-01",
            "2025-06-30",
            filters=EntryFilters(category_id=groceries.id),
        )

        assert [e.item_name for e in report.expenses] == ["Rice"]
        assert report.total_funds == 50000
        assert report.balance == 38000


def test_custom_report_with_reversed_bounds_is_empty(tmp_path) -> None:
    with _session() as session:
        _seed(session)
        composer = ReportComposer(session, 1, cache=ReportCache(1, tmp_path))

        report = composer.generate("custom", "2025-06-30", "2025-06-01")

        assert report.expenses == ()
        assert report.funds == ()
        assert report.balance == 0


def test_custom_report_without_end_is_rejected(tmp_path) -> None:
    with _session() as session:
        composer = ReportComposer(session, 1, cache=ReportCache(1, tmp_path))
        with pytest.raises(ValueError):
            composer.generate("custom", "2025-06-01", None)
        assert composer.current is None


def test_new_report_overwrites_cache_and_survives_restart(tmp_path) -> None:
    with _session() as session:
        _seed(session)
        cache = ReportCache(1, tmp_path)
        composer = ReportComposer(session, 1, cache=cache)
        composer.generate("daily", today=date(2025, 6, 1))
        latest = composer.generate("daily", today=date(2025, 6, 20))

        assert sorted(p.name for p in (tmp_path / "1").iterdir()) == ["last_report.json"]

        restarted = ReportComposer(session, 1, cache=ReportCache(1, tmp_path))
        assert restarted.current == latest
        assert restarted.current.total_expenses == 8000

        # Caches are per user.
        assert ReportComposer(session, 2, cache=ReportCache(2, tmp_path)).current is None


def test_store_failure_keeps_previous_report(tmp_path, monkeypatch) -> None:
    with _session() as session:
        _seed(session)
        composer = ReportComposer(session, 1, cache=ReportCache(1, tmp_path))
        previous = composer.generate("daily", today=date(2025, 6, 1))
        cached_text = composer.cache.path.read_text(encoding="utf-8")

        def broken(*args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        monkeypatch.setattr(ExpenseService, "all_for_period", broken)

        with pytest.raises(ReportGenerationError):
            composer.generate("monthly", today=date(2025, 6, 1))

        assert composer.current is previous
        assert composer.cache.path.read_text(encoding="utf-8") == cached_text


def test_corrupt_cache_is_ignored(tmp_path) -> None:
    cache = ReportCache(1, tmp_path)
    cache.path.parent.mkdir(parents=True)
    cache.path.write_text("{not json", encoding="utf-8")

    with _session() as session:
        assert ReportComposer(session, 1, cache=cache).current is None


def test_family_members_see_each_others_rows(tmp_path) -> None:
    with _session() as session:
        _seed(session, user_id=1)
        ExpenseService(session, 2).create(
            ExpenseIn(expense_date=date(2025, 6, 1), item_name="Eggs", total_cents=500)
        )

        own = ReportComposer(session, 2, cache=ReportCache(2, tmp_path)).generate(
            "daily", today=date(2025, 6, 1)
        )
        shared = ReportComposer(
            session, 2, [1, 2], cache=ReportCache(2, tmp_path)
        ).generate("daily", today=date(2025, 6, 1))

        assert own.total_expenses == 500
        assert shared.total_expenses == 14000
        assert shared.total_funds == 50000


def test_report_payload_uses_currency_units(tmp_path) -> None:
    with _session() as session:
        _seed(session)
        report = ReportComposer(session, 1, cache=ReportCache(1, tmp_path)).generate(
            "daily", today=date(2025, 6, 1)
        )

        payload = report_payload(report)

        assert payload["start_date"] == "2025-06-01"
        assert payload["total_funds"] == 500.0
        assert payload["total_expenses"] == 135.0
        assert payload["balance"] == 365.0
        assert payload["category_breakdown"] == {"Groceries": 120.0, "Uncategorized": 15.0}
        kinds = [row["type"] for row in payload["detailed_list"]]
        assert kinds == ["expense", "expense", "fund"]
