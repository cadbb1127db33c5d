"""Report composition and the single-slot report cache.

A composer owns the "current report" for one user. It starts from whatever
snapshot was cached by the previous run, replaces it on every successful
generation, and keeps it untouched when the store fails mid-fetch.
"""

from __future__ import annotations

import logging
import os
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from aggregation import balance, group_by_category, sum_field
from config import get_settings
from models import Expense
from periods import Period, PeriodKind, resolve_period
from schemas import ExpenseOut, FundOut, ReportSnapshot
from services import EntryFilters, ExpenseService, FundService, local_today

logger = logging.getLogger(__name__)

CACHE_KEY = "last_report"


class ReportGenerationError(RuntimeError):
    pass


class ReportCache:
    """One JSON file per user holding the most recent snapshot."""

    def __init__(self, user_id: int, root: Optional[Path] = None) -> None:
        self.user_id = user_id
        self.root = root or get_settings().cache_dir

    @property
    def path(self) -> Path:
        return self.root / str(self.user_id) / f"{CACHE_KEY}.json"

    def load(self) -> Optional[ReportSnapshot]:
        path = self.path
        if not path.exists():
            return None
        try:
            return ReportSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError):
            logger.warning(f"report_cache_unreadable: user={self.user_id} path={path}")
            return None

    def save(self, snapshot: ReportSnapshot) -> None:
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(snapshot.model_dump_json(), encoding="utf-8")
        os.replace(tmp_path, path)


def expense_out(expense: Expense) -> ExpenseOut:
    return ExpenseOut(
        id=expense.id,
        user_id=expense.user_id,
        expense_date=expense.expense_date,
        item_name=expense.item_name,
        category=expense.category.name if expense.category else None,
        unit=expense.unit.name if expense.unit else None,
        quantity=expense.quantity,
        total_cents=expense.total_cents,
        notes=expense.notes,
        receipt_image_url=expense.receipt_image_url,
        batch_id=expense.batch_id,
    )


class ReportComposer:
    def __init__(
        self,
        session: Session,
        user_id: int,
        visible_user_ids: Optional[Sequence[int]] = None,
        cache: Optional[ReportCache] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.visible_user_ids = list(visible_user_ids or [user_id])
        self.cache = cache or ReportCache(user_id)
        self.current: Optional[ReportSnapshot] = self.cache.load()

    def compose(
        self, period: Period, filters: Optional[EntryFilters] = None
    ) -> ReportSnapshot:
        filters = filters or EntryFilters()
        expenses = ExpenseService(
            self.session, self.user_id, self.visible_user_ids
        ).all_for_period(period, filters)
        # Funds have no category or tags, so they only follow the period.
        funds = FundService(
            self.session, self.user_id, self.visible_user_ids
        ).all_for_period(period)

        return ReportSnapshot(
            kind=period.slug,
            start_date=period.start,
            end_date=period.end,
            total_funds=sum_field(funds, "amount_cents"),
            total_expenses=sum_field(expenses, "total_cents"),
            balance=balance(funds, expenses),
            funds=tuple(FundOut.model_validate(f) for f in funds),
            expenses=tuple(expense_out(e) for e in expenses),
            category_breakdown=group_by_category(expenses),
            generated_at=datetime.utcnow(),
        )

    def generate(
        self,
        kind: PeriodKind | str,
        start: date | str | None = None,
        end: date | str | None = None,
        *,
        filters: Optional[EntryFilters] = None,
        today: Optional[date] = None,
    ) -> ReportSnapshot:
        period = resolve_period(kind, start, end, today=today or local_today())
        started = datetime.now()
        try:
            snapshot = self.compose(period, filters)
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(
                f"report_failed: user={self.user_id} period={period.start}to{period.end}"
            )
            raise ReportGenerationError("Could not load report data") from exc

        self.current = snapshot
        try:
            self.cache.save(snapshot)
        except OSError:
            logger.exception(f"report_cache_write_failed: user={self.user_id}")

        duration = (datetime.now() - started).total_seconds()
        logger.info(
            f"report_generated: user={self.user_id} kind={period.slug} "
            f"period={period.start}to{period.end} expenses={len(snapshot.expenses)} "
            f"funds={len(snapshot.funds)} duration={duration:.2f}s"
        )
        return snapshot


def _decimal(cents: int) -> float:
    return float(Decimal(cents) / 100)


def report_payload(snapshot: ReportSnapshot) -> dict[str, object]:
    """JSON body for the report endpoints, amounts in currency units."""
    detailed: list[dict[str, object]] = []
    for expense in snapshot.expenses:
        detailed.append(
            {
                "type": "expense",
                "id": expense.id,
                "user_id": expense.user_id,
                "expense_date": expense.expense_date.isoformat(),
                "item_name": expense.item_name,
                "category": expense.category,
                "unit": expense.unit,
                "quantity": (
                    str(expense.quantity) if expense.quantity is not None else None
                ),
                "total_amount": _decimal(expense.total_cents),
                "notes": expense.notes,
                "batch_id": expense.batch_id,
            }
        )
    for fund in snapshot.funds:
        detailed.append(
            {
                "type": "fund",
                "id": fund.id,
                "user_id": fund.user_id,
                "fund_date": fund.fund_date.isoformat(),
                "amount": _decimal(fund.amount_cents),
                "source_note": fund.source_note,
            }
        )
    return {
        "start_date": snapshot.start_date.isoformat(),
        "end_date": snapshot.end_date.isoformat(),
        "total_funds": _decimal(snapshot.total_funds),
        "total_expenses": _decimal(snapshot.total_expenses),
        "balance": _decimal(snapshot.balance),
        "category_breakdown": {
            name: _decimal(cents) for name, cents in snapshot.category_breakdown.items()
        },
        "detailed_list": detailed,
        "generated_at": snapshot.generated_at.isoformat(),
    }
