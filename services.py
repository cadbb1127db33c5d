from __future__ import annotations

import logging
import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, joinedload, selectinload

from rapidfuzz.distance import Levenshtein

from aggregation import (
    BudgetUtilization,
    balance,
    budget_utilization,
    group_by_category,
    sum_field,
)
from config import get_settings
from models import (
    Budget,
    Category,
    Expense,
    Family,
    FamilyMember,
    Favorite,
    Fund,
    Setting,
    Tag,
    Unit,
    expense_tag_relations,
)
from periods import Period, month_bounds
from schemas import (
    BudgetIn,
    CategoryIn,
    ExpenseBatchIn,
    ExpenseIn,
    FamilyIn,
    FavoriteIn,
    FundIn,
    TagIn,
    UnitIn,
)

logger = logging.getLogger(__name__)

EDIT_MODE_KEY = "edit_mode"
INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits
INVITE_CODE_LENGTH = 8


class NotFoundError(ValueError):
    pass


class PermissionDenied(ValueError):
    pass


class EditModeRequired(PermissionDenied):
    pass


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def row_to_dict(row: object) -> dict[str, object]:
    data: dict[str, object] = {}
    for column in row.__table__.columns:  # type: ignore[attr-defined]
        value = getattr(row, column.key)
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        data[column.key] = value
    return data


@dataclass(frozen=True)
class AppContext:
    """Per-request view of who is acting and what they may do."""

    user_id: int
    visible_user_ids: tuple[int, ...]
    edit_mode: bool = False
    can_add: bool = True

    def require_edit_mode(self) -> None:
        if not self.edit_mode:
            raise EditModeRequired("Turn on edit mode to change saved entries")

    def require_can_add(self) -> None:
        if not self.can_add:
            raise PermissionDenied("You do not have permission to add entries")


def build_context(session: Session, user_id: int) -> AppContext:
    family = FamilyService(session, user_id)
    return AppContext(
        user_id=user_id,
        visible_user_ids=tuple(family.visible_user_ids()),
        edit_mode=SettingsService(session, user_id).is_edit_mode(),
        can_add=family.can_add(),
    )


@dataclass
class EntryFilters:
    category_id: Optional[int] = None
    tag_id: Optional[int] = None
    query: Optional[str] = None


class SettingsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _get_row(self, key: str) -> Optional[Setting]:
        return self.session.scalar(
            select(Setting).where(Setting.user_id == self.user_id, Setting.key == key)
        )

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self._get_row(key)
        if row is None:
            return default
        return row.value

    def set(self, key: str, value: Optional[str]) -> Setting:
        clean_key = key.strip()
        if not clean_key:
            raise ValueError("Setting key cannot be empty")
        row = self._get_row(clean_key)
        if row is None:
            row = Setting(user_id=self.user_id, key=clean_key, value=value)
            self.session.add(row)
        else:
            row.value = value
        self.session.commit()
        self.session.refresh(row)
        return row

    def all(self) -> dict[str, Optional[str]]:
        rows = self.session.scalars(
            select(Setting).where(Setting.user_id == self.user_id).order_by(Setting.key)
        ).all()
        return {row.key: row.value for row in rows}

    def is_edit_mode(self) -> bool:
        return self.get(EDIT_MODE_KEY) == "true"

    def set_edit_mode(self, enabled: bool) -> bool:
        self.set(EDIT_MODE_KEY, "true" if enabled else "false")
        logger.info(f"edit_mode_changed: user={self.user_id} enabled={enabled}")
        return enabled

    def toggle_edit_mode(self) -> bool:
        return self.set_edit_mode(not self.is_edit_mode())


class FamilyService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def membership(self) -> Optional[FamilyMember]:
        return self.session.scalar(
            select(FamilyMember)
            .options(joinedload(FamilyMember.family))
            .where(FamilyMember.user_id == self.user_id)
        )

    def family(self) -> Optional[Family]:
        member = self.membership()
        return member.family if member else None

    def members(self) -> list[FamilyMember]:
        member = self.membership()
        if not member:
            return []
        stmt = (
            select(FamilyMember)
            .where(FamilyMember.family_id == member.family_id)
            .order_by(FamilyMember.id)
        )
        return self.session.scalars(stmt).all()

    def visible_user_ids(self) -> list[int]:
        members = self.members()
        if not members:
            return [self.user_id]
        return sorted({m.user_id for m in members})

    def can_add(self) -> bool:
        member = self.membership()
        return member is None or member.can_add

    def _new_invite_code(self) -> str:
        while True:
            code = "".join(
                secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH)
            )
            taken = self.session.scalar(
                select(Family.id).where(Family.invite_code == code)
            )
            if not taken:
                return code

    def create(self, data: FamilyIn) -> Family:
        if self.membership():
            raise ValueError("You already belong to a family")
        family = Family(
            owner_id=self.user_id,
            name=data.name.strip(),
            invite_code=self._new_invite_code(),
        )
        family.members.append(FamilyMember(user_id=self.user_id, can_add=True))
        self.session.add(family)
        self.session.commit()
        self.session.refresh(family)
        logger.info(f"family_created: family={family.id} owner={self.user_id}")
        return family

    def join(self, invite_code: str) -> Family:
        code = invite_code.strip().upper()
        if not code:
            raise ValueError("Invite code cannot be empty")
        family = self.session.scalar(select(Family).where(Family.invite_code == code))
        if not family:
            raise NotFoundError("Invalid invite code")
        if self.membership():
            raise ValueError("You already belong to a family")
        self.session.add(
            FamilyMember(family_id=family.id, user_id=self.user_id, can_add=False)
        )
        self.session.commit()
        logger.info(f"family_joined: family={family.id} user={self.user_id}")
        return family

    def leave(self) -> None:
        member = self.membership()
        if not member:
            raise NotFoundError("You are not part of a family")
        if member.family.owner_id == self.user_id:
            raise PermissionDenied("The owner cannot leave; delete the family instead")
        self.session.delete(member)
        self.session.commit()

    def delete(self) -> None:
        family = self.family()
        if not family:
            raise NotFoundError("You are not part of a family")
        if family.owner_id != self.user_id:
            raise PermissionDenied("Only the owner can delete the family")
        self.session.delete(family)
        self.session.commit()
        logger.info(f"family_deleted: family={family.id} owner={self.user_id}")

    def set_can_add(self, member_user_id: int, can_add: bool) -> FamilyMember:
        family = self.family()
        if not family:
            raise NotFoundError("You are not part of a family")
        if family.owner_id != self.user_id:
            raise PermissionDenied("Only the owner can change permissions")
        target = self.session.scalar(
            select(FamilyMember).where(
                FamilyMember.family_id == family.id,
                FamilyMember.user_id == member_user_id,
            )
        )
        if not target:
            raise NotFoundError("Member not found")
        target.can_add = can_add
        self.session.commit()
        return target


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def _find_by_name(
        self, name: str, *, exclude_id: Optional[int] = None
    ) -> Optional[Category]:
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.strip().lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt)

    def create(self, data: CategoryIn) -> Category:
        if self._find_by_name(data.name):
            raise ValueError("Category with this name already exists")
        category = Category(user_id=self.user_id, name=data.name.strip())
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        if not name.strip():
            raise ValueError("Category name cannot be empty")
        if self._find_by_name(name, exclude_id=category_id):
            raise ValueError("Category with this name already exists")
        category.name = name.strip()
        self.session.commit()
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        # Expenses and favorites keep existing but fall back to "Uncategorized".
        self.session.execute(
            update(Expense)
            .where(Expense.category_id == category.id)
            .values(category_id=None)
        )
        self.session.execute(
            update(Favorite)
            .where(Favorite.category_id == category.id)
            .values(category_id=None)
        )
        self.session.execute(delete(Budget).where(Budget.category_id == category.id))
        self.session.delete(category)
        self.session.commit()


class UnitService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Unit]:
        stmt = select(Unit).where(Unit.user_id == self.user_id).order_by(Unit.name)
        return self.session.scalars(stmt).all()

    def get(self, unit_id: int) -> Unit:
        unit = self.session.get(Unit, unit_id)
        if not unit or unit.user_id != self.user_id:
            raise NotFoundError("Unit not found")
        return unit

    def create(self, data: UnitIn) -> Unit:
        clean_name = data.name.strip()
        existing = self.session.scalar(
            select(Unit).where(
                Unit.user_id == self.user_id,
                func.lower(Unit.name) == clean_name.lower(),
            )
        )
        if existing:
            raise ValueError("Unit already exists")
        unit = Unit(user_id=self.user_id, name=clean_name)
        self.session.add(unit)
        self.session.commit()
        self.session.refresh(unit)
        return unit

    def delete(self, unit_id: int) -> None:
        unit = self.get(unit_id)
        self.session.execute(
            update(Expense).where(Expense.unit_id == unit.id).values(unit_id=None)
        )
        self.session.execute(
            update(Favorite)
            .where(Favorite.default_unit_id == unit.id)
            .values(default_unit_id=None)
        )
        self.session.delete(unit)
        self.session.commit()


class TagService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        return self.session.scalars(stmt).all()

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(user_id=self.user_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def resolve(self, names: Sequence[str]) -> list[Tag]:
        tags: list[Tag] = []
        seen: set[int] = set()
        for name in names:
            if not name.strip():
                continue
            tag = self.get_or_create(name)
            if tag.id not in seen:
                tags.append(tag)
                seen.add(tag.id)
        return tags

    def create(self, data: TagIn) -> Tag:
        clean_name = data.name.strip()
        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        if self.session.scalar(stmt):
            raise ValueError("Tag already exists")

        tag = Tag(user_id=self.user_id, name=clean_name, color=data.color)
        self.session.add(tag)
        self.session.commit()
        self.session.refresh(tag)
        return tag

    def delete(self, tag_id: int) -> None:
        tag = self.session.get(Tag, tag_id)
        if not tag or tag.user_id != self.user_id:
            raise NotFoundError("Tag not found")

        self.session.execute(
            delete(expense_tag_relations).where(
                expense_tag_relations.c.tag_id == tag.id
            )
        )
        self.session.delete(tag)
        self.session.commit()


class FavoriteService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Favorite]:
        stmt = (
            select(Favorite)
            .options(joinedload(Favorite.category), joinedload(Favorite.default_unit))
            .where(Favorite.user_id == self.user_id)
            .order_by(Favorite.display_order, Favorite.item_name)
        )
        return self.session.scalars(stmt).all()

    def get(self, favorite_id: int) -> Favorite:
        favorite = self.session.get(Favorite, favorite_id)
        if not favorite or favorite.user_id != self.user_id:
            raise NotFoundError("Favorite not found")
        return favorite

    def _check_refs(self, data: FavoriteIn) -> None:
        if data.category_id is not None:
            CategoryService(self.session, self.user_id).get(data.category_id)
        if data.default_unit_id is not None:
            UnitService(self.session, self.user_id).get(data.default_unit_id)

    def create(self, data: FavoriteIn) -> Favorite:
        self._check_refs(data)
        favorite = Favorite(
            user_id=self.user_id,
            item_name=data.item_name.strip(),
            category_id=data.category_id,
            default_unit_id=data.default_unit_id,
            default_quantity=data.default_quantity,
            display_order=data.display_order,
        )
        self.session.add(favorite)
        self.session.commit()
        self.session.refresh(favorite)
        return favorite

    def update(self, favorite_id: int, data: FavoriteIn) -> Favorite:
        favorite = self.get(favorite_id)
        self._check_refs(data)
        favorite.item_name = data.item_name.strip()
        favorite.category_id = data.category_id
        favorite.default_unit_id = data.default_unit_id
        favorite.default_quantity = data.default_quantity
        favorite.display_order = data.display_order
        self.session.commit()
        self.session.refresh(favorite)
        return favorite

    def delete(self, favorite_id: int) -> None:
        favorite = self.get(favorite_id)
        self.session.delete(favorite)
        self.session.commit()

    def match(self, item_name: str) -> Optional[Favorite]:
        """Best favorite for an item name: exact (case-insensitive) or one edit away.

        Ties at the best distance are ambiguous and yield no match.
        """
        needle = item_name.strip().lower()
        if not needle:
            return None
        favorites = self.list_all()
        best_distance: Optional[int] = None
        best: list[Favorite] = []
        for favorite in favorites:
            name_lower = (favorite.item_name or "").strip().lower()
            if name_lower == needle:
                return favorite
            dist = int(Levenshtein.distance(needle, name_lower))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [favorite]
            elif dist == best_distance:
                best.append(favorite)
        if best_distance is not None and best_distance <= 1 and len(best) == 1:
            return best[0]
        return None


class ExpenseService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        visible_user_ids: Optional[Sequence[int]] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.visible_user_ids = list(visible_user_ids or [user_id])

    def _check_refs(self, category_id: Optional[int], unit_id: Optional[int]) -> None:
        if category_id is not None:
            CategoryService(self.session, self.user_id).get(category_id)
        if unit_id is not None:
            UnitService(self.session, self.user_id).get(unit_id)

    def create(self, data: ExpenseIn) -> Expense:
        self._check_refs(data.category_id, data.unit_id)
        expense = Expense(
            user_id=self.user_id,
            expense_date=data.expense_date,
            item_name=data.item_name,
            category_id=data.category_id,
            unit_id=data.unit_id,
            quantity=data.quantity,
            total_cents=data.total_cents,
            notes=data.notes,
            receipt_image_url=data.receipt_image_url,
        )
        if data.tags:
            expense.tags = TagService(self.session, self.user_id).resolve(data.tags)
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        logger.info(
            f"expense_created: user={self.user_id} id={expense.id} "
            f"total_cents={expense.total_cents}"
        )
        return expense

    def create_batch(self, data: ExpenseBatchIn) -> list[Expense]:
        batch_id = str(uuid.uuid4())
        expenses: list[Expense] = []
        for item in data.items:
            self._check_refs(item.category_id, item.unit_id)
            name = item.item_name.strip()
            if not name:
                raise ValueError("Item name cannot be empty")
            expenses.append(
                Expense(
                    user_id=self.user_id,
                    expense_date=data.expense_date,
                    item_name=name,
                    category_id=item.category_id,
                    unit_id=item.unit_id,
                    quantity=item.quantity,
                    total_cents=item.total_cents,
                    notes=data.notes,
                    receipt_image_url=data.receipt_image_url,
                    batch_id=batch_id,
                )
            )
        self.session.add_all(expenses)
        self.session.commit()
        for expense in expenses:
            self.session.refresh(expense)
        logger.info(
            f"expense_batch_created: user={self.user_id} batch={batch_id} "
            f"items={len(expenses)} total_cents={sum_field(expenses, 'total_cents')}"
        )
        return expenses

    def get(self, expense_id: int) -> Expense:
        stmt = (
            select(Expense)
            .options(
                joinedload(Expense.category),
                joinedload(Expense.unit),
                selectinload(Expense.tags),
            )
            .where(
                Expense.id == expense_id,
                Expense.user_id.in_(self.visible_user_ids),
            )
        )
        expense = self.session.scalar(stmt)
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    def _get_owned(self, expense_id: int) -> Expense:
        expense = self.get(expense_id)
        if expense.user_id != self.user_id:
            raise PermissionDenied("You can only change your own entries")
        return expense

    def update(self, expense_id: int, data: ExpenseIn) -> Expense:
        expense = self._get_owned(expense_id)
        self._check_refs(data.category_id, data.unit_id)
        expense.expense_date = data.expense_date
        expense.item_name = data.item_name
        expense.category_id = data.category_id
        expense.unit_id = data.unit_id
        expense.quantity = data.quantity
        expense.total_cents = data.total_cents
        expense.notes = data.notes
        expense.receipt_image_url = data.receipt_image_url
        expense.tags = TagService(self.session, self.user_id).resolve(data.tags)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self._get_owned(expense_id)
        self.session.delete(expense)
        self.session.commit()
        logger.info(f"expense_deleted: user={self.user_id} id={expense_id}")

    def batch(self, batch_id: str) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category), joinedload(Expense.unit))
            .where(
                Expense.batch_id == batch_id,
                Expense.user_id.in_(self.visible_user_ids),
            )
            .order_by(Expense.id)
        )
        return self.session.scalars(stmt).all()

    def delete_batch(self, batch_id: str) -> int:
        """Delete every expense sharing ``batch_id``.

        All rows go in one transaction; a store failure rolls the whole group
        back.
        """
        owned_ids = select(Expense.id).where(
            Expense.user_id == self.user_id, Expense.batch_id == batch_id
        )
        ids = self.session.scalars(owned_ids).all()
        if not ids:
            raise NotFoundError("Batch not found")
        try:
            self.session.execute(
                delete(expense_tag_relations).where(
                    expense_tag_relations.c.expense_id.in_(ids)
                )
            )
            result = self.session.execute(
                delete(Expense).where(Expense.id.in_(ids))
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            f"expense_batch_deleted: user={self.user_id} batch={batch_id} "
            f"rows={result.rowcount}"
        )
        return int(result.rowcount or 0)

    def _filtered(self, period: Period, filters: EntryFilters):
        stmt = (
            select(Expense)
            .options(
                joinedload(Expense.category),
                joinedload(Expense.unit),
                selectinload(Expense.tags),
            )
            .where(
                Expense.user_id.in_(self.visible_user_ids),
                Expense.expense_date.between(period.start, period.end),
            )
        )
        if filters.category_id:
            stmt = stmt.where(Expense.category_id == filters.category_id)
        if filters.tag_id:
            stmt = stmt.where(Expense.tags.any(Tag.id == filters.tag_id))
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(
                func.lower(Expense.item_name).like(like)
                | func.lower(func.coalesce(Expense.notes, "")).like(like)
            )
        return stmt

    def list(
        self,
        period: Period,
        filters: Optional[EntryFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Expense]:
        stmt = (
            self._filtered(period, filters or EntryFilters())
            .order_by(Expense.expense_date.desc(), Expense.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(stmt).unique().all()

    def all_for_period(
        self, period: Period, filters: Optional[EntryFilters] = None
    ) -> list[Expense]:
        stmt = self._filtered(period, filters or EntryFilters()).order_by(
            Expense.expense_date.desc(), Expense.id.desc()
        )
        return self.session.scalars(stmt).unique().all()

    def recent(self, limit: int = 10) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.user_id.in_(self.visible_user_ids))
            .order_by(Expense.expense_date.desc(), Expense.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def with_receipts(self, query: Optional[str] = None) -> list[Expense]:
        """The user's own expenses that carry a receipt image, newest first."""
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category), joinedload(Expense.unit))
            .outerjoin(Expense.category)
            .where(
                Expense.user_id == self.user_id,
                Expense.receipt_image_url.is_not(None),
            )
            .order_by(Expense.expense_date.desc(), Expense.id.desc())
        )
        if query:
            like = f"%{query.strip().lower()}%"
            stmt = stmt.where(
                func.lower(Expense.item_name).like(like)
                | func.lower(func.coalesce(Expense.notes, "")).like(like)
                | func.lower(func.coalesce(Category.name, "")).like(like)
            )
        return self.session.scalars(stmt).all()

    def referenced_receipts(self) -> set[str]:
        stmt = select(Expense.receipt_image_url).where(
            Expense.receipt_image_url.is_not(None)
        )
        return {url for url in self.session.scalars(stmt) if url}


class FundService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        visible_user_ids: Optional[Sequence[int]] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.visible_user_ids = list(visible_user_ids or [user_id])

    def create(self, data: FundIn) -> Fund:
        fund = Fund(
            user_id=self.user_id,
            fund_date=data.fund_date,
            amount_cents=data.amount_cents,
            source_note=(data.source_note or "").strip() or None,
        )
        self.session.add(fund)
        self.session.commit()
        self.session.refresh(fund)
        logger.info(
            f"fund_created: user={self.user_id} id={fund.id} "
            f"amount_cents={fund.amount_cents}"
        )
        return fund

    def get(self, fund_id: int) -> Fund:
        fund = self.session.get(Fund, fund_id)
        if not fund or fund.user_id not in self.visible_user_ids:
            raise NotFoundError("Fund not found")
        return fund

    def _get_owned(self, fund_id: int) -> Fund:
        fund = self.get(fund_id)
        if fund.user_id != self.user_id:
            raise PermissionDenied("You can only change your own entries")
        return fund

    def update(self, fund_id: int, data: FundIn) -> Fund:
        fund = self._get_owned(fund_id)
        fund.fund_date = data.fund_date
        fund.amount_cents = data.amount_cents
        fund.source_note = (data.source_note or "").strip() or None
        self.session.commit()
        self.session.refresh(fund)
        return fund

    def delete(self, fund_id: int) -> None:
        fund = self._get_owned(fund_id)
        self.session.delete(fund)
        self.session.commit()
        logger.info(f"fund_deleted: user={self.user_id} id={fund_id}")

    def all_for_period(self, period: Period) -> list[Fund]:
        stmt = (
            select(Fund)
            .where(
                Fund.user_id.in_(self.visible_user_ids),
                Fund.fund_date.between(period.start, period.end),
            )
            .order_by(Fund.fund_date.desc(), Fund.id.desc())
        )
        return self.session.scalars(stmt).all()

    def recent(self, limit: int = 10) -> list[Fund]:
        stmt = (
            select(Fund)
            .where(Fund.user_id.in_(self.visible_user_ids))
            .order_by(Fund.fund_date.desc(), Fund.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()


@dataclass
class TimelineEntry:
    kind: str  # "expense" | "batch" | "fund"
    entry_date: date
    total_cents: int
    expenses: list[Expense] = field(default_factory=list)
    fund: Optional[Fund] = None
    batch_id: Optional[str] = None


def timeline(expenses: Sequence[Expense], funds: Sequence[Fund]) -> list[TimelineEntry]:
    """Merge expenses and funds newest first, folding batches into one entry."""
    entries: list[TimelineEntry] = []
    batches: dict[str, TimelineEntry] = {}
    for expense in expenses:
        if expense.batch_id:
            entry = batches.get(expense.batch_id)
            if entry is None:
                entry = TimelineEntry(
                    kind="batch",
                    entry_date=expense.expense_date,
                    total_cents=0,
                    batch_id=expense.batch_id,
                )
                batches[expense.batch_id] = entry
                entries.append(entry)
            entry.expenses.append(expense)
            entry.total_cents += expense.total_cents or 0
            continue
        entries.append(
            TimelineEntry(
                kind="expense",
                entry_date=expense.expense_date,
                total_cents=expense.total_cents or 0,
                expenses=[expense],
            )
        )
    for fund in funds:
        entries.append(
            TimelineEntry(
                kind="fund",
                entry_date=fund.fund_date,
                total_cents=fund.amount_cents,
                fund=fund,
            )
        )
    entries.sort(key=lambda e: e.entry_date, reverse=True)
    return entries


@dataclass(frozen=True)
class BudgetProgress:
    budget_id: int
    category_id: int
    category_name: str
    utilization: BudgetUtilization


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.id)
        )
        return self.session.scalars(stmt).all()

    def upsert(self, data: BudgetIn) -> Budget:
        CategoryService(self.session, self.user_id).get(data.category_id)
        existing = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category_id == data.category_id,
            )
        )
        if existing:
            existing.monthly_limit_cents = data.monthly_limit_cents
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            monthly_limit_cents=data.monthly_limit_cents,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        self.session.delete(budget)
        self.session.commit()

    def spent_by_category_for_month(self, year: int, month: int) -> dict[int, int]:
        start, end = month_bounds(date(year, month, 1))
        stmt = (
            select(
                Expense.category_id,
                func.coalesce(func.sum(Expense.total_cents), 0).label("spent"),
            )
            .where(
                Expense.user_id == self.user_id,
                Expense.category_id.is_not(None),
                Expense.expense_date.between(start, end),
            )
            .group_by(Expense.category_id)
        )
        return {
            row.category_id: int(row.spent or 0) for row in self.session.execute(stmt)
        }

    def progress(self, today: Optional[date] = None) -> list[BudgetProgress]:
        today = today or local_today()
        spent = self.spent_by_category_for_month(today.year, today.month)
        rows: list[BudgetProgress] = []
        for budget in self.list_all():
            rows.append(
                BudgetProgress(
                    budget_id=budget.id,
                    category_id=budget.category_id,
                    category_name=budget.category.name,
                    utilization=budget_utilization(
                        budget.monthly_limit_cents, spent.get(budget.category_id, 0)
                    ),
                )
            )
        return rows


class DashboardService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        visible_user_ids: Optional[Sequence[int]] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.visible_user_ids = list(visible_user_ids or [user_id])

    def _total(self, column, owner, *conditions) -> int:
        stmt = select(func.coalesce(func.sum(column), 0)).where(
            owner.in_(self.visible_user_ids), *conditions
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def summary(self, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        first, last = month_bounds(today)
        month = Period("monthly", first, last)

        all_funds = self._total(Fund.amount_cents, Fund.user_id)
        all_expenses = self._total(Expense.total_cents, Expense.user_id)

        expenses = ExpenseService(
            self.session, self.user_id, self.visible_user_ids
        ).all_for_period(month)
        funds = FundService(
            self.session, self.user_id, self.visible_user_ids
        ).all_for_period(month)

        return {
            "balance": all_funds - all_expenses,
            "month_funds": sum_field(funds, "amount_cents"),
            "month_expenses": sum_field(expenses, "total_cents"),
            "month_balance": balance(funds, expenses),
            "today_expenses": sum_field(
                [e for e in expenses if e.expense_date == today], "total_cents"
            ),
            "category_breakdown": group_by_category(expenses),
            "month": month,
            "today": today,
        }


class BackupService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def export(self) -> dict[str, object]:
        def rows(model) -> list[dict[str, object]]:
            stmt = (
                select(model).where(model.user_id == self.user_id).order_by(model.id)
            )
            return [row_to_dict(r) for r in self.session.scalars(stmt)]

        data = {
            "expenses": rows(Expense),
            "funds": rows(Fund),
            "categories": rows(Category),
            "units": rows(Unit),
            "favorites": rows(Favorite),
            "settings": rows(Setting),
        }
        logger.info(
            f"backup_exported: user={self.user_id} "
            + " ".join(f"{name}={len(items)}" for name, items in data.items())
        )
        return {
            "timestamp": datetime.utcnow().isoformat(),
            "user_id": self.user_id,
            "data": data,
        }
