from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class UnitIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: Optional[str] = Field(None, max_length=9)


class ExpenseIn(BaseModel):
    expense_date: date
    item_name: str = Field(..., min_length=1, max_length=200)
    category_id: Optional[int] = None
    unit_id: Optional[int] = None
    quantity: Optional[Decimal] = Field(default=None, gt=0)
    total_cents: int = Field(..., ge=0)
    notes: Optional[str] = Field(default=None, max_length=1000)
    receipt_image_url: Optional[str] = Field(default=None, max_length=500)
    tags: list[str] = Field(default_factory=list)

    @field_validator("item_name")
    @classmethod
    def _strip_item_name(cls, value: str) -> str:
        clean = value.strip()
        if not clean:
            raise ValueError("Item name cannot be empty")
        return clean


class BatchItemIn(BaseModel):
    item_name: str = Field(..., min_length=1, max_length=200)
    category_id: Optional[int] = None
    unit_id: Optional[int] = None
    quantity: Optional[Decimal] = Field(default=None, gt=0)
    total_cents: int = Field(..., ge=0)


class ExpenseBatchIn(BaseModel):
    expense_date: date
    items: list[BatchItemIn] = Field(..., min_length=1)
    notes: Optional[str] = Field(default=None, max_length=1000)
    receipt_image_url: Optional[str] = Field(default=None, max_length=500)


class FundIn(BaseModel):
    fund_date: date
    amount_cents: int = Field(..., gt=0)
    source_note: Optional[str] = Field(default=None, max_length=200)


class FavoriteIn(BaseModel):
    item_name: str = Field(..., min_length=1, max_length=200)
    category_id: Optional[int] = None
    default_unit_id: Optional[int] = None
    default_quantity: Optional[Decimal] = Field(default=None, gt=0)
    display_order: int = 0


class BudgetIn(BaseModel):
    category_id: int
    monthly_limit_cents: int = Field(..., gt=0)


class FamilyIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class ExpenseOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    expense_date: date
    item_name: str
    category: Optional[str] = None
    unit: Optional[str] = None
    quantity: Optional[Decimal] = None
    total_cents: int
    notes: Optional[str] = None
    receipt_image_url: Optional[str] = None
    batch_id: Optional[str] = None


class FundOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    user_id: int
    fund_date: date
    amount_cents: int
    source_note: Optional[str] = None


class ReportSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    start_date: date
    end_date: date
    total_funds: int
    total_expenses: int
    balance: int
    funds: tuple[FundOut, ...] = ()
    expenses: tuple[ExpenseOut, ...] = ()
    category_breakdown: dict[str, int] = Field(default_factory=dict)
    generated_at: datetime


class ReceiptItem(BaseModel):
    name: str = ""
    quantity: str = ""
    price: float = 0


class ReceiptData(BaseModel):
    items: list[ReceiptItem] = Field(default_factory=list)
    total: float = 0
    date: str = ""
    shop: str = ""
    raw_text: Optional[str] = Field(default=None, serialization_alias="rawText")
    parsed: bool = True


class ScanResult(BaseModel):
    success: bool
    data: Optional[ReceiptData] = None
    error: Optional[str] = None
    error_kind: Optional[Literal["rate_limited", "payment_required", "upstream"]] = (
        None
    )


class PrefillRow(BaseModel):
    item_name: str
    quantity: Optional[str] = None
    total_cents: int = 0
    category_id: Optional[int] = None
    unit_id: Optional[int] = None


class ReceiptPrefill(BaseModel):
    mode: Literal["single", "batch", "empty"]
    expense_date: Optional[date] = None
    shop: str = ""
    rows: list[PrefillRow] = Field(default_factory=list)
    raw_text: Optional[str] = None


class BackupOut(BaseModel):
    timestamp: datetime
    user_id: int
    data: dict[str, list[dict[str, Any]]]
