import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, BudgetPeriod, CurrencyCode, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    currency_code: CurrencyCode = CurrencyCode.eur
    color: Optional[str] = Field(default=None, max_length=7)


class AccountPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    currency_code: Optional[CurrencyCode] = None
    color: Optional[str] = Field(default=None, max_length=7)
    is_active: Optional[bool] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=7)


class TransactionIn(BaseModel):
    account_id: int
    category_id: int
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    date: date
    notes: Optional[str] = Field(default=None, max_length=1000)
    is_recurring: bool = False


class TransactionPatch(BaseModel):
    """Partial update; only fields that are set are applied."""

    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    date: Optional[dt.date] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    is_recurring: Optional[bool] = None


class BulkTransactionIn(BaseModel):
    transactions: list[TransactionIn] = Field(..., min_length=1)


class BudgetIn(BaseModel):
    category_id: int
    name: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., gt=0)
    period: BudgetPeriod
    start_date: Optional[date] = None
    alert_threshold: int = Field(default=80, ge=0, le=100)


class BudgetPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None
    alert_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    is_active: Optional[bool] = None


class CSVRow(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    account: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)
