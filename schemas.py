import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

from models import AccountType, TransactionType

AMOUNT_FIELD = {"max_digits": 18, "decimal_places": 8}

# Fixed-point text in JSON output, never scientific notation or floats.
Amount = Annotated[
    Decimal, PlainSerializer(lambda value: format(value, "f"), return_type=str, when_used="json")
]


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.manual
    currency: Optional[str] = Field(default=None, min_length=1, max_length=10)
    balance: Decimal = Field(default=Decimal("0"), **AMOUNT_FIELD)
    wallet_address: Optional[str] = Field(default=None, max_length=255)
    blockchain: Optional[str] = Field(default=None, max_length=50)
    icon: str = Field(default="wallet", max_length=50)
    color: str = Field(default="#3b82f6", max_length=7)


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    currency: Optional[str] = Field(default=None, min_length=1, max_length=10)
    wallet_address: Optional[str] = Field(default=None, max_length=255)
    blockchain: Optional[str] = Field(default=None, max_length=50)
    icon: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, max_length=7)


class BalanceSyncIn(BaseModel):
    balance: Decimal = Field(..., **AMOUNT_FIELD)
    synced_at: Optional[datetime] = None


class TransactionIn(BaseModel):
    account_id: int
    type: TransactionType
    amount: Decimal = Field(..., gt=0, **AMOUNT_FIELD)
    currency: str = Field(..., min_length=1, max_length=10)
    target_account_id: Optional[int] = None
    target_amount: Optional[Decimal] = Field(default=None, gt=0, **AMOUNT_FIELD)
    description: Optional[str] = None
    date: Optional[dt.date] = None
    tag_ids: list[int] = Field(default_factory=list)


class TransactionUpdate(BaseModel):
    """Partial update; only fields that were explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(default=None, gt=0, **AMOUNT_FIELD)
    currency: Optional[str] = Field(default=None, min_length=1, max_length=10)
    target_account_id: Optional[int] = None
    target_amount: Optional[Decimal] = Field(default=None, gt=0, **AMOUNT_FIELD)
    description: Optional[str] = None
    date: Optional[dt.date] = None
    tag_ids: Optional[list[int]] = None


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: str = Field(default="#6b7280", max_length=7)
    icon: str = Field(default="tag", max_length=50)


class TagUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    color: Optional[str] = Field(default=None, max_length=7)
    icon: Optional[str] = Field(default=None, max_length=50)


class BudgetIn(BaseModel):
    tag_id: int
    month: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    amount: Decimal = Field(..., ge=0, **AMOUNT_FIELD)


class GoalIn(BaseModel):
    account_id: int
    name: str = Field(..., min_length=1, max_length=100)
    target_amount: Decimal = Field(..., gt=0, **AMOUNT_FIELD)


class GoalUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    target_amount: Optional[Decimal] = Field(default=None, gt=0, **AMOUNT_FIELD)


class RecurringPaymentIn(BaseModel):
    account_id: int
    type: TransactionType
    amount: Decimal = Field(..., gt=0, **AMOUNT_FIELD)
    description: Optional[str] = None
    frequency: str = Field(..., min_length=1, max_length=20)
    next_date: date
    is_active: bool = True
    tag_ids: list[int] = Field(default_factory=list)


class RecurringPaymentUpdate(BaseModel):
    """next_date is absent on purpose: it only advances through execution."""

    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(default=None, gt=0, **AMOUNT_FIELD)
    description: Optional[str] = None
    frequency: Optional[str] = Field(default=None, min_length=1, max_length=20)
    is_active: Optional[bool] = None
    tag_ids: Optional[list[int]] = None


class TagOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: str
    icon: str


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    currency: str
    balance: Amount
    wallet_address: Optional[str]
    blockchain: Optional[str]
    last_synced_at: Optional[datetime]
    icon: str
    color: str
    created_at: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    type: TransactionType
    amount: Amount
    currency: str
    target_account_id: Optional[int]
    target_amount: Optional[Amount]
    description: Optional[str]
    date: dt.date
    created_at: datetime
    tags: list[TagOut]


class TransactionPage(BaseModel):
    data: list[TransactionOut]
    total: int


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tag_id: int
    month: str
    amount: Amount


class GoalOut(BaseModel):
    id: int
    account_id: int
    name: str
    target_amount: Amount
    current_amount: Amount
    currency: str
    progress: Amount
    created_at: datetime


class RecurringPaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    type: TransactionType
    amount: Amount
    description: Optional[str]
    frequency: str
    next_date: date
    is_active: bool
    created_at: datetime
    tags: list[TagOut]


class ExecutionOut(BaseModel):
    transaction: TransactionOut
    next_date: date


class BalanceSnapshotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    date: dt.date
    balance: Amount


class BudgetProgressOut(BaseModel):
    budget_id: int
    tag_id: int
    tag_name: str
    month: str
    amount: Amount
    spent: Amount
    remaining: Amount


class TagTotalOut(BaseModel):
    tag_id: int
    name: str
    color: str
    icon: str
    income: Amount
    expense: Amount
    total: Amount


class SummaryOut(BaseModel):
    totals: dict[str, Amount]
    balance: Amount
    by_tag: list[TagTotalOut]
    transaction_count: int


class TrendPointOut(BaseModel):
    month: str
    income: Amount
    expense: Amount
    balance: Amount
