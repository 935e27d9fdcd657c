from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from money import from_units


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class AccountType(str, Enum):
    manual = "manual"
    crypto = "crypto"


class CreatedAtMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class Account(Base, CreatedAtMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.manual
    )
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="RUB")
    balance_units: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(255))
    blockchain: Mapped[Optional[str]] = mapped_column(String(50))
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    icon: Mapped[str] = mapped_column(String(50), nullable=False, default="wallet")
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#3b82f6")

    __table_args__ = (Index("ix_accounts_user_id", "user_id"),)

    @property
    def balance(self) -> Decimal:
        return from_units(self.balance_units)


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_tag_user_name"),
        Index("ix_tags_user_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6b7280")
    icon: Mapped[str] = mapped_column(String(50), nullable=False, default="tag")

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", secondary="transaction_tags", back_populates="tags"
    )
    recurring_payments: Mapped[list["RecurringPayment"]] = relationship(
        "RecurringPayment", secondary="recurring_payment_tags", back_populates="tags"
    )


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column(
        "transaction_id",
        Integer,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
    ),
    Index("ix_transaction_tags_tag_id", "tag_id"),
)


class Transaction(Base, CreatedAtMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    target_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE")
    )
    target_amount_units: Mapped[Optional[int]] = mapped_column(BigInteger)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    target_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[target_account_id]
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="transaction_tags", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_account_id", "account_id"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
        CheckConstraint("amount_units > 0", name="ck_transactions_amount_positive"),
    )

    @property
    def amount(self) -> Decimal:
        return from_units(self.amount_units)

    @property
    def target_amount(self) -> Optional[Decimal]:
        if self.target_amount_units is None:
            return None
        return from_units(self.target_amount_units)


class Budget(Base):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    tag_id: Mapped[int] = mapped_column(
        ForeignKey("tags.id", ondelete="CASCADE"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_units: Mapped[int] = mapped_column(BigInteger, nullable=False)

    tag: Mapped["Tag"] = relationship("Tag")

    __table_args__ = (
        UniqueConstraint("user_id", "tag_id", "month", name="uq_budget_user_tag_month"),
        Index("ix_budgets_user_month", "user_id", "month"),
        CheckConstraint("amount_units >= 0", name="ck_budget_amount_positive"),
    )

    @property
    def amount(self) -> Decimal:
        return from_units(self.amount_units)


class Goal(Base, CreatedAtMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    target_amount_units: Mapped[int] = mapped_column(BigInteger, nullable=False)

    account: Mapped["Account"] = relationship("Account")

    __table_args__ = (
        Index("ix_goals_user_id", "user_id"),
        CheckConstraint("target_amount_units > 0", name="ck_goal_target_positive"),
    )

    @property
    def target_amount(self) -> Decimal:
        return from_units(self.target_amount_units)


recurring_payment_tags = Table(
    "recurring_payment_tags",
    Base.metadata,
    Column(
        "recurring_payment_id",
        Integer,
        ForeignKey("recurring_payments.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
    ),
)


class RecurringPayment(Base, CreatedAtMixin):
    __tablename__ = "recurring_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    # Free text; values outside Frequency schedule monthly.
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    next_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    account: Mapped["Account"] = relationship("Account")
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="recurring_payment_tags", back_populates="recurring_payments"
    )

    __table_args__ = (
        Index("ix_recurring_payments_user_id", "user_id"),
        Index("ix_recurring_payments_next_date", "next_date"),
        CheckConstraint("amount_units > 0", name="ck_recurring_amount_positive"),
    )

    @property
    def amount(self) -> Decimal:
        return from_units(self.amount_units)


class BalanceSnapshot(Base, CreatedAtMixin):
    __tablename__ = "balance_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    balance_units: Mapped[int] = mapped_column(BigInteger, nullable=False)

    account: Mapped["Account"] = relationship("Account")

    __table_args__ = (
        UniqueConstraint("account_id", "date", name="uq_snapshot_account_date"),
        Index("ix_balance_snapshots_account_date", "account_id", "date"),
    )

    @property
    def balance(self) -> Decimal:
        return from_units(self.balance_units)
