from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.orm import Session, joinedload, selectinload

from config import get_settings
from database import atomic
from errors import NotFound, ValidationError
from ledger import BalanceEngine
from models import (
    Account,
    BalanceSnapshot,
    Budget,
    Goal,
    RecurringPayment,
    Tag,
    Transaction,
    TransactionType,
)
from money import from_units, to_units
from periods import Period, month_period
from recurrence import Execution, RecurringEngine, add_months, local_today
from schemas import (
    AccountIn,
    AccountUpdate,
    BalanceSyncIn,
    BudgetIn,
    GoalIn,
    GoalUpdate,
    RecurringPaymentIn,
    RecurringPaymentUpdate,
    TagIn,
    TagUpdate,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)

# Fields a partial update may explicitly reset to null.
NULLABLE_TRANSACTION_FIELDS = {"target_account_id", "target_amount", "description"}
MAX_TREND_MONTHS = 1200


def get_current_user_id() -> int:
    return get_settings().default_user_id


@dataclass
class TransactionFilters:
    start: Optional[date] = None
    end: Optional[date] = None
    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    tag_id: Optional[int] = None


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            currency=(data.currency or get_settings().default_currency).upper(),
            balance_units=to_units(data.balance),
            wallet_address=data.wallet_address,
            blockchain=data.blockchain,
            icon=data.icon,
            color=data.color,
        )
        with atomic(self.session):
            self.session.add(account)
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        with atomic(self.session):
            for field, value in data.model_dump(exclude_unset=True).items():
                if value is None and field in {"name", "type", "currency", "icon", "color"}:
                    continue
                if field == "currency":
                    value = value.upper()
                setattr(account, field, value)
        return account

    def sync_balance(self, account_id: int, data: BalanceSyncIn) -> Account:
        account = self.get(account_id)
        with atomic(self.session):
            BalanceEngine(self.session, self.user_id).sync(
                account, data.balance, synced_at=data.synced_at
            )
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        with atomic(self.session):
            engine = BalanceEngine(self.session, self.user_id)
            txns = self.session.scalars(
                select(Transaction).where(
                    Transaction.user_id == self.user_id,
                    or_(
                        Transaction.account_id == account.id,
                        Transaction.target_account_id == account.id,
                    ),
                )
            ).all()
            for txn in txns:
                engine.reverse_except(txn, account.id)
                self.session.delete(txn)
            payments = self.session.scalars(
                select(RecurringPayment).where(RecurringPayment.account_id == account.id)
            ).all()
            for payment in payments:
                self.session.delete(payment)
            self.session.execute(delete(Goal).where(Goal.account_id == account.id))
            self.session.execute(
                delete(BalanceSnapshot).where(BalanceSnapshot.account_id == account.id)
            )
            self.session.delete(account)
        logger.info(
            f"account_delete: account_id={account_id} transactions_removed={len(txns)}"
        )


class TagService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        return self.session.scalars(stmt).all()

    def get(self, tag_id: int) -> Tag:
        tag = self.session.get(Tag, tag_id)
        if not tag or tag.user_id != self.user_id:
            raise NotFound("Tag not found")
        return tag

    def get_many(self, tag_ids: list[int]) -> list[Tag]:
        tags: list[Tag] = []
        seen: set[int] = set()
        for tag_id in tag_ids:
            if tag_id in seen:
                continue
            tags.append(self.get(tag_id))
            seen.add(tag_id)
        return tags

    def _ensure_unique(self, name: str, exclude_id: Optional[int] = None) -> str:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Tag name cannot be empty")
        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Tag.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValidationError("Tag with this name already exists")
        return clean_name

    def create(self, data: TagIn) -> Tag:
        tag = Tag(
            user_id=self.user_id,
            name=self._ensure_unique(data.name),
            color=data.color,
            icon=data.icon,
        )
        with atomic(self.session):
            self.session.add(tag)
        return tag

    def update(self, tag_id: int, data: TagUpdate) -> Tag:
        tag = self.get(tag_id)
        with atomic(self.session):
            if data.name is not None:
                tag.name = self._ensure_unique(data.name, exclude_id=tag.id)
            if data.color is not None:
                tag.color = data.color
            if data.icon is not None:
                tag.icon = data.icon
        return tag

    def delete(self, tag_id: int) -> None:
        tag = self.get(tag_id)
        with atomic(self.session):
            self.session.execute(
                delete(Budget).where(Budget.user_id == self.user_id, Budget.tag_id == tag.id)
            )
            # Transaction and recurring payment links go with the tag.
            self.session.delete(tag)


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.balances = BalanceEngine(session, self.user_id)

    def _account(self, account_id: int) -> Account:
        return AccountService(self.session, self.user_id).get(account_id)

    @staticmethod
    def _check_target(
        txn_type: TransactionType,
        account_id: int,
        target_account_id: Optional[int],
        target_amount: Optional[object],
    ) -> None:
        if txn_type == TransactionType.transfer:
            if target_account_id is None:
                raise ValidationError("Transfers require a target account")
            if target_account_id == account_id:
                raise ValidationError("Transfer target must differ from the source account")
        elif target_account_id is not None or target_amount is not None:
            raise ValidationError("Only transfers can have a target account or amount")

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def create(self, data: TransactionIn, *, commit: bool = True) -> Transaction:
        with atomic(self.session, commit=commit):
            self._account(data.account_id)
            self._check_target(
                data.type, data.account_id, data.target_account_id, data.target_amount
            )
            if data.target_account_id is not None:
                self._account(data.target_account_id)
            tags = TagService(self.session, self.user_id).get_many(data.tag_ids)

            txn = Transaction(
                user_id=self.user_id,
                account_id=data.account_id,
                type=data.type,
                amount_units=to_units(data.amount),
                currency=data.currency.upper(),
                target_account_id=data.target_account_id,
                target_amount_units=(
                    to_units(data.target_amount)
                    if data.target_amount is not None
                    else None
                ),
                description=data.description,
                date=data.date or local_today(),
            )
            txn.tags = tags
            self.session.add(txn)
            self.session.flush()
            self.balances.apply(txn)
        logger.info(
            f"transaction_create: id={txn.id} type={data.type.value} "
            f"account_id={data.account_id} amount={data.amount}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        with atomic(self.session):
            txn = self.get(transaction_id)
            values = {
                field: value
                for field, value in data.model_dump(exclude_unset=True).items()
                if value is not None or field in NULLABLE_TRANSACTION_FIELDS
            }

            txn_type = values.get("type", txn.type)
            account_id = values.get("account_id", txn.account_id)
            if txn_type == TransactionType.transfer:
                target_account_id = values.get("target_account_id", txn.target_account_id)
                if "target_amount" in values:
                    target_amount = values["target_amount"]
                    target_amount_units = (
                        to_units(target_amount) if target_amount is not None else None
                    )
                else:
                    target_amount_units = txn.target_amount_units
            else:
                self._check_target(
                    txn_type,
                    account_id,
                    values.get("target_account_id"),
                    values.get("target_amount"),
                )
                target_account_id = None
                target_amount_units = None
            self._check_target(txn_type, account_id, target_account_id, None)

            self._account(account_id)
            if target_account_id is not None:
                self._account(target_account_id)
            tags = None
            if "tag_ids" in values:
                tags = TagService(self.session, self.user_id).get_many(values["tag_ids"])

            self.balances.reverse(txn)

            txn.type = txn_type
            txn.account_id = account_id
            txn.target_account_id = target_account_id
            txn.target_amount_units = target_amount_units
            if "amount" in values:
                txn.amount_units = to_units(values["amount"])
            if "currency" in values:
                txn.currency = values["currency"].upper()
            if "description" in values:
                txn.description = values["description"]
            if "date" in values:
                txn.date = values["date"]
            if tags is not None:
                txn.tags = tags
            self.session.flush()

            self.balances.apply(txn)
        logger.info(f"transaction_update: id={transaction_id} fields={sorted(values)}")
        return txn

    def delete(self, transaction_id: int) -> None:
        with atomic(self.session):
            txn = self.get(transaction_id)
            self.balances.reverse(txn)
            self.session.delete(txn)
        logger.info(f"transaction_delete: id={transaction_id}")

    def _filter_conditions(self, filters: TransactionFilters) -> list:
        conditions = [Transaction.user_id == self.user_id]
        if filters.start:
            conditions.append(Transaction.date >= filters.start)
        if filters.end:
            conditions.append(Transaction.date <= filters.end)
        if filters.account_id:
            conditions.append(Transaction.account_id == filters.account_id)
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        return conditions

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        """Return one page of transactions and the unpaginated total.

        The tag filter narrows the fetched page only; ``total`` counts the
        rows matching the other filters.
        """
        filters = filters or TransactionFilters()
        conditions = self._filter_conditions(filters)
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(*conditions)
            .order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
            .offset(offset)
            .limit(limit)
        )
        rows = list(self.session.scalars(stmt).all())
        if filters.tag_id:
            rows = [
                txn for txn in rows if any(tag.id == filters.tag_id for tag in txn.tags)
            ]
        total = self.session.execute(
            select(func.count(Transaction.id)).where(*conditions)
        ).scalar_one()
        return rows, int(total or 0)


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(self, month: Optional[str] = None) -> list[Budget]:
        stmt = (
            select(Budget)
            .join(Budget.tag)
            .options(joinedload(Budget.tag))
            .where(Budget.user_id == self.user_id)
            .order_by(Tag.name, Budget.month)
        )
        if month:
            stmt = stmt.where(Budget.month == month)
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFound("Budget not found")
        return budget

    def upsert(self, data: BudgetIn) -> tuple[Budget, bool]:
        tag = TagService(self.session, self.user_id).get(data.tag_id)
        month_period(data.month)
        budget = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.tag_id == tag.id,
                Budget.month == data.month,
            )
        )
        created = budget is None
        with atomic(self.session):
            if created:
                budget = Budget(
                    user_id=self.user_id,
                    tag_id=tag.id,
                    month=data.month,
                    amount_units=to_units(data.amount),
                )
                self.session.add(budget)
            else:
                budget.amount_units = to_units(data.amount)
        return budget, created

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        with atomic(self.session):
            self.session.delete(budget)

    def progress(self, month: str) -> list[dict[str, object]]:
        period = month_period(month)
        budgets = self.list(month)
        spent_stmt = (
            select(
                Tag.id.label("tag_id"),
                func.coalesce(func.sum(Transaction.amount_units), 0).label("spent"),
            )
            .select_from(Transaction)
            .join(Transaction.tags)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Tag.id)
        )
        spent_by_tag = {
            int(row.tag_id): int(row.spent or 0)
            for row in self.session.execute(spent_stmt)
        }
        out: list[dict[str, object]] = []
        for budget in budgets:
            spent = spent_by_tag.get(budget.tag_id, 0)
            out.append(
                {
                    "budget_id": budget.id,
                    "tag_id": budget.tag_id,
                    "tag_name": budget.tag.name,
                    "month": budget.month,
                    "amount": budget.amount,
                    "spent": from_units(spent),
                    "remaining": from_units(budget.amount_units - spent),
                }
            )
        return out


def goal_progress(balance: Decimal, target: Decimal) -> Decimal:
    return min(Decimal(100), balance / target * 100).quantize(Decimal("0.01"))


class GoalService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    @staticmethod
    def describe(goal: Goal) -> dict[str, object]:
        account = goal.account
        return {
            "id": goal.id,
            "account_id": goal.account_id,
            "name": goal.name,
            "target_amount": goal.target_amount,
            "current_amount": account.balance,
            "currency": account.currency,
            "progress": goal_progress(account.balance, goal.target_amount),
            "created_at": goal.created_at,
        }

    def list_all(self) -> list[dict[str, object]]:
        stmt = (
            select(Goal)
            .options(joinedload(Goal.account))
            .where(Goal.user_id == self.user_id)
            .order_by(Goal.created_at, Goal.id)
        )
        return [self.describe(goal) for goal in self.session.scalars(stmt).all()]

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise NotFound("Goal not found")
        return goal

    def create(self, data: GoalIn) -> Goal:
        account = AccountService(self.session, self.user_id).get(data.account_id)
        goal = Goal(
            user_id=self.user_id,
            account_id=account.id,
            name=data.name,
            target_amount_units=to_units(data.target_amount),
        )
        with atomic(self.session):
            self.session.add(goal)
        return goal

    def update(self, goal_id: int, data: GoalUpdate) -> Goal:
        goal = self.get(goal_id)
        if data.account_id is not None:
            AccountService(self.session, self.user_id).get(data.account_id)
        with atomic(self.session):
            if data.account_id is not None:
                goal.account_id = data.account_id
            if data.name is not None:
                goal.name = data.name
            if data.target_amount is not None:
                goal.target_amount_units = to_units(data.target_amount)
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        with atomic(self.session):
            self.session.delete(goal)


class RecurringPaymentService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, payment_id: int) -> RecurringPayment:
        payment = self.session.get(RecurringPayment, payment_id)
        if not payment or payment.user_id != self.user_id:
            raise NotFound("Recurring payment not found")
        return payment

    def list(self, active: Optional[bool] = None) -> list[RecurringPayment]:
        stmt = (
            select(RecurringPayment)
            .options(selectinload(RecurringPayment.tags))
            .where(RecurringPayment.user_id == self.user_id)
            .order_by(RecurringPayment.next_date, RecurringPayment.id)
        )
        if active is not None:
            stmt = stmt.where(RecurringPayment.is_active.is_(active))
        return self.session.scalars(stmt).all()

    def due(self, today: Optional[date] = None) -> list[RecurringPayment]:
        today = today or local_today()
        return [p for p in self.list(active=True) if p.next_date <= today]

    @staticmethod
    def _check_type(txn_type: TransactionType) -> None:
        if txn_type == TransactionType.transfer:
            raise ValidationError("Recurring payments must be income or expense")

    def create(self, data: RecurringPaymentIn) -> RecurringPayment:
        account = AccountService(self.session, self.user_id).get(data.account_id)
        self._check_type(data.type)
        tags = TagService(self.session, self.user_id).get_many(data.tag_ids)
        payment = RecurringPayment(
            user_id=self.user_id,
            account_id=account.id,
            type=data.type,
            amount_units=to_units(data.amount),
            description=data.description,
            frequency=data.frequency.strip().lower(),
            next_date=data.next_date,
            is_active=data.is_active,
        )
        payment.tags = tags
        with atomic(self.session):
            self.session.add(payment)
        return payment

    def update(self, payment_id: int, data: RecurringPaymentUpdate) -> RecurringPayment:
        payment = self.get(payment_id)
        if data.account_id is not None:
            AccountService(self.session, self.user_id).get(data.account_id)
        if data.type is not None:
            self._check_type(data.type)
        tags = None
        if data.tag_ids is not None:
            tags = TagService(self.session, self.user_id).get_many(data.tag_ids)
        with atomic(self.session):
            if data.account_id is not None:
                payment.account_id = data.account_id
            if data.type is not None:
                payment.type = data.type
            if data.amount is not None:
                payment.amount_units = to_units(data.amount)
            if "description" in data.model_fields_set:
                payment.description = data.description
            if data.frequency is not None:
                payment.frequency = data.frequency.strip().lower()
            if data.is_active is not None:
                payment.is_active = data.is_active
            if tags is not None:
                payment.tags = tags
        return payment

    def toggle(self, payment_id: int, is_active: bool) -> RecurringPayment:
        payment = self.get(payment_id)
        with atomic(self.session):
            payment.is_active = is_active
        return payment

    def delete(self, payment_id: int) -> None:
        payment = self.get(payment_id)
        with atomic(self.session):
            self.session.delete(payment)

    def execute(self, payment_id: int) -> Execution:
        return RecurringEngine(self.session, self.user_id).execute(payment_id)


class AnalyticsService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _conditions(
        self,
        period: Period,
        transaction_type: Optional[TransactionType] = None,
    ) -> list:
        conditions = [Transaction.user_id == self.user_id]
        if period.start:
            conditions.append(Transaction.date >= period.start)
        if period.end:
            conditions.append(Transaction.date <= period.end)
        if transaction_type:
            conditions.append(Transaction.type == transaction_type)
        return conditions

    def summary(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> dict[str, object]:
        conditions = self._conditions(Period("summary", start, end), transaction_type)

        totals_units = {t: 0 for t in TransactionType}
        count = 0
        totals_stmt = (
            select(
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_units), 0).label("total"),
                func.count(Transaction.id).label("n"),
            )
            .where(*conditions)
            .group_by(Transaction.type)
        )
        for row in self.session.execute(totals_stmt):
            totals_units[TransactionType(row.type)] = int(row.total or 0)
            count += int(row.n or 0)

        income_sum = func.coalesce(
            func.sum(
                case(
                    (
                        Transaction.type == TransactionType.income,
                        Transaction.amount_units,
                    ),
                    else_=0,
                )
            ),
            0,
        )
        expense_sum = func.coalesce(
            func.sum(
                case(
                    (
                        Transaction.type == TransactionType.expense,
                        Transaction.amount_units,
                    ),
                    else_=0,
                )
            ),
            0,
        )
        by_tag_stmt = (
            select(
                Tag.id.label("tag_id"),
                Tag.name.label("name"),
                Tag.color.label("color"),
                Tag.icon.label("icon"),
                income_sum.label("income"),
                expense_sum.label("expense"),
            )
            .select_from(Transaction)
            .join(Transaction.tags)
            .where(
                *conditions,
                Transaction.type.in_([TransactionType.income, TransactionType.expense]),
            )
            .group_by(Tag.id, Tag.name, Tag.color, Tag.icon)
            .order_by(expense_sum.desc(), Tag.name)
        )
        by_tag = []
        for row in self.session.execute(by_tag_stmt):
            income = int(row.income or 0)
            expense = int(row.expense or 0)
            by_tag.append(
                {
                    "tag_id": int(row.tag_id),
                    "name": row.name,
                    "color": row.color,
                    "icon": row.icon,
                    "income": from_units(income),
                    "expense": from_units(expense),
                    "total": from_units(income - expense),
                }
            )

        income = totals_units[TransactionType.income]
        expense = totals_units[TransactionType.expense]
        return {
            "totals": {t.value: from_units(v) for t, v in totals_units.items()},
            "balance": from_units(income - expense),
            "by_tag": by_tag,
            "transaction_count": count,
        }

    def trends(
        self, months: int = 12, *, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        """Income and expense per ``YYYY-MM``; months without transactions are omitted."""
        if not 1 <= months <= MAX_TREND_MONTHS:
            raise ValidationError(f"months must be between 1 and {MAX_TREND_MONTHS}")
        today = today or local_today()
        start = add_months(today, -months)
        rows = self.session.execute(
            select(Transaction.date, Transaction.type, Transaction.amount_units)
            .where(Transaction.user_id == self.user_id, Transaction.date >= start)
            .order_by(Transaction.date)
        ).all()

        buckets: dict[str, dict[str, int]] = {}
        for row in rows:
            key = f"{row.date.year:04d}-{row.date.month:02d}"
            bucket = buckets.setdefault(key, {"income": 0, "expense": 0})
            if row.type == TransactionType.income:
                bucket["income"] += int(row.amount_units)
            elif row.type == TransactionType.expense:
                bucket["expense"] += int(row.amount_units)

        return [
            {
                "month": key,
                "income": from_units(bucket["income"]),
                "expense": from_units(bucket["expense"]),
                "balance": from_units(bucket["income"] - bucket["expense"]),
            }
            for key, bucket in sorted(buckets.items())
        ]

    def balance_history(
        self,
        account_id: Optional[int] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[BalanceSnapshot]:
        if account_id is not None:
            AccountService(self.session, self.user_id).get(account_id)
        stmt = (
            select(BalanceSnapshot)
            .join(BalanceSnapshot.account)
            .options(joinedload(BalanceSnapshot.account))
            .where(Account.user_id == self.user_id)
            .order_by(BalanceSnapshot.date, BalanceSnapshot.account_id)
        )
        if account_id is not None:
            stmt = stmt.where(BalanceSnapshot.account_id == account_id)
        if start:
            stmt = stmt.where(BalanceSnapshot.date >= start)
        if end:
            stmt = stmt.where(BalanceSnapshot.date <= end)
        return self.session.scalars(stmt).all()

    def snapshot(self, on_date: Optional[date] = None) -> list[BalanceSnapshot]:
        """Record every account's current balance for ``on_date``, overwriting a same-day row."""
        on_date = on_date or local_today()
        accounts = self.session.scalars(
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.id)
            .execution_options(populate_existing=True)
        ).all()
        if not accounts:
            return []
        existing = {
            snap.account_id: snap
            for snap in self.session.scalars(
                select(BalanceSnapshot).where(
                    BalanceSnapshot.account_id.in_([a.id for a in accounts]),
                    BalanceSnapshot.date == on_date,
                )
            )
        }
        snapshots: list[BalanceSnapshot] = []
        with atomic(self.session):
            for account in accounts:
                snap = existing.get(account.id)
                if snap:
                    snap.balance_units = account.balance_units
                    snap.created_at = datetime.utcnow()
                else:
                    snap = BalanceSnapshot(
                        account_id=account.id,
                        date=on_date,
                        balance_units=account.balance_units,
                    )
                    self.session.add(snap)
                snapshots.append(snap)
        logger.info(
            f"balance_snapshot: user_id={self.user_id} date={on_date.isoformat()} "
            f"accounts={len(snapshots)}"
        )
        return snapshots
