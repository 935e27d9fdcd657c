from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import NotFound, ValidationError
from models import Account, Transaction, TransactionType, transaction_tags
from schemas import AccountIn, TagIn, TransactionIn, TransactionUpdate
from services import (
    AccountService,
    TagService,
    TransactionFilters,
    TransactionService,
)


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _balance(session: Session, account_id: int) -> Decimal:
    account = session.get(Account, account_id)
    session.refresh(account)
    return account.balance


def _txn(account_id: int, txn_type: TransactionType, amount: str, **kwargs) -> TransactionIn:
    kwargs.setdefault("date", date(2024, 3, 1))
    return TransactionIn(
        account_id=account_id,
        type=txn_type,
        amount=Decimal(amount),
        currency=kwargs.pop("currency", "RUB"),
        **kwargs,
    )


def test_income_transfer_and_delete_scenario():
    engine = _engine()

    with Session(engine) as session:
        accounts = AccountService(session)
        a = accounts.create(AccountIn(name="A", currency="RUB"))
        b = accounts.create(AccountIn(name="B", currency="RUB"))
        service = TransactionService(session)

        service.create(_txn(a.id, TransactionType.income, "1000"))
        assert _balance(session, a.id) == Decimal("1000.00000000")

        transfer = service.create(
            _txn(a.id, TransactionType.transfer, "300", target_account_id=b.id)
        )
        assert _balance(session, a.id) == Decimal("700")
        assert _balance(session, b.id) == Decimal("300")

        service.delete(transfer.id)
        assert _balance(session, a.id) == Decimal("1000")
        assert _balance(session, b.id) == Decimal("0")


def test_transfer_with_target_amount_credits_converted_amount():
    engine = _engine()

    with Session(engine) as session:
        accounts = AccountService(session)
        rub = accounts.create(AccountIn(name="Rub", currency="RUB", balance=Decimal("500")))
        usd = accounts.create(AccountIn(name="Usd", currency="USD"))

        TransactionService(session).create(
            _txn(
                rub.id,
                TransactionType.transfer,
                "150",
                target_account_id=usd.id,
                target_amount=Decimal("1.5"),
            )
        )

        assert _balance(session, rub.id) == Decimal("350")
        assert _balance(session, usd.id) == Decimal("1.50000000")


def test_create_defaults_date_and_uppercases_currency():
    engine = _engine()

    with Session(engine) as session:
        account = AccountService(session).create(AccountIn(name="Cash"))
        txn = TransactionService(session).create(
            TransactionIn(
                account_id=account.id,
                type=TransactionType.expense,
                amount=Decimal("1"),
                currency="rub",
            )
        )

        assert txn.currency == "RUB"
        assert txn.date is not None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"type": TransactionType.transfer},
        {"type": TransactionType.transfer, "same_target": True},
        {"type": TransactionType.income, "with_target": True},
        {"type": TransactionType.expense, "target_amount": Decimal("3")},
    ],
)
def test_invalid_shapes_are_rejected_without_balance_change(kwargs):
    engine = _engine()

    with Session(engine) as session:
        accounts = AccountService(session)
        a = accounts.create(AccountIn(name="A", balance=Decimal("100")))
        b = accounts.create(AccountIn(name="B"))
        extra = {}
        if kwargs.get("same_target"):
            extra["target_account_id"] = a.id
        if kwargs.get("with_target"):
            extra["target_account_id"] = b.id
        if "target_amount" in kwargs:
            extra["target_amount"] = kwargs["target_amount"]

        with pytest.raises(ValidationError):
            TransactionService(session).create(_txn(a.id, kwargs["type"], "10", **extra))

        assert _balance(session, a.id) == Decimal("100")
        assert _balance(session, b.id) == Decimal("0")
        assert session.scalar(select(func.count(Transaction.id))) == 0


def test_accounts_of_other_owners_are_not_found():
    engine = _engine()

    with Session(engine) as session:
        mine = AccountService(session, user_id=1).create(AccountIn(name="Mine"))
        theirs = AccountService(session, user_id=2).create(
            AccountIn(name="Theirs", balance=Decimal("10"))
        )
        service = TransactionService(session, user_id=1)

        with pytest.raises(NotFound):
            service.create(_txn(theirs.id, TransactionType.expense, "5"))
        with pytest.raises(NotFound):
            service.create(
                _txn(mine.id, TransactionType.transfer, "5", target_account_id=theirs.id)
            )
        with pytest.raises(NotFound):
            service.create(_txn(424242, TransactionType.income, "5"))

        assert _balance(session, theirs.id) == Decimal("10")
        assert _balance(session, mine.id) == Decimal("0")


def test_transactions_are_invisible_to_other_owners():
    engine = _engine()

    with Session(engine) as session:
        account = AccountService(session, user_id=1).create(AccountIn(name="Mine"))
        txn = TransactionService(session, user_id=1).create(
            _txn(account.id, TransactionType.income, "5")
        )
        other = TransactionService(session, user_id=2)

        with pytest.raises(NotFound):
            other.get(txn.id)
        with pytest.raises(NotFound):
            other.delete(txn.id)
        assert other.list()[1] == 0
        assert _balance(session, account.id) == Decimal("5")


def test_update_amount_rebalances():
    engine = _engine()

    with Session(engine) as session:
        account = AccountService(session).create(
            AccountIn(name="Cash", balance=Decimal("100"))
        )
        service = TransactionService(session)
        txn = service.create(_txn(account.id, TransactionType.expense, "30"))

        service.update(txn.id, TransactionUpdate(amount=Decimal("45.5")))

        assert _balance(session, account.id) == Decimal("54.5")


def test_update_changes_type_and_accounts():
    engine = _engine()

    with Session(engine) as session:
        accounts = AccountService(session)
        a = accounts.create(AccountIn(name="A", balance=Decimal("100")))
        b = accounts.create(AccountIn(name="B"))
        service = TransactionService(session)
        txn = service.create(_txn(a.id, TransactionType.expense, "20"))

        service.update(
            txn.id,
            TransactionUpdate(type=TransactionType.transfer, target_account_id=b.id),
        )
        assert _balance(session, a.id) == Decimal("80")
        assert _balance(session, b.id) == Decimal("20")

        updated = service.update(txn.id, TransactionUpdate(type=TransactionType.income))
        assert updated.target_account_id is None
        assert updated.target_amount_units is None
        assert _balance(session, a.id) == Decimal("120")
        assert _balance(session, b.id) == Decimal("0")


def test_invalid_update_leaves_everything_unchanged():
    engine = _engine()

    with Session(engine) as session:
        accounts = AccountService(session)
        a = accounts.create(AccountIn(name="A", balance=Decimal("100")))
        b = accounts.create(AccountIn(name="B"))
        service = TransactionService(session)
        txn = service.create(_txn(a.id, TransactionType.expense, "20"))

        with pytest.raises(ValidationError):
            service.update(txn.id, TransactionUpdate(target_account_id=b.id))
        with pytest.raises(ValidationError):
            service.update(
                txn.id,
                TransactionUpdate(type=TransactionType.transfer, target_account_id=a.id),
            )
        with pytest.raises(NotFound):
            service.update(txn.id, TransactionUpdate(account_id=999))

        stored = service.get(txn.id)
        assert stored.type == TransactionType.expense
        assert stored.amount == Decimal("20")
        assert _balance(session, a.id) == Decimal("80")
        assert _balance(session, b.id) == Decimal("0")


def test_balances_are_conserved_across_mixed_operations():
    engine = _engine()

    with Session(engine) as session:
        accounts = AccountService(session)
        a = accounts.create(AccountIn(name="A", balance=Decimal("10")))
        b = accounts.create(AccountIn(name="B", balance=Decimal("5")))
        service = TransactionService(session)

        income = service.create(_txn(a.id, TransactionType.income, "100.12345678"))
        expense = service.create(_txn(b.id, TransactionType.expense, "7.5"))
        transfer = service.create(
            _txn(a.id, TransactionType.transfer, "40", target_account_id=b.id)
        )
        service.update(expense.id, TransactionUpdate(account_id=a.id))
        service.update(transfer.id, TransactionUpdate(amount=Decimal("41")))
        service.delete(income.id)

        remaining = session.scalars(select(Transaction)).all()
        expected = Decimal("15")
        for txn in remaining:
            if txn.type == TransactionType.income:
                expected += txn.amount
            elif txn.type == TransactionType.expense:
                expected -= txn.amount

        assert _balance(session, a.id) + _balance(session, b.id) == expected
        assert _balance(session, a.id) == Decimal("-38.5")
        assert _balance(session, b.id) == Decimal("46")


def test_list_orders_filters_and_counts():
    engine = _engine()

    with Session(engine) as session:
        accounts = AccountService(session)
        a = accounts.create(AccountIn(name="A"))
        b = accounts.create(AccountIn(name="B"))
        food = TagService(session).create(TagIn(name="food"))
        service = TransactionService(session)

        first = service.create(_txn(a.id, TransactionType.income, "1", date=date(2024, 1, 1)))
        second = service.create(
            _txn(a.id, TransactionType.expense, "2", date=date(2024, 2, 1), tag_ids=[food.id])
        )
        third = service.create(
            _txn(
                a.id,
                TransactionType.transfer,
                "3",
                date=date(2024, 2, 1),
                target_account_id=b.id,
            )
        )
        service.create(_txn(b.id, TransactionType.income, "4", date=date(2024, 3, 1)))

        rows, total = service.list(TransactionFilters(account_id=a.id))
        assert [t.id for t in rows] == [third.id, second.id, first.id]
        assert total == 3

        rows, total = service.list(TransactionFilters(account_id=b.id))
        assert [t.account_id for t in rows] == [b.id]
        assert third.id not in {t.id for t in rows}
        assert total == 1

        rows, total = service.list(
            TransactionFilters(start=date(2024, 2, 1), end=date(2024, 2, 29))
        )
        assert {t.id for t in rows} == {second.id, third.id}

        rows, total = service.list(TransactionFilters(type=TransactionType.income))
        assert total == 2

        rows, total = service.list(limit=2, offset=1)
        assert len(rows) == 2
        assert total == 4

        rows, total = service.list(TransactionFilters(tag_id=food.id))
        assert [t.id for t in rows] == [second.id]
        assert total == 4


def test_transaction_tags_are_deduplicated_and_replaced():
    engine = _engine()

    with Session(engine) as session:
        account = AccountService(session).create(AccountIn(name="Cash"))
        tags = TagService(session)
        food = tags.create(TagIn(name="Food"))
        fun = tags.create(TagIn(name="Fun"))
        service = TransactionService(session)

        txn = service.create(
            _txn(account.id, TransactionType.expense, "5", tag_ids=[food.id, food.id])
        )
        assert [t.name for t in txn.tags] == ["Food"]

        updated = service.update(txn.id, TransactionUpdate(tag_ids=[fun.id]))
        assert [t.name for t in updated.tags] == ["Fun"]

        with pytest.raises(NotFound):
            service.update(txn.id, TransactionUpdate(tag_ids=[9999]))
        assert [t.name for t in service.get(txn.id).tags] == ["Fun"]


def test_delete_removes_tag_links():
    engine = _engine()

    with Session(engine) as session:
        account = AccountService(session).create(AccountIn(name="Cash"))
        food = TagService(session).create(TagIn(name="Food"))
        service = TransactionService(session)
        txn = service.create(
            _txn(account.id, TransactionType.expense, "5", tag_ids=[food.id])
        )

        service.delete(txn.id)

        links = session.execute(select(func.count()).select_from(transaction_tags)).scalar()
        assert links == 0
        with pytest.raises(NotFound):
            service.get(txn.id)
