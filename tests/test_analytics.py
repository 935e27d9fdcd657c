from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import NotFound, ValidationError
from models import BalanceSnapshot, TransactionType
from periods import month_period, resolve_period
from scheduler import run_daily_snapshots
from schemas import AccountIn, TagIn, TransactionIn
from services import AccountService, AnalyticsService, TagService, TransactionService


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _post(session: Session, account_id: int, txn_type: TransactionType, amount: str, on: date, **kwargs):
    return TransactionService(session).create(
        TransactionIn(
            account_id=account_id,
            type=txn_type,
            amount=Decimal(amount),
            currency="RUB",
            date=on,
            **kwargs,
        )
    )


def test_summary_groups_by_type_and_tag():
    engine = _engine()

    with Session(engine) as session:
        accounts = AccountService(session)
        card = accounts.create(AccountIn(name="Card", balance=Decimal("1000")))
        savings = accounts.create(AccountIn(name="Savings"))
        tags = TagService(session)
        food = tags.create(TagIn(name="food"))
        salary = tags.create(TagIn(name="salary"))

        _post(session, card.id, TransactionType.expense, "40", date(2024, 3, 2), tag_ids=[food.id])
        _post(session, card.id, TransactionType.expense, "25", date(2024, 3, 3), tag_ids=[food.id])
        _post(session, card.id, TransactionType.expense, "10", date(2024, 3, 4))
        _post(session, card.id, TransactionType.income, "500", date(2024, 3, 5), tag_ids=[salary.id])
        _post(
            session,
            card.id,
            TransactionType.transfer,
            "100",
            date(2024, 3, 6),
            target_account_id=savings.id,
            tag_ids=[food.id],
        )

        summary = AnalyticsService(session).summary()

        assert summary["totals"] == {
            "income": Decimal("500"),
            "expense": Decimal("75"),
            "transfer": Decimal("100"),
        }
        assert summary["balance"] == Decimal("425")
        assert summary["transaction_count"] == 5
        by_name = {row["name"]: row for row in summary["by_tag"]}
        assert by_name["food"]["expense"] == Decimal("65")
        assert by_name["food"]["income"] == Decimal("0")
        assert by_name["food"]["total"] == Decimal("-65")
        assert by_name["salary"]["income"] == Decimal("500")
        assert [row["name"] for row in summary["by_tag"]] == ["food", "salary"]


def test_summary_respects_range_and_type():
    engine = _engine()

    with Session(engine) as session:
        card = AccountService(session).create(AccountIn(name="Card"))
        _post(session, card.id, TransactionType.expense, "1", date(2024, 2, 29))
        _post(session, card.id, TransactionType.expense, "2", date(2024, 3, 1))
        _post(session, card.id, TransactionType.income, "4", date(2024, 3, 31))
        analytics = AnalyticsService(session)

        march = analytics.summary(date(2024, 3, 1), date(2024, 3, 31))
        assert march["totals"]["expense"] == Decimal("2")
        assert march["totals"]["income"] == Decimal("4")

        expenses = analytics.summary(transaction_type=TransactionType.expense)
        assert expenses["totals"]["income"] == Decimal("0")
        assert expenses["totals"]["expense"] == Decimal("3")


def test_summary_is_scoped_to_owner():
    engine = _engine()

    with Session(engine) as session:
        theirs = AccountService(session, user_id=2).create(AccountIn(name="Theirs"))
        TransactionService(session, user_id=2).create(
            TransactionIn(
                account_id=theirs.id,
                type=TransactionType.income,
                amount=Decimal("9"),
                currency="RUB",
                date=date(2024, 3, 1),
            )
        )

        summary = AnalyticsService(session, user_id=1).summary()

        assert summary["transaction_count"] == 0
        assert summary["by_tag"] == []


def test_trends_are_sparse_and_ordered():
    engine = _engine()

    with Session(engine) as session:
        accounts = AccountService(session)
        card = accounts.create(AccountIn(name="Card"))
        savings = accounts.create(AccountIn(name="Savings"))
        _post(session, card.id, TransactionType.income, "100", date(2023, 1, 10))
        _post(session, card.id, TransactionType.income, "100", date(2024, 3, 10))
        _post(session, card.id, TransactionType.expense, "30", date(2024, 3, 20))
        _post(
            session,
            card.id,
            TransactionType.transfer,
            "5",
            date(2024, 4, 2),
            target_account_id=savings.id,
        )
        _post(session, card.id, TransactionType.expense, "12.5", date(2024, 6, 1))

        points = AnalyticsService(session).trends(12, today=date(2024, 6, 15))

        assert [p["month"] for p in points] == ["2024-03", "2024-04", "2024-06"]
        assert points[0]["balance"] == Decimal("70")
        assert points[1]["income"] == Decimal("0")
        assert points[1]["expense"] == Decimal("0")
        assert points[2]["expense"] == Decimal("12.5")


def test_snapshot_is_idempotent_per_day():
    engine = _engine()

    with Session(engine) as session:
        accounts = AccountService(session)
        card = accounts.create(AccountIn(name="Card", balance=Decimal("10")))
        accounts.create(AccountIn(name="Cash", balance=Decimal("3")))
        analytics = AnalyticsService(session)

        analytics.snapshot(date(2024, 3, 1))
        _post(session, card.id, TransactionType.income, "5", date(2024, 3, 1))
        snapshots = analytics.snapshot(date(2024, 3, 1))

        assert len(snapshots) == 2
        assert session.scalar(select(func.count(BalanceSnapshot.id))) == 2
        history = analytics.balance_history(card.id)
        assert [(s.date, s.balance) for s in history] == [(date(2024, 3, 1), Decimal("15"))]


def test_balance_history_orders_and_filters():
    engine = _engine()

    with Session(engine) as session:
        accounts = AccountService(session)
        card = accounts.create(AccountIn(name="Card", balance=Decimal("1")))
        cash = accounts.create(AccountIn(name="Cash", balance=Decimal("2")))
        analytics = AnalyticsService(session)
        for day in (3, 1, 2):
            analytics.snapshot(date(2024, 3, day))

        history = analytics.balance_history()
        assert [(s.date.day, s.account_id) for s in history] == [
            (1, card.id),
            (1, cash.id),
            (2, card.id),
            (2, cash.id),
            (3, card.id),
            (3, cash.id),
        ]
        bounded = analytics.balance_history(cash.id, date(2024, 3, 2), date(2024, 3, 3))
        assert [s.date.day for s in bounded] == [2, 3]


def test_balance_history_rejects_foreign_account():
    engine = _engine()

    with Session(engine) as session:
        theirs = AccountService(session, user_id=2).create(AccountIn(name="Theirs"))
        AnalyticsService(session, user_id=2).snapshot(date(2024, 3, 1))

        with pytest.raises(NotFound):
            AnalyticsService(session, user_id=1).balance_history(theirs.id)
        assert AnalyticsService(session, user_id=1).balance_history() == []


def test_resolve_period():
    today = date(2024, 3, 15)
    assert resolve_period("this_month", None, None, today=today) == month_period("2024-03")
    last = resolve_period("last_month", None, None, today=today)
    assert (last.start, last.end) == (date(2024, 2, 1), date(2024, 2, 29))
    unbounded = resolve_period(None, None, None, today=today)
    assert (unbounded.start, unbounded.end) == (None, None)
    custom = resolve_period("custom", "2024-01-01", "2024-01-31", today=today)
    assert (custom.start, custom.end) == (date(2024, 1, 1), date(2024, 1, 31))

    with pytest.raises(ValidationError):
        resolve_period("custom", "2024-01-01", None, today=today)
    with pytest.raises(ValidationError):
        resolve_period(None, "2024-02-01", "2024-01-01", today=today)
    with pytest.raises(ValidationError):
        resolve_period("fortnight", None, None, today=today)


def test_daily_snapshots_cover_every_owner():
    engine = _engine()

    with Session(engine) as session:
        AccountService(session, user_id=1).create(AccountIn(name="Mine", balance=Decimal("1")))
        AccountService(session, user_id=2).create(AccountIn(name="Theirs", balance=Decimal("2")))

        assert run_daily_snapshots(session, date(2024, 3, 1)) == 2
        assert run_daily_snapshots(session, date(2024, 3, 1)) == 2
        assert session.scalar(select(func.count(BalanceSnapshot.id))) == 2


def test_trends_reject_out_of_range_months():
    engine = _engine()

    with Session(engine) as session:
        card = AccountService(session).create(AccountIn(name="Card"))
        _post(session, card.id, TransactionType.income, "7", date(1930, 1, 5))
        analytics = AnalyticsService(session)

        for months in (0, -3, 1201, 30000):
            with pytest.raises(ValidationError):
                analytics.trends(months, today=date(2024, 6, 1))

        points = analytics.trends(1200, today=date(2024, 6, 1))
        assert [p["month"] for p in points] == ["1930-01"]
