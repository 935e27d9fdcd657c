import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import get_settings
from database import atomic
from errors import ConsistencyError, NotFound
from models import Account, Frequency, RecurringPayment, Transaction

logger = logging.getLogger(__name__)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    """Shift ``base`` by whole calendar months, clamping to the month's last day."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def calculate_next_date(frequency: str, from_date: date) -> date:
    if frequency == Frequency.daily.value:
        return from_date + timedelta(days=1)
    if frequency == Frequency.weekly.value:
        return from_date + timedelta(weeks=1)
    if frequency == Frequency.yearly.value:
        return add_months(from_date, 12)
    if frequency != Frequency.monthly.value:
        logger.warning(f"recurring_frequency_unknown: frequency={frequency!r} using=monthly")
    return add_months(from_date, 1)


def is_due(payment: RecurringPayment, today: date) -> bool:
    return payment.next_date <= today


@dataclass(frozen=True)
class Execution:
    transaction: Transaction
    next_date: date


class RecurringEngine:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def execute(self, payment_id: int, *, commit: bool = True) -> Execution:
        """Post the payment's current occurrence and advance ``next_date`` one period.

        Not idempotent: running it twice before ``next_date`` moves posts twice.
        The occurrence is rolled back with ``ConsistencyError`` when another run
        advanced ``next_date`` first.
        """
        from schemas import TransactionIn
        from services import TransactionService

        with atomic(self.session, commit=commit):
            payment = self.session.scalar(
                select(RecurringPayment)
                .where(RecurringPayment.id == payment_id)
                .execution_options(populate_existing=True)
            )
            if not payment or payment.user_id != self.user_id:
                raise NotFound("Recurring payment not found")
            account = self.session.get(Account, payment.account_id)
            if not account or account.user_id != self.user_id:
                raise NotFound("Account not found")

            occurrence_date = payment.next_date
            txn = TransactionService(self.session, self.user_id).create(
                TransactionIn(
                    account_id=payment.account_id,
                    type=payment.type,
                    amount=payment.amount,
                    currency=account.currency,
                    description=payment.description,
                    date=occurrence_date,
                    tag_ids=[tag.id for tag in payment.tags],
                ),
                commit=False,
            )
            next_date = calculate_next_date(payment.frequency, occurrence_date)
            # Only the run that still sees occurrence_date may advance it.
            advanced = self.session.execute(
                update(RecurringPayment)
                .where(
                    RecurringPayment.id == payment.id,
                    RecurringPayment.next_date == occurrence_date,
                )
                .values(next_date=next_date)
            )
            if advanced.rowcount != 1:
                logger.warning(
                    f"recurring_execute_conflict: payment_id={payment_id} "
                    f"occurrence={occurrence_date.isoformat()}"
                )
                raise ConsistencyError(
                    f"Recurring payment {payment_id} was already advanced past "
                    f"{occurrence_date.isoformat()}"
                )

        logger.info(
            f"recurring_execute: payment_id={payment_id} transaction_id={txn.id} "
            f"occurrence={occurrence_date.isoformat()} next={next_date.isoformat()}"
        )
        return Execution(transaction=txn, next_date=next_date)

    def catch_up(self, payment: RecurringPayment, today: date) -> int:
        """Execute every occurrence of ``payment`` due on or before ``today``."""
        posted = 0
        max_iterations = 366
        while posted < max_iterations:
            # Another run may have advanced or paused the payment meanwhile.
            self.session.refresh(payment)
            if not payment.is_active or payment.next_date > today:
                break
            self.execute(payment.id)
            posted += 1
        return posted
