import logging
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from errors import LedgerError
from models import Account, RecurringPayment
from recurrence import RecurringEngine, local_today
from services import AnalyticsService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


def run_due_payments(session: Session, today: Optional[date] = None) -> int:
    """Catch up every active payment whose next date has arrived, for all owners."""
    today = today or local_today()
    payments = session.scalars(
        select(RecurringPayment)
        .where(RecurringPayment.is_active.is_(True), RecurringPayment.next_date <= today)
        .order_by(RecurringPayment.next_date, RecurringPayment.id)
    ).all()
    posted = 0
    for payment in payments:
        payment_id, user_id = payment.id, payment.user_id
        try:
            posted += RecurringEngine(session, user_id).catch_up(payment, today)
        except LedgerError as exc:
            logger.warning(
                f"recurring_skip: payment_id={payment_id} user_id={user_id} error={exc}"
            )
    return posted


def run_daily_snapshots(session: Session, on_date: Optional[date] = None) -> int:
    on_date = on_date or local_today()
    user_ids = session.scalars(select(Account.user_id).distinct()).all()
    recorded = 0
    for user_id in user_ids:
        recorded += len(AnalyticsService(session, user_id).snapshot(on_date))
    return recorded


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_payments(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=recurring source={source}")
        with session_scope() as session:
            count = run_due_payments(session)
        logger.info(f"scheduler_run: job=recurring source={source} occurrences_posted={count}")

    def _run_snapshots(self, source: str = "manual") -> None:
        with session_scope() as session:
            count = run_daily_snapshots(session)
        logger.info(f"scheduler_run: job=snapshots source={source} snapshots={count}")

    def start(self) -> None:
        self._run_payments("startup")

        self.scheduler.add_job(
            self._run_payments,
            CronTrigger(hour=0, minute=5),
            args=["daily_00:05"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_payments,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.add_job(
            self._run_snapshots,
            CronTrigger(hour=23, minute=55),
            args=["daily_23:55"],
            id="balance_snapshots_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily recurring run, hourly safety net and daily snapshots")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
