import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Response
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import ConsistencyError, LedgerError, NotFound
from models import TransactionType
from periods import resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdate,
    BalanceSnapshotOut,
    BalanceSyncIn,
    BudgetIn,
    BudgetOut,
    BudgetProgressOut,
    ExecutionOut,
    GoalIn,
    GoalOut,
    GoalUpdate,
    RecurringPaymentIn,
    RecurringPaymentOut,
    RecurringPaymentUpdate,
    SummaryOut,
    TagIn,
    TagOut,
    TagUpdate,
    TransactionIn,
    TransactionOut,
    TransactionPage,
    TransactionUpdate,
    TrendPointOut,
)
from services import (
    AccountService,
    AnalyticsService,
    BudgetService,
    GoalService,
    RecurringPaymentService,
    TagService,
    TransactionFilters,
    TransactionService,
    get_current_user_id,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Pocket Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    return x_user_id or get_current_user_id()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConsistencyError):
        logger.error(f"consistency_error: detail={exc}")
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


# Accounts


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(db: Session = Depends(get_db), user_id: int = Depends(get_user_id)):
    return AccountService(db, user_id).list_all()


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(
    payload: AccountIn, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    return AccountService(db, user_id).create(payload)


@app.get("/api/accounts/{account_id}", response_model=AccountOut)
def get_account(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        return AccountService(db, user_id).get(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int,
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return AccountService(db, user_id).update(account_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/accounts/{account_id}/sync", response_model=AccountOut)
def sync_account_balance(
    account_id: int,
    payload: BalanceSyncIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return AccountService(db, user_id).sync_balance(account_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        AccountService(db, user_id).delete(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# Transactions


@app.get("/api/transactions", response_model=TransactionPage)
def list_transactions(
    start: Optional[date] = None,
    end: Optional[date] = None,
    account_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    tag_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    if limit < 1 or offset < 0:
        raise HTTPException(status_code=400, detail="Invalid pagination")
    filters = TransactionFilters(
        start=start, end=end, account_id=account_id, type=type, tag_id=tag_id
    )
    rows, total = TransactionService(db, user_id).list(filters, limit=limit, offset=offset)
    return TransactionPage(
        data=[TransactionOut.model_validate(txn) for txn in rows], total=total
    )


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return TransactionService(db, user_id).create(payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return TransactionService(db, user_id).get(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return TransactionService(db, user_id).update(transaction_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# Tags


@app.get("/api/tags", response_model=list[TagOut])
def list_tags(db: Session = Depends(get_db), user_id: int = Depends(get_user_id)):
    return TagService(db, user_id).list_all()


@app.post("/api/tags", response_model=TagOut, status_code=201)
def create_tag(
    payload: TagIn, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        return TagService(db, user_id).create(payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/tags/{tag_id}", response_model=TagOut)
def update_tag(
    tag_id: int,
    payload: TagUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return TagService(db, user_id).update(tag_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/tags/{tag_id}", status_code=204)
def delete_tag(
    tag_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        TagService(db, user_id).delete(tag_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# Budgets


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(
    month: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return BudgetService(db, user_id).list(month)


@app.put("/api/budgets", response_model=BudgetOut)
def upsert_budget(
    payload: BudgetIn,
    response: Response,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        budget, created = BudgetService(db, user_id).upsert(payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    response.status_code = 201 if created else 200
    return budget


@app.get("/api/budgets/progress", response_model=list[BudgetProgressOut])
def budget_progress(
    month: str, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        return BudgetService(db, user_id).progress(month)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        BudgetService(db, user_id).delete(budget_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# Goals


@app.get("/api/goals", response_model=list[GoalOut])
def list_goals(db: Session = Depends(get_db), user_id: int = Depends(get_user_id)):
    return GoalService(db, user_id).list_all()


@app.post("/api/goals", response_model=GoalOut, status_code=201)
def create_goal(
    payload: GoalIn, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    service = GoalService(db, user_id)
    try:
        return service.describe(service.create(payload))
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/goals/{goal_id}", response_model=GoalOut)
def get_goal(
    goal_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    service = GoalService(db, user_id)
    try:
        return service.describe(service.get(goal_id))
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/goals/{goal_id}", response_model=GoalOut)
def update_goal(
    goal_id: int,
    payload: GoalUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    service = GoalService(db, user_id)
    try:
        return service.describe(service.update(goal_id, payload))
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/goals/{goal_id}", status_code=204)
def delete_goal(
    goal_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        GoalService(db, user_id).delete(goal_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# Recurring payments


@app.get("/api/recurring-payments", response_model=list[RecurringPaymentOut])
def list_recurring_payments(
    active: Optional[bool] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return RecurringPaymentService(db, user_id).list(active)


@app.post("/api/recurring-payments", response_model=RecurringPaymentOut, status_code=201)
def create_recurring_payment(
    payload: RecurringPaymentIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return RecurringPaymentService(db, user_id).create(payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/recurring-payments/{payment_id}", response_model=RecurringPaymentOut)
def get_recurring_payment(
    payment_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        return RecurringPaymentService(db, user_id).get(payment_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/recurring-payments/{payment_id}", response_model=RecurringPaymentOut)
def update_recurring_payment(
    payment_id: int,
    payload: RecurringPaymentUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return RecurringPaymentService(db, user_id).update(payment_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/api/recurring-payments/{payment_id}/toggle", response_model=RecurringPaymentOut
)
def toggle_recurring_payment(
    payment_id: int,
    active: bool,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return RecurringPaymentService(db, user_id).toggle(payment_id, active)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/recurring-payments/{payment_id}", status_code=204)
def delete_recurring_payment(
    payment_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        RecurringPaymentService(db, user_id).delete(payment_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/recurring-payments/{payment_id}/execute", response_model=ExecutionOut)
def execute_recurring_payment(
    payment_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        execution = RecurringPaymentService(db, user_id).execute(payment_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return ExecutionOut(
        transaction=TransactionOut.model_validate(execution.transaction),
        next_date=execution.next_date,
    )


# Analytics


@app.get("/api/analytics/summary", response_model=SummaryOut)
def analytics_summary(
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    type: Optional[TransactionType] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        resolved = resolve_period(period, start, end)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return AnalyticsService(db, user_id).summary(resolved.start, resolved.end, type)


@app.get("/api/analytics/trends", response_model=list[TrendPointOut])
def analytics_trends(
    months: int = 12, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        return AnalyticsService(db, user_id).trends(months)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/analytics/balance-history", response_model=list[BalanceSnapshotOut])
def analytics_balance_history(
    account_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return AnalyticsService(db, user_id).balance_history(account_id, start, end)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/analytics/snapshot", response_model=list[BalanceSnapshotOut])
def analytics_snapshot(
    on_date: Optional[date] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return AnalyticsService(db, user_id).snapshot(on_date)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
