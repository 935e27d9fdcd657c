"""Balance engine: the only code path that changes ``Account.balance_units``.

Every change is an SQL increment against the stored value
(``balance_units = balance_units + :delta``) so concurrent postings against the
same account never overwrite each other. Callers run the engine inside a
session transaction and roll back on any exception.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from errors import ConsistencyError
from models import Account, Transaction, TransactionType
from money import AmountLike, to_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceDelta:
    account_id: int
    units: int


def posting_deltas(txn: Transaction) -> list[BalanceDelta]:
    """Signed balance changes implied by posting ``txn`` as currently stored."""
    if txn.type == TransactionType.income:
        return [BalanceDelta(txn.account_id, txn.amount_units)]
    if txn.type == TransactionType.expense:
        return [BalanceDelta(txn.account_id, -txn.amount_units)]
    if txn.type == TransactionType.transfer:
        if txn.target_account_id is None:
            raise ConsistencyError(f"Transfer {txn.id} has no target account")
        credited = (
            txn.target_amount_units
            if txn.target_amount_units is not None
            else txn.amount_units
        )
        return [
            BalanceDelta(txn.account_id, -txn.amount_units),
            BalanceDelta(txn.target_account_id, credited),
        ]
    raise ConsistencyError(f"Unknown transaction type: {txn.type}")


class BalanceEngine:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def apply(self, txn: Transaction) -> None:
        self._post(txn, posting_deltas(txn), action="apply")

    def reverse(self, txn: Transaction) -> None:
        inverse = [BalanceDelta(d.account_id, -d.units) for d in posting_deltas(txn)]
        self._post(txn, inverse, action="reverse")

    def reverse_except(self, txn: Transaction, account_id: int) -> None:
        """Reverse ``txn`` on every account it touches other than ``account_id``.

        Used when ``account_id`` itself is about to be removed.
        """
        inverse = [
            BalanceDelta(d.account_id, -d.units)
            for d in posting_deltas(txn)
            if d.account_id != account_id
        ]
        self._post(txn, inverse, action="reverse")

    def sync(
        self,
        account: Account,
        balance: AmountLike,
        *,
        synced_at: Optional[datetime] = None,
    ) -> None:
        account.balance_units = to_units(balance)
        account.last_synced_at = synced_at or datetime.utcnow()
        self.session.flush()
        logger.info(
            f"balance_sync: account_id={account.id} balance_units={account.balance_units}"
        )

    def _post(self, txn: Transaction, deltas: list[BalanceDelta], *, action: str) -> None:
        done: list[BalanceDelta] = []
        for delta in deltas:
            if self._increment(delta.account_id, delta.units):
                done.append(delta)
                continue
            for applied in reversed(done):
                self._increment(applied.account_id, -applied.units)
            logger.error(
                f"balance_{action}_failed: transaction_id={txn.id} "
                f"account_id={delta.account_id} compensated={len(done)}"
            )
            raise ConsistencyError(
                f"Could not {action} transaction {txn.id} on account {delta.account_id}"
            )
        logger.debug(
            f"balance_{action}: transaction_id={txn.id} "
            + " ".join(f"{d.account_id}:{d.units:+d}" for d in deltas)
        )

    def _increment(self, account_id: int, units: int) -> bool:
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == self.user_id)
            .values(balance_units=Account.balance_units + units)
        )
        return result.rowcount == 1
