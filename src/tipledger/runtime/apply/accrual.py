# src/tipledger/runtime/apply/accrual.py
from __future__ import annotations

from tipledger.ledger import accrual as engine
from tipledger.ledger.types import AccountState
from tipledger.runtime.ledger_store import LedgerTxn


def accrue_account(txn: LedgerTxn, account_id: str) -> int:
    """Bring one account's allowance up to txn.now and log the step.

    Runs first in every mutating operation that touches the account, so the
    operation sees allowance computed from the pre-operation stake.
    """
    acct: AccountState = txn.account(account_id)
    before = acct.last_accrual_time
    delta = engine.accrue(acct, txn.now, txn.rate_schedule())
    if acct.last_accrual_time != before:
        txn.emit(
            "ACCRUED",
            acct.account,
            delta=int(delta),
            accrued_to=int(acct.last_accrual_time or 0),
            staked_balance=int(acct.staked_balance),
        )
    return int(delta)
