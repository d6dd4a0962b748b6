# src/tipledger/runtime/apply/staking.py
from __future__ import annotations

"""Stake deposits, withdrawals and custody funding.

Custody book-keeping:
  stake          custody += amount, total_staked += amount
  unstake        custody -= amount, total_staked -= amount
  fund_reserve   custody += amount
so custody_reserve >= total_staked holds across all three.
"""

from typing import Any, Dict

from tipledger.ledger.types import AccountState
from tipledger.runtime.apply.accrual import accrue_account
from tipledger.runtime.errors import InsufficientFundsError, ValidationError
from tipledger.runtime.ledger_store import LedgerTxn

Json = Dict[str, Any]


def deposit_stake(txn: LedgerTxn, acct: AccountState, amount: int) -> None:
    """Stake-deposit effect shared by stake() and claim-to-stake. No validation."""
    g = txn.global_state
    if acct.staked_balance == 0:
        acct.stake_start_time = txn.now
    acct.staked_balance = int(acct.staked_balance) + int(amount)
    g.total_staked = int(g.total_staked) + int(amount)


def apply_stake(txn: LedgerTxn, account: str, amount: int) -> AccountState:
    g = txn.global_state
    if amount < int(g.minimum_stake):
        raise ValidationError("below_minimum_stake", {"amount": amount, "minimum_stake": int(g.minimum_stake)})

    accrue_account(txn, account)
    acct = txn.account(account)
    deposit_stake(txn, acct, amount)
    g.custody_reserve = int(g.custody_reserve) + int(amount)

    txn.emit("STAKED", account, amount=int(amount), stake_start_time=acct.stake_start_time)
    return acct


def apply_unstake(txn: LedgerTxn, account: str, amount: int) -> AccountState:
    acct = txn.account(account)
    if amount > acct.staked_balance:
        raise InsufficientFundsError(
            "insufficient_stake", required=amount, available=acct.staked_balance, details={"account": account}
        )

    # Accrue on the old balance before it shrinks. Granted allowance is kept
    # even when the balance returns to zero.
    accrue_account(txn, account)

    g = txn.global_state
    acct.staked_balance = int(acct.staked_balance) - int(amount)
    if acct.staked_balance == 0:
        acct.stake_start_time = None
    g.total_staked = int(g.total_staked) - int(amount)
    g.custody_reserve = int(g.custody_reserve) - int(amount)

    txn.emit("UNSTAKED", account, amount=int(amount))
    return acct


def apply_fund_reserve(txn: LedgerTxn, funder: str, amount: int) -> Json:
    g = txn.global_state
    g.custody_reserve = int(g.custody_reserve) + int(amount)
    txn.emit("RESERVE_FUNDED", funder, amount=int(amount))
    return {"applied": "RESERVE_FUNDED", "amount": int(amount), "custody_reserve": int(g.custody_reserve)}
