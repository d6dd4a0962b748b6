# src/tipledger/runtime/apply/claims.py
from __future__ import annotations

from typing import Any, Dict, Optional

from tipledger.ledger.idempotency import normalize_key
from tipledger.ledger.types import ClaimMode
from tipledger.runtime.apply.accrual import accrue_account
from tipledger.runtime.apply.staking import deposit_stake
from tipledger.runtime.errors import ConflictError, InsufficientFundsError, ValidationError
from tipledger.runtime.ledger_store import LedgerTxn

Json = Dict[str, Any]


def apply_claim(txn: LedgerTxn, recipient: str, mode: ClaimMode, key: Optional[Any] = None) -> int:
    """Claim everything claimable for `recipient`, exactly once.

    - to_balance: tokens leave custody
    - to_stake: tokens stay in custody and become stake in the same transaction

    Either way the amount must be covered by free reserve (custody not already
    backing stake); otherwise nothing changes. A claim to_stake on a ledger
    whose custody holds only stake fails with insufficient_reserve until the
    reserve is funded (fund_reserve) with enough free tokens.
    """
    k: Optional[str] = None
    if key is not None:
        k = normalize_key(key)
        if txn.key_seen(k):
            raise ConflictError("duplicate_request", {"idempotency_key": k})

    acct = txn.account(recipient)
    amount = int(acct.claimable)
    if amount <= 0:
        raise ValidationError("nothing_to_claim", {"account": recipient})

    g = txn.global_state
    if g.free_reserve < amount:
        raise InsufficientFundsError(
            "insufficient_reserve",
            required=amount,
            available=max(0, g.free_reserve),
            details={"account": recipient, "mode": mode.value},
        )

    if k is not None:
        txn.mark_key(k, "claim")

    accrue_account(txn, recipient)

    acct.tips_claimed = int(acct.tips_claimed) + amount
    tip_keys = txn.claim_allocated_tips(recipient)

    if mode is ClaimMode.TO_STAKE:
        deposit_stake(txn, acct, amount)
    else:
        g.custody_reserve = int(g.custody_reserve) - amount

    txn.emit(
        "TIPS_CLAIMED",
        recipient,
        amount=amount,
        mode=mode.value,
        tip_keys=tip_keys,
        stake_start_time=acct.stake_start_time,
        request_key=k,
    )
    return amount


__all__ = ["apply_claim"]
