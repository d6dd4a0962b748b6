# src/tipledger/runtime/apply/admin.py
from __future__ import annotations

"""Operator-only state transitions.

Every function here checks the actor's role inside the same transaction that
applies the change, so a revoked operator cannot race a grant.
"""

from typing import Any, Dict, List, Sequence, Tuple

from tipledger.ledger.constants import MAX_DAILY_RATE_BPS, ROLE_OWNER, ROLES
from tipledger.runtime.apply.accrual import accrue_account
from tipledger.runtime.apply.common import normalize_account, require_non_negative, require_role
from tipledger.runtime.errors import InsufficientFundsError, ValidationError
from tipledger.runtime.ledger_store import LedgerTxn

Json = Dict[str, Any]


def apply_set_daily_rate(txn: LedgerTxn, actor: str, rate_bps: Any) -> Json:
    require_role(txn, actor, ROLE_OWNER)
    rate = require_non_negative(rate_bps, field="rate_bps")
    if rate > MAX_DAILY_RATE_BPS:
        raise ValidationError("rate_too_high", {"rate_bps": rate, "max_rate_bps": MAX_DAILY_RATE_BPS})

    schedule = txn.rate_schedule()
    latest = max((s.effective_ts for s in schedule), default=0)
    if txn.now < latest:
        raise ValidationError("stale_timestamp", {"now": txn.now, "latest_rate_ts": latest})

    seg = txn.append_rate(rate, txn.now)
    txn.emit("RATE_SET", actor, rate_bps=seg.rate_bps, version=seg.version, effective_ts=seg.effective_ts)
    return {"applied": "RATE_SET", "rate_bps": seg.rate_bps, "version": seg.version, "effective_ts": seg.effective_ts}


def apply_set_minimum_stake(txn: LedgerTxn, actor: str, minimum_stake: Any) -> Json:
    require_role(txn, actor, ROLE_OWNER)
    m = require_non_negative(minimum_stake, field="minimum_stake")
    txn.global_state.minimum_stake = m
    txn.emit("MIN_STAKE_SET", actor, minimum_stake=m)
    return {"applied": "MIN_STAKE_SET", "minimum_stake": m}


def _reset_one(txn: LedgerTxn, account: str, granted: Any, spent: Any) -> Json:
    g_new = require_non_negative(granted, field="allowance_granted")
    s_new = require_non_negative(spent, field="allowance_spent")
    if s_new > g_new:
        raise ValidationError("spent_exceeds_granted", {"account": account, "granted": g_new, "spent": s_new})

    # Settle accrual up to now first so the reset value is authoritative as of now.
    accrue_account(txn, account)
    acct = txn.account(account)
    g = txn.global_state
    g.spent_adjustment = int(g.spent_adjustment) + (s_new - int(acct.allowance_spent))

    txn.allow_allowance_reset(account)
    acct.allowance_granted = g_new
    acct.allowance_spent = s_new
    txn.emit(
        "TIP_STATE_RESET",
        account,
        allowance_granted=g_new,
        allowance_spent=s_new,
        accrued_to=acct.last_accrual_time,
    )
    return {"account": account, "allowance_granted": g_new, "allowance_spent": s_new}


def apply_reset_tip_state(txn: LedgerTxn, actor: str, account: str, granted: Any, spent: Any) -> Json:
    require_role(txn, actor, ROLE_OWNER)
    return _reset_one(txn, account, granted, spent)


def validate_reset_batch(
    accounts: Sequence[Any],
    granted: Sequence[Any],
    spent: Sequence[Any],
) -> List[Tuple[str, Any, Any]]:
    """Shape checks for a batch reset. No state is read."""
    if not all(isinstance(x, (list, tuple)) for x in (accounts, granted, spent)):
        raise ValidationError("malformed_batch", {"reason": "accounts_granted_spent_must_be_lists"})
    if len(accounts) == 0:
        raise ValidationError("invalid_batch", {"reason": "empty"})
    if not (len(accounts) == len(granted) == len(spent)):
        raise ValidationError(
            "malformed_batch", {"accounts": len(accounts), "granted": len(granted), "spent": len(spent)}
        )
    ids = [normalize_account(a, field=f"accounts[{i}]") for i, a in enumerate(accounts)]
    if len(set(ids)) != len(ids):
        raise ValidationError("malformed_batch", {"reason": "duplicate_account"})
    return list(zip(ids, granted, spent))


def apply_reset_tip_state_batch(
    txn: LedgerTxn,
    actor: str,
    accounts: Sequence[Any],
    granted: Sequence[Any],
    spent: Sequence[Any],
) -> List[Json]:
    require_role(txn, actor, ROLE_OWNER)
    rows = validate_reset_batch(accounts, granted, spent)
    return [_reset_one(txn, a, g, s) for a, g, s in rows]


def apply_grant_role(txn: LedgerTxn, actor: str, account: str, role: str) -> Json:
    require_role(txn, actor, ROLE_OWNER)
    if role not in ROLES:
        raise ValidationError("unknown_role", {"role": role})
    changed = txn.grant_role(account, role)
    if changed:
        txn.emit("ROLE_GRANTED", account, role=role, by=actor)
    return {"applied": "ROLE_GRANTED", "account": account, "role": role, "changed": changed}


def apply_revoke_role(txn: LedgerTxn, actor: str, account: str, role: str) -> Json:
    require_role(txn, actor, ROLE_OWNER)
    if role not in ROLES:
        raise ValidationError("unknown_role", {"role": role})
    if role == ROLE_OWNER and txn.role_members(ROLE_OWNER) == [account]:
        raise ValidationError("last_owner", {"account": account})
    changed = txn.revoke_role(account, role)
    if changed:
        txn.emit("ROLE_REVOKED", account, role=role, by=actor)
    return {"applied": "ROLE_REVOKED", "account": account, "role": role, "changed": changed}


def apply_withdraw_reserve(txn: LedgerTxn, actor: str, amount: int) -> Json:
    """Owner recovery of surplus custody. Can never dip into custody backing stake."""
    require_role(txn, actor, ROLE_OWNER)
    g = txn.global_state
    if amount > g.free_reserve:
        raise InsufficientFundsError("insufficient_reserve", required=amount, available=max(0, g.free_reserve))
    g.custody_reserve = int(g.custody_reserve) - int(amount)
    txn.emit("RESERVE_WITHDRAWN", actor, amount=int(amount))
    return {"applied": "RESERVE_WITHDRAWN", "amount": int(amount), "custody_reserve": int(g.custody_reserve)}


__all__ = [
    "apply_set_daily_rate",
    "apply_set_minimum_stake",
    "apply_reset_tip_state",
    "apply_reset_tip_state_batch",
    "validate_reset_batch",
    "apply_grant_role",
    "apply_revoke_role",
    "apply_withdraw_reserve",
]
