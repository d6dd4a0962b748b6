# src/tipledger/ledger/invariants.py
from __future__ import annotations

"""Ledger invariants.

Two levels:

  - check_account_state / check_global_state run on every touched record
    before a store transaction commits. A failure aborts the transaction.

  - audit_totals runs over the whole ledger (audit tooling, tests) and reports
    cross-account identities instead of raising.
"""

from typing import Any, Dict, Iterable, List

from tipledger.ledger.constants import MAX_DAILY_RATE_BPS
from tipledger.ledger.types import AccountState, GlobalState
from tipledger.runtime.errors import InvariantViolation

Json = Dict[str, Any]

_NON_NEGATIVE_ACCOUNT_FIELDS = (
    "staked_balance",
    "allowance_granted",
    "allowance_spent",
    "tips_allocated",
    "tips_claimed",
)


def check_account_state(acct: AccountState) -> None:
    """Raise InvariantViolation if `acct` is not a valid account state."""
    for name in _NON_NEGATIVE_ACCOUNT_FIELDS:
        v = getattr(acct, name)
        if isinstance(v, bool) or not isinstance(v, int):
            raise InvariantViolation("non_integer_amount", {"account": acct.account, "field": name})
        if v < 0:
            raise InvariantViolation("negative_amount", {"account": acct.account, "field": name, "value": v})

    if acct.allowance_spent > acct.allowance_granted:
        raise InvariantViolation(
            "allowance_overspent",
            {"account": acct.account, "granted": acct.allowance_granted, "spent": acct.allowance_spent},
        )
    if acct.tips_claimed > acct.tips_allocated:
        raise InvariantViolation(
            "tips_overclaimed",
            {"account": acct.account, "allocated": acct.tips_allocated, "claimed": acct.tips_claimed},
        )

    # stake_start_time is present iff there is stake.
    if acct.staked_balance > 0 and acct.stake_start_time is None:
        raise InvariantViolation("stake_start_missing", {"account": acct.account})
    if acct.staked_balance == 0 and acct.stake_start_time is not None:
        raise InvariantViolation("stake_start_stale", {"account": acct.account})


def check_global_state(g: GlobalState) -> None:
    for name in ("total_staked", "custody_reserve", "minimum_stake", "rewards_allocated", "rate_version"):
        v = getattr(g, name)
        if not isinstance(v, int) or v < 0:
            raise InvariantViolation("bad_global_field", {"field": name, "value": v})

    if g.custody_reserve < g.total_staked:
        raise InvariantViolation(
            "custody_below_total_staked",
            {"custody_reserve": g.custody_reserve, "total_staked": g.total_staked},
        )
    if not (0 <= int(g.daily_rate_bps) <= MAX_DAILY_RATE_BPS):
        raise InvariantViolation("rate_out_of_bounds", {"daily_rate_bps": g.daily_rate_bps})


def audit_totals(accounts: Iterable[AccountState], g: GlobalState) -> List[Json]:
    """Return a list of cross-account problems (empty when the ledger is consistent).

    Identities:
      - sum(staked_balance) == total_staked
      - sum(tips_allocated) == sum(allowance_spent) - spent_adjustment + rewards_allocated
    """
    problems: List[Json] = []
    staked = 0
    allocated = 0
    spent = 0
    for a in accounts:
        staked += int(a.staked_balance)
        allocated += int(a.tips_allocated)
        spent += int(a.allowance_spent)
        try:
            check_account_state(a)
        except InvariantViolation as e:
            problems.append({"check": "account", "reason": e.reason, "details": e.details})

    try:
        check_global_state(g)
    except InvariantViolation as e:
        problems.append({"check": "global", "reason": e.reason, "details": e.details})

    if staked != int(g.total_staked):
        problems.append({"check": "conservation", "sum_staked": staked, "total_staked": int(g.total_staked)})

    expected_allocated = spent - int(g.spent_adjustment) + int(g.rewards_allocated)
    if allocated != expected_allocated:
        problems.append(
            {
                "check": "allocation_identity",
                "sum_tips_allocated": allocated,
                "sum_allowance_spent": spent,
                "spent_adjustment": int(g.spent_adjustment),
                "rewards_allocated": int(g.rewards_allocated),
            }
        )
    return problems


__all__ = ["check_account_state", "check_global_state", "audit_totals"]
