# src/tipledger/ledger/accrual.py
from __future__ import annotations

"""Lazy, per-account allowance accrual.

There is no background timer. Accrual runs at the start of every mutating
operation on an account and is driven by the account's own
`last_accrual_time` (not `stake_start_time`).

Rounding policy:
  `last_accrual_time` always advances to `now`. The fractional unit lost to
  floor division is forfeited, never carried forward. Callers that accrue very
  often on tiny stakes therefore accrue slightly less than callers that accrue
  rarely; this is accepted economic policy.

Rate changes:
  Rate changes are versioned segments. Accrual over [last, now) sums the
  per-segment numerators and floors once, so an account that did not touch the
  ledger across a rate change accrues exactly what the schedule says.
"""

from typing import List, Optional, Sequence

from tipledger.ledger.constants import ACCRUAL_DENOMINATOR
from tipledger.ledger.types import AccountState, RateSegment


def accrued_allowance(staked_balance: int, daily_rate_bps: int, elapsed_seconds: int) -> int:
    """staked * rate_bps * elapsed / (10000 * 86400), rounded down. Never negative."""
    s = int(staked_balance)
    r = int(daily_rate_bps)
    e = int(elapsed_seconds)
    if s <= 0 or r <= 0 or e <= 0:
        return 0
    return (s * r * e) // ACCRUAL_DENOMINATOR


def _accrual_numerator(staked_balance: int, start: int, end: int, schedule: Sequence[RateSegment]) -> int:
    segs: List[RateSegment] = sorted(schedule, key=lambda x: (x.effective_ts, x.version))
    num = 0
    for i, seg in enumerate(segs):
        seg_end = segs[i + 1].effective_ts if i + 1 < len(segs) else None
        lo = max(int(start), int(seg.effective_ts))
        hi = int(end) if seg_end is None else min(int(end), int(seg_end))
        if hi <= lo:
            continue
        num += int(staked_balance) * int(seg.rate_bps) * (hi - lo)
    return num


def accrued_over(staked_balance: int, start: int, end: int, schedule: Sequence[RateSegment]) -> int:
    """Accrual for [start, end) across a versioned rate schedule."""
    if int(staked_balance) <= 0 or int(end) <= int(start) or not schedule:
        return 0
    if len(schedule) == 1:
        seg = schedule[0]
        return accrued_allowance(staked_balance, seg.rate_bps, int(end) - max(int(start), int(seg.effective_ts)))
    return _accrual_numerator(staked_balance, start, end, schedule) // ACCRUAL_DENOMINATOR


def preview(acct: AccountState, now: int, schedule: Sequence[RateSegment]) -> int:
    """Allowance that `accrue(acct, now)` would add, without touching `acct`."""
    last = acct.last_accrual_time
    if last is None:
        return 0
    return accrued_over(acct.staked_balance, int(last), int(now), schedule)


def accrue(acct: AccountState, now: int, schedule: Sequence[RateSegment]) -> int:
    """Advance `acct` to `now`. Returns the newly granted allowance.

    - first call on an account only initializes `last_accrual_time`
    - repeated calls at the same `now` return 0
    - a `now` earlier than `last_accrual_time` returns 0 and leaves time untouched
    """
    n = int(now)
    last: Optional[int] = acct.last_accrual_time
    if last is None:
        acct.last_accrual_time = n
        return 0
    if n <= int(last):
        return 0

    delta = accrued_over(acct.staked_balance, int(last), n, schedule)
    acct.allowance_granted = int(acct.allowance_granted) + int(delta)
    acct.last_accrual_time = n
    return int(delta)


__all__ = ["accrued_allowance", "accrued_over", "preview", "accrue"]
