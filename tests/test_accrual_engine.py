from __future__ import annotations

from tipledger.ledger.accrual import accrue, accrued_allowance, accrued_over, preview
from tipledger.ledger.constants import UNIT
from tipledger.ledger.types import AccountState, RateSegment

DAY = 86_400
FLAT = [RateSegment(version=1, rate_bps=100, effective_ts=0)]


def test_one_percent_of_100_over_one_day_is_one() -> None:
    assert accrued_allowance(100, 100, DAY) == 1
    assert accrued_allowance(100 * UNIT, 100, DAY) == UNIT


def test_accrual_rounds_down_and_never_negative() -> None:
    assert accrued_allowance(100, 100, DAY - 1) == 0
    assert accrued_allowance(0, 100, DAY) == 0
    assert accrued_allowance(100, 0, DAY) == 0
    assert accrued_allowance(100, 100, -5) == 0


def test_first_accrual_initializes_without_backdating() -> None:
    a = AccountState(account="a", staked_balance=100 * UNIT, stake_start_time=1_000)
    assert accrue(a, 5_000, FLAT) == 0
    assert a.last_accrual_time == 5_000
    assert a.allowance_granted == 0


def test_same_instant_accrual_is_idempotent() -> None:
    a = AccountState(account="a", staked_balance=100 * UNIT, stake_start_time=0, last_accrual_time=0)
    first = accrue(a, DAY, FLAT)
    assert first == UNIT
    assert accrue(a, DAY, FLAT) == 0
    assert a.allowance_granted == UNIT


def test_earlier_now_does_not_move_time_backwards() -> None:
    a = AccountState(account="a", staked_balance=100 * UNIT, stake_start_time=0, last_accrual_time=DAY)
    assert accrue(a, DAY - 10, FLAT) == 0
    assert a.last_accrual_time == DAY


def test_time_always_advances_and_fraction_is_forfeited() -> None:
    # 100 units at 1%/day grant 1 unit per day; half a day floors to zero.
    a = AccountState(account="a", staked_balance=100, stake_start_time=0, last_accrual_time=0)
    assert accrue(a, DAY // 2, FLAT) == 0
    assert a.last_accrual_time == DAY // 2
    assert accrue(a, DAY, FLAT) == 0
    assert a.allowance_granted == 0


def test_piecewise_rate_schedule_floors_once() -> None:
    sched = [
        RateSegment(version=1, rate_bps=100, effective_ts=0),
        RateSegment(version=2, rate_bps=300, effective_ts=DAY),
    ]
    # one day at 1% plus one day at 3% on 100 tokens
    assert accrued_over(100 * UNIT, 0, 2 * DAY, sched) == 4 * UNIT
    # window starting inside the second segment only sees the new rate
    assert accrued_over(100 * UNIT, DAY, 2 * DAY, sched) == 3 * UNIT
    # numerators are summed before flooring: 0.5 + 1.5 = 2 units
    assert accrued_over(100, DAY // 2, DAY + DAY // 2, sched) == 2


def test_single_rate_window_matches_flat_formula() -> None:
    sched = [RateSegment(version=1, rate_bps=100, effective_ts=DAY)]
    assert accrued_over(100 * UNIT, 0, 3 * DAY, sched) == accrued_allowance(100 * UNIT, 100, 2 * DAY) == 2 * UNIT
    assert accrued_over(100 * UNIT, 0, DAY, sched) == 0
    assert accrued_over(100, 0, DAY + DAY - 1, sched) == accrued_allowance(100, 100, DAY - 1) == 0


def test_preview_does_not_mutate() -> None:
    a = AccountState(account="a", staked_balance=100 * UNIT, stake_start_time=0, last_accrual_time=0)
    assert preview(a, 3 * DAY, FLAT) == 3 * UNIT
    assert a.allowance_granted == 0
    assert a.last_accrual_time == 0
    assert preview(AccountState(account="b"), 3 * DAY, FLAT) == 0
