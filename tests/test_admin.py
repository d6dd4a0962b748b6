from __future__ import annotations

import pytest

from conftest import DAY, T0, tip_key
from tipledger.ledger.constants import UNIT
from tipledger.ledger.types import TipKind
from tipledger.runtime.errors import InsufficientFundsError, NotAuthorizedError, ValidationError
from tipledger.runtime.executor import TipLedger


def test_rate_change_requires_owner(ledger: TipLedger) -> None:
    with pytest.raises(NotAuthorizedError) as ei:
        ledger.set_daily_allowance_rate_bps("mallory", 500, now=T0)
    assert ei.value.code == "forbidden"
    assert ledger.get_global_view().daily_rate_bps == 100


def test_rate_is_capped(ledger: TipLedger) -> None:
    with pytest.raises(ValidationError) as ei:
        ledger.set_daily_allowance_rate_bps("owner", 1001, now=T0)
    assert ei.value.reason == "rate_too_high"
    out = ledger.set_daily_allowance_rate_bps("owner", 1000, now=T0)
    assert out["version"] == 2


def test_rate_change_is_versioned_and_not_retroactive(ledger: TipLedger) -> None:
    ledger.stake("alice", 100 * UNIT, now=T0)
    ledger.set_daily_allowance_rate_bps("owner", 300, now=T0 + DAY)

    g = ledger.get_global_view()
    assert g.daily_rate_bps == 300
    assert g.rate_version == 2

    # alice never touched the ledger during the change: 1 day at 1% + 1 day at 3%
    assert ledger.accrue("alice", now=T0 + 2 * DAY) == 4 * UNIT


def test_rate_change_cannot_predate_schedule(ledger: TipLedger) -> None:
    ledger.set_daily_allowance_rate_bps("owner", 200, now=T0 + DAY)
    with pytest.raises(ValidationError) as ei:
        ledger.set_daily_allowance_rate_bps("owner", 300, now=T0)
    assert ei.value.reason == "stale_timestamp"


def test_minimum_stake_update(ledger: TipLedger) -> None:
    ledger.set_minimum_stake("owner", 5 * UNIT, now=T0)
    assert ledger.get_global_view().minimum_stake == 5 * UNIT
    with pytest.raises(ValidationError):
        ledger.stake("alice", 4 * UNIT, now=T0)
    with pytest.raises(NotAuthorizedError):
        ledger.set_minimum_stake("alice", 0, now=T0)


def test_reset_tip_state_overrides_allowance(ledger: TipLedger) -> None:
    ledger.stake("alice", 100 * UNIT, now=T0)
    ledger.send_tip("alice", "bob", UNIT, tip_key(1), now=T0 + 2 * DAY)

    out = ledger.reset_account_tip_state("owner", "alice", 10 * UNIT, 3 * UNIT, now=T0 + 2 * DAY)
    assert out == {"account": "alice", "allowance_granted": 10 * UNIT, "allowance_spent": 3 * UNIT}

    a = ledger.get_account_view("alice")
    assert a.available_allowance == 7 * UNIT
    assert a.last_accrual_time == T0 + 2 * DAY
    # allocations already made are untouched
    assert ledger.get_account_view("bob").claimable == UNIT

    # decreasing granted below the pre-reset value is allowed for operators
    ledger.reset_account_tip_state("owner", "alice", 0, 0, now=T0 + 2 * DAY)
    assert ledger.get_account_view("alice").available_allowance == 0
    assert ledger.audit()["ok"]


def test_reset_tip_state_validation(ledger: TipLedger) -> None:
    with pytest.raises(NotAuthorizedError):
        ledger.reset_account_tip_state("alice", "alice", 10, 0, now=T0)
    with pytest.raises(ValidationError) as ei:
        ledger.reset_account_tip_state("owner", "alice", 1, 2, now=T0)
    assert ei.value.reason == "spent_exceeds_granted"


def test_batch_reset(ledger: TipLedger) -> None:
    out = ledger.reset_accounts_tip_state_batch("owner", ["a", "b"], [5, 6], [1, 2], now=T0)
    assert [r["account"] for r in out] == ["a", "b"]
    assert ledger.get_account_view("b").available_allowance == 4

    with pytest.raises(ValidationError) as ei:
        ledger.reset_accounts_tip_state_batch("owner", ["a", "b"], [5], [1, 2], now=T0)
    assert ei.value.reason == "malformed_batch"

    # all-or-nothing: second entry is invalid, first is not applied
    with pytest.raises(ValidationError):
        ledger.reset_accounts_tip_state_batch("owner", ["a", "b"], [50, 1], [0, 2], now=T0)
    assert ledger.get_account_view("a").allowance_granted == 5


@pytest.mark.parametrize(
    "accounts, granted, spent",
    [
        ("ab", [5, 6], [1, 2]),
        (["a", "b"], "56", [1, 2]),
        (None, [5], [1]),
        (["a"], None, [0]),
    ],
)
def test_batch_reset_rejects_non_list_arguments(ledger: TipLedger, accounts, granted, spent) -> None:
    before = len(ledger.events(limit=1000))
    with pytest.raises(ValidationError) as ei:
        ledger.reset_accounts_tip_state_batch("owner", accounts, granted, spent, now=T0)
    assert ei.value.reason == "malformed_batch"

    # a string must not be split into per-character accounts
    for name in ("a", "b"):
        assert ledger.get_account_view(name).allowance_granted == 0
    assert len(ledger.events(limit=1000)) == before


def test_roles_grant_and_revoke(ledger: TipLedger) -> None:
    assert ledger.grant_role("owner", "bot", "distributor", now=T0)["changed"] is True
    assert ledger.grant_role("owner", "bot", "distributor", now=T0)["changed"] is False
    assert ledger.has_role("bot", "distributor")

    with pytest.raises(NotAuthorizedError):
        ledger.grant_role("bot", "bot", "owner", now=T0)
    with pytest.raises(ValidationError) as ei:
        ledger.grant_role("owner", "bot", "emperor", now=T0)
    assert ei.value.reason == "unknown_role"

    ledger.revoke_role("owner", "bot", "distributor", now=T0)
    assert not ledger.has_role("bot", "distributor")


def test_last_owner_cannot_be_revoked(ledger: TipLedger) -> None:
    with pytest.raises(ValidationError) as ei:
        ledger.revoke_role("owner", "owner", "owner", now=T0)
    assert ei.value.reason == "last_owner"

    ledger.grant_role("owner", "owner2", "owner", now=T0)
    ledger.revoke_role("owner2", "owner", "owner", now=T0)
    assert not ledger.has_role("owner", "owner")
    with pytest.raises(NotAuthorizedError):
        ledger.set_daily_allowance_rate_bps("owner", 10, now=T0)


def test_allocate_rewards_requires_distributor_and_is_claimable(ledger: TipLedger) -> None:
    with pytest.raises(NotAuthorizedError):
        ledger.allocate_rewards("bot", [("bob", UNIT)], [tip_key(1)], now=T0)

    ledger.grant_role("owner", "bot", "distributor", now=T0)
    ledger.fund_reserve("treasury", 5 * UNIT, now=T0)
    recs = ledger.allocate_rewards("bot", [("bob", UNIT), ("carol", 2 * UNIT)], [tip_key(1), tip_key(2)], now=T0)
    assert [r.kind for r in recs] == [TipKind.REWARD, TipKind.REWARD]
    assert ledger.get_global_view().rewards_allocated == 3 * UNIT
    # rewards do not spend allowance
    assert ledger.get_account_view("bot").allowance_spent == 0

    assert ledger.claim("carol", now=T0 + 1) == 2 * UNIT
    assert ledger.get_global_view().free_reserve == 3 * UNIT
    assert ledger.audit()["ok"]


def test_withdraw_reserve_is_bounded_by_free_reserve(ledger: TipLedger) -> None:
    ledger.stake("alice", 100 * UNIT, now=T0)
    ledger.fund_reserve("treasury", 2 * UNIT, now=T0)

    with pytest.raises(NotAuthorizedError):
        ledger.withdraw_reserve("alice", UNIT, now=T0)
    with pytest.raises(InsufficientFundsError) as ei:
        ledger.withdraw_reserve("owner", 3 * UNIT, now=T0)
    assert ei.value.reason == "insufficient_reserve"

    out = ledger.withdraw_reserve("owner", 2 * UNIT, now=T0)
    assert out["custody_reserve"] == 100 * UNIT
    assert ledger.get_global_view().free_reserve == 0
