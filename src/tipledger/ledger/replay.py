# src/tipledger/ledger/replay.py
from __future__ import annotations

"""Rebuild ledger state from the append-only event log.

The event log is authoritative for audit: folding every event in seq order
must reproduce the stored accounts, global state, rate history, roles and tip
statuses exactly. `audit_store` reports every difference instead of raising.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Set, Tuple

from tipledger.ledger.invariants import audit_totals
from tipledger.ledger.types import AccountState, GlobalState, LedgerEvent, RateSegment, TipKind, TipStatus

Json = Dict[str, Any]


@dataclass
class ReplayState:
    accounts: Dict[str, AccountState] = field(default_factory=dict)
    global_state: GlobalState = field(default_factory=lambda: GlobalState(daily_rate_bps=0, rate_version=0))
    schedule: List[RateSegment] = field(default_factory=list)
    roles: Set[Tuple[str, str]] = field(default_factory=set)
    tips: Dict[str, TipStatus] = field(default_factory=dict)
    last_seq: int = 0

    def account(self, account_id: str) -> AccountState:
        a = self.accounts.get(account_id)
        if a is None:
            a = AccountState(account=account_id)
            self.accounts[account_id] = a
        return a


class ReplayError(ValueError):
    """The event log contains an event this module cannot fold."""


def _amt(p: Json, key: str = "amount") -> int:
    return int(p[key])


def apply_event(st: ReplayState, ev: LedgerEvent) -> None:
    p = ev.payload
    g = st.global_state
    k = ev.kind

    if k == "RATE_SET":
        seg = RateSegment(version=int(p["version"]), rate_bps=int(p["rate_bps"]), effective_ts=int(p["effective_ts"]))
        st.schedule.append(seg)
        g.rate_version = seg.version
        g.daily_rate_bps = seg.rate_bps
    elif k == "MIN_STAKE_SET":
        g.minimum_stake = int(p["minimum_stake"])
    elif k == "ROLE_GRANTED":
        st.roles.add((ev.account, str(p["role"])))
    elif k == "ROLE_REVOKED":
        st.roles.discard((ev.account, str(p["role"])))
    elif k == "ACCRUED":
        a = st.account(ev.account)
        a.allowance_granted += _amt(p, "delta")
        a.last_accrual_time = int(p["accrued_to"])
    elif k == "STAKED":
        a = st.account(ev.account)
        amt = _amt(p)
        a.staked_balance += amt
        a.stake_start_time = p.get("stake_start_time")
        g.total_staked += amt
        g.custody_reserve += amt
    elif k == "UNSTAKED":
        a = st.account(ev.account)
        amt = _amt(p)
        a.staked_balance -= amt
        if a.staked_balance == 0:
            a.stake_start_time = None
        g.total_staked -= amt
        g.custody_reserve -= amt
    elif k == "TIP_ALLOCATED":
        amt = _amt(p)
        kind = TipKind(str(p["kind"]))
        if kind is TipKind.TIP:
            st.account(str(p["sender"])).allowance_spent += amt
        else:
            g.rewards_allocated += amt
        st.account(str(p["recipient"])).tips_allocated += amt
        st.tips[str(p["key"])] = TipStatus.ALLOCATED
    elif k == "TIPS_CLAIMED":
        a = st.account(ev.account)
        amt = _amt(p)
        a.tips_claimed += amt
        for key in p.get("tip_keys") or []:
            st.tips[str(key)] = TipStatus.CLAIMED
        if str(p["mode"]) == "to_stake":
            a.staked_balance += amt
            a.stake_start_time = p.get("stake_start_time")
            g.total_staked += amt
        else:
            g.custody_reserve -= amt
    elif k == "TIP_STATE_RESET":
        a = st.account(ev.account)
        new_spent = int(p["allowance_spent"])
        g.spent_adjustment += new_spent - a.allowance_spent
        a.allowance_granted = int(p["allowance_granted"])
        a.allowance_spent = new_spent
        if p.get("accrued_to") is not None:
            a.last_accrual_time = int(p["accrued_to"])
    elif k == "RESERVE_FUNDED":
        g.custody_reserve += _amt(p)
    elif k == "RESERVE_WITHDRAWN":
        g.custody_reserve -= _amt(p)
    else:
        raise ReplayError(f"unknown event kind {k!r} at seq {ev.seq}")

    st.last_seq = ev.seq


def replay(events: Iterable[LedgerEvent]) -> ReplayState:
    st = ReplayState()
    for ev in events:
        apply_event(st, ev)
    return st


def _diff_accounts(rebuilt: Dict[str, AccountState], stored: Iterable[AccountState]) -> List[Json]:
    problems: List[Json] = []
    stored_by_id = {a.account: a for a in stored}
    for aid in sorted(set(rebuilt) | set(stored_by_id)):
        want = rebuilt.get(aid, AccountState(account=aid)).to_json()
        have = stored_by_id.get(aid, AccountState(account=aid)).to_json()
        if want != have:
            fields = sorted(f for f in want if want[f] != have.get(f))
            problems.append(
                {
                    "check": "account_replay",
                    "account": aid,
                    "fields": fields,
                    "replayed": {f: want[f] for f in fields},
                    "stored": {f: have.get(f) for f in fields},
                }
            )
    return problems


def audit_store(store: Any) -> Json:
    """Replay `store`'s event log and compare the result with stored state.

    `store` is a SqliteLedgerStore (typed loosely to keep this module free of
    runtime imports).
    """
    st = replay(store.iter_events())
    stored_accounts = store.accounts()
    stored_global = store.global_state()

    problems: List[Json] = []
    problems.extend(_diff_accounts(st.accounts, stored_accounts))

    if st.global_state != stored_global:
        want = st.global_state.to_json()
        have = stored_global.to_json()
        fields = sorted(f for f in want if want[f] != have[f])
        problems.append(
            {
                "check": "global_replay",
                "fields": fields,
                "replayed": {f: want[f] for f in fields},
                "stored": {f: have[f] for f in fields},
            }
        )

    if sorted(st.schedule, key=lambda s: s.version) != store.rate_schedule():
        problems.append({"check": "rate_history_replay"})

    if sorted(st.roles) != store.all_roles():
        problems.append({"check": "roles_replay", "replayed": sorted(st.roles), "stored": store.all_roles()})

    stored_tips = {t.idempotency_key: t.status for t in store.all_tips()}
    if st.tips != stored_tips:
        missing = sorted(set(st.tips) ^ set(stored_tips))
        status = sorted(k for k in set(st.tips) & set(stored_tips) if st.tips[k] != stored_tips[k])
        problems.append({"check": "tips_replay", "missing": missing, "status_mismatch": status})

    problems.extend(audit_totals(stored_accounts, stored_global))

    return {
        "ok": not problems,
        "last_seq": st.last_seq,
        "accounts": len(stored_accounts),
        "tips": len(stored_tips),
        "problems": problems,
    }


__all__ = ["ReplayState", "ReplayError", "apply_event", "replay", "audit_store"]
