"""tipledger.ledger.types

Ledger object model.

This module defines:
  - AccountState / GlobalState: mutable working copies used inside a store transaction
  - AccountView / GlobalView: immutable read-only views handed to callers
  - TipRecord, RateSegment, LedgerEvent: persisted records
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

from tipledger.ledger.constants import DEFAULT_DAILY_RATE_BPS, DEFAULT_MINIMUM_STAKE, LEDGER_VERSION

Json = Dict[str, Any]


class TipStatus(str, Enum):
    ALLOCATED = "allocated"
    CLAIMED = "claimed"


class TipKind(str, Enum):
    TIP = "tip"
    REWARD = "reward"


class ClaimMode(str, Enum):
    TO_BALANCE = "to_balance"
    TO_STAKE = "to_stake"

    @classmethod
    def parse(cls, v: Any) -> "ClaimMode":
        if isinstance(v, ClaimMode):
            return v
        s = str(v or "").strip().lower()
        for m in cls:
            if s == m.value:
                return m
        raise ValueError(f"unknown claim mode: {v!r}")


def _opt_int(v: Any) -> Optional[int]:
    return None if v is None else int(v)


@dataclass
class AccountState:
    account: str
    staked_balance: int = 0
    stake_start_time: Optional[int] = None
    last_accrual_time: Optional[int] = None
    allowance_granted: int = 0
    allowance_spent: int = 0
    tips_allocated: int = 0
    tips_claimed: int = 0

    @property
    def available_allowance(self) -> int:
        return self.allowance_granted - self.allowance_spent

    @property
    def claimable(self) -> int:
        return self.tips_allocated - self.tips_claimed

    def copy(self) -> "AccountState":
        return replace(self)

    def to_json(self) -> Json:
        return {
            "account": self.account,
            "staked_balance": int(self.staked_balance),
            "stake_start_time": _opt_int(self.stake_start_time),
            "last_accrual_time": _opt_int(self.last_accrual_time),
            "allowance_granted": int(self.allowance_granted),
            "allowance_spent": int(self.allowance_spent),
            "tips_allocated": int(self.tips_allocated),
            "tips_claimed": int(self.tips_claimed),
        }


@dataclass(frozen=True, slots=True)
class AccountView:
    """Immutable read-only account view.

    Absent accounts are represented by an all-zero view, never an error.
    """

    account: str
    staked_balance: int = 0
    stake_start_time: Optional[int] = None
    last_accrual_time: Optional[int] = None
    allowance_granted: int = 0
    allowance_spent: int = 0
    tips_allocated: int = 0
    tips_claimed: int = 0

    @classmethod
    def from_state(cls, st: AccountState) -> "AccountView":
        return cls(
            account=st.account,
            staked_balance=int(st.staked_balance),
            stake_start_time=_opt_int(st.stake_start_time),
            last_accrual_time=_opt_int(st.last_accrual_time),
            allowance_granted=int(st.allowance_granted),
            allowance_spent=int(st.allowance_spent),
            tips_allocated=int(st.tips_allocated),
            tips_claimed=int(st.tips_claimed),
        )

    @property
    def available_allowance(self) -> int:
        return self.allowance_granted - self.allowance_spent

    @property
    def claimable(self) -> int:
        return self.tips_allocated - self.tips_claimed

    @property
    def total_received(self) -> int:
        return self.tips_allocated

    def summary(self) -> Json:
        return {
            "staked_balance": self.staked_balance,
            "available_allowance": self.available_allowance,
            "claimable": self.claimable,
            "total_received": self.total_received,
        }

    def to_json(self) -> Json:
        out: Json = {
            "account": self.account,
            "staked_balance": self.staked_balance,
            "stake_start_time": self.stake_start_time,
            "last_accrual_time": self.last_accrual_time,
            "allowance_granted": self.allowance_granted,
            "allowance_spent": self.allowance_spent,
            "tips_allocated": self.tips_allocated,
            "tips_claimed": self.tips_claimed,
        }
        out.update(self.summary())
        return out


@dataclass
class GlobalState:
    total_staked: int = 0
    custody_reserve: int = 0
    daily_rate_bps: int = DEFAULT_DAILY_RATE_BPS
    rate_version: int = 0
    minimum_stake: int = DEFAULT_MINIMUM_STAKE
    rewards_allocated: int = 0
    # Net change to allowance_spent made by operator resets (may be negative).
    spent_adjustment: int = 0

    @property
    def free_reserve(self) -> int:
        """Custody not backing outstanding stake; the pool claims are paid from."""
        return self.custody_reserve - self.total_staked

    def copy(self) -> "GlobalState":
        return replace(self)

    def to_json(self) -> Json:
        return {
            "total_staked": int(self.total_staked),
            "custody_reserve": int(self.custody_reserve),
            "daily_rate_bps": int(self.daily_rate_bps),
            "rate_version": int(self.rate_version),
            "minimum_stake": int(self.minimum_stake),
            "rewards_allocated": int(self.rewards_allocated),
            "spent_adjustment": int(self.spent_adjustment),
        }


@dataclass(frozen=True, slots=True)
class GlobalView:
    total_staked: int
    custody_reserve: int
    daily_rate_bps: int
    rate_version: int
    minimum_stake: int
    rewards_allocated: int
    version: str = LEDGER_VERSION

    @classmethod
    def from_state(cls, st: GlobalState) -> "GlobalView":
        return cls(
            total_staked=int(st.total_staked),
            custody_reserve=int(st.custody_reserve),
            daily_rate_bps=int(st.daily_rate_bps),
            rate_version=int(st.rate_version),
            minimum_stake=int(st.minimum_stake),
            rewards_allocated=int(st.rewards_allocated),
        )

    @property
    def free_reserve(self) -> int:
        return self.custody_reserve - self.total_staked

    def to_json(self) -> Json:
        return {
            "total_staked": self.total_staked,
            "custody_reserve": self.custody_reserve,
            "free_reserve": self.free_reserve,
            "daily_rate_bps": self.daily_rate_bps,
            "rate_version": self.rate_version,
            "minimum_stake": self.minimum_stake,
            "rewards_allocated": self.rewards_allocated,
            "version": self.version,
        }


@dataclass(frozen=True, slots=True)
class TipRecord:
    idempotency_key: str
    sender: str
    recipient: str
    amount: int
    created_at: int
    status: TipStatus = TipStatus.ALLOCATED
    kind: TipKind = TipKind.TIP
    claimed_at: Optional[int] = None

    def to_json(self) -> Json:
        return {
            "idempotency_key": self.idempotency_key,
            "sender": self.sender,
            "recipient": self.recipient,
            "amount": int(self.amount),
            "created_at": int(self.created_at),
            "status": self.status.value,
            "kind": self.kind.value,
            "claimed_at": self.claimed_at,
        }


@dataclass(frozen=True, slots=True)
class RateSegment:
    version: int
    rate_bps: int
    effective_ts: int


@dataclass(frozen=True)
class LedgerEvent:
    seq: int
    ts: int
    kind: str
    account: str
    payload: Json = field(default_factory=dict)

    def to_json(self) -> Json:
        return {"seq": self.seq, "ts": self.ts, "kind": self.kind, "account": self.account, "payload": self.payload}


__all__ = [
    "Json",
    "TipStatus",
    "TipKind",
    "ClaimMode",
    "AccountState",
    "AccountView",
    "GlobalState",
    "GlobalView",
    "TipRecord",
    "RateSegment",
    "LedgerEvent",
]
