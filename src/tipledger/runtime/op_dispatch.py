# src/tipledger/runtime/op_dispatch.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from tipledger.runtime import op_schema as s
from tipledger.runtime.errors import ValidationError
from tipledger.runtime.executor import TipLedger

Json = Dict[str, Any]


@dataclass(frozen=True)
class OperationEnvelope:
    """One authenticated request: `actor` has already been verified by the caller."""

    op: str
    actor: str
    payload: Dict[str, Any] = field(default_factory=dict)
    now: Optional[int] = None

    @staticmethod
    def from_json(j: Any) -> "OperationEnvelope":
        if isinstance(j, OperationEnvelope):
            return j
        if not isinstance(j, dict):
            raise ValidationError("envelope_must_be_object", {"type": type(j).__name__})
        now = j.get("now")
        if now is not None and (isinstance(now, bool) or not isinstance(now, int)):
            raise ValidationError("invalid_timestamp", {"now": str(now)})
        payload = j.get("payload")
        if payload is not None and not isinstance(payload, dict):
            raise ValidationError("payload_must_be_object", {"op": str(j.get("op", ""))})
        return OperationEnvelope(
            op=str(j.get("op", "") or "").strip().upper(),
            actor=str(j.get("actor", "") or ""),
            payload=dict(payload or {}),
            now=now,
        )

    def to_json(self) -> Json:
        return {"op": self.op, "actor": self.actor, "payload": dict(self.payload), "now": self.now}


def _stake(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    return ledger.stake(env.actor, p.amount, now=env.now).to_json()


def _unstake(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    return ledger.unstake(env.actor, p.amount, now=env.now).to_json()


def _accrue(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    return {"accrued": ledger.accrue(env.actor, now=env.now)}


def _fund_reserve(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    return ledger.fund_reserve(env.actor, p.amount, now=env.now)


def _send_tip(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    return ledger.send_tip(env.actor, p.recipient, p.amount, p.idempotency_key, now=env.now).to_json()


def _send_tips_batch(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    items = [(i.recipient, i.amount) for i in p.items]
    recs = ledger.send_tips_batch(env.actor, items, list(p.idempotency_keys), now=env.now)
    return {"tips": [r.to_json() for r in recs]}


def _allocate_rewards(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    items = [(i.recipient, i.amount) for i in p.items]
    recs = ledger.allocate_rewards(env.actor, items, list(p.idempotency_keys), now=env.now)
    return {"tips": [r.to_json() for r in recs]}


def _claim(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    amount = ledger.claim(env.actor, mode=p.mode, idempotency_key=p.idempotency_key, now=env.now)
    return {"claimed": amount, "mode": p.mode}


def _set_daily_rate(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    return ledger.set_daily_allowance_rate_bps(env.actor, p.rate_bps, now=env.now)


def _set_minimum_stake(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    return ledger.set_minimum_stake(env.actor, p.minimum_stake, now=env.now)


def _reset_tip_state(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    return ledger.reset_account_tip_state(env.actor, p.account, p.allowance_granted, p.allowance_spent, now=env.now)


def _reset_tip_state_batch(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    out = ledger.reset_accounts_tip_state_batch(
        env.actor, list(p.accounts), list(p.allowance_granted), list(p.allowance_spent), now=env.now
    )
    return {"reset": out}


def _grant_role(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    return ledger.grant_role(env.actor, p.account, p.role, now=env.now)


def _revoke_role(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    return ledger.revoke_role(env.actor, p.account, p.role, now=env.now)


def _withdraw_reserve(ledger: TipLedger, env: OperationEnvelope, p: Any) -> Json:
    return ledger.withdraw_reserve(env.actor, p.amount, now=env.now)


OpFn = Callable[[TipLedger, OperationEnvelope, Any], Json]

_HANDLERS: Dict[str, OpFn] = {
    "STAKE": _stake,
    "UNSTAKE": _unstake,
    "ACCRUE": _accrue,
    "FUND_RESERVE": _fund_reserve,
    "SEND_TIP": _send_tip,
    "SEND_TIPS_BATCH": _send_tips_batch,
    "ALLOCATE_REWARDS": _allocate_rewards,
    "CLAIM": _claim,
    "SET_DAILY_RATE": _set_daily_rate,
    "SET_MINIMUM_STAKE": _set_minimum_stake,
    "RESET_TIP_STATE": _reset_tip_state,
    "RESET_TIP_STATE_BATCH": _reset_tip_state_batch,
    "GRANT_ROLE": _grant_role,
    "REVOKE_ROLE": _revoke_role,
    "WITHDRAW_RESERVE": _withdraw_reserve,
}


def dispatch_operation(ledger: TipLedger, env: Any) -> Json:
    """Validate an envelope (object or dict) and run it against `ledger`.

    Returns a JSON-native result. Rejections propagate as LedgerError.
    """
    e = OperationEnvelope.from_json(env)
    fn = _HANDLERS.get(e.op)
    if fn is None:
        raise ValidationError("unknown_op", {"op": e.op})
    payload = s.validate_payload(e.op, e.payload)
    result = fn(ledger, e, payload)
    return {"ok": True, "op": e.op, "result": result}


__all__ = ["OperationEnvelope", "dispatch_operation"]
