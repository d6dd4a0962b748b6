from __future__ import annotations

import pytest

from conftest import DAY, T0, tip_key
from tipledger.ledger.constants import UNIT
from tipledger.runtime.errors import ValidationError
from tipledger.runtime.executor import TipLedger
from tipledger.runtime.op_dispatch import _HANDLERS, OperationEnvelope, dispatch_operation
from tipledger.runtime.op_schema import supported_ops, validate_payload


def test_dispatch_full_flow(ledger: TipLedger) -> None:
    dispatch_operation(ledger, {"op": "fund_reserve", "actor": "treasury", "payload": {"amount": 10 * UNIT}, "now": T0})
    r = dispatch_operation(ledger, {"op": "STAKE", "actor": "alice", "payload": {"amount": str(100 * UNIT)}, "now": T0})
    assert r["ok"] is True
    assert r["result"]["staked_balance"] == 100 * UNIT

    env = OperationEnvelope(
        op="SEND_TIP",
        actor="alice",
        payload={"recipient": "bob", "amount": UNIT, "idempotency_key": tip_key(1)},
        now=T0 + DAY,
    )
    r = dispatch_operation(ledger, env)
    assert r["result"]["status"] == "allocated"

    r = dispatch_operation(ledger, {"op": "CLAIM", "actor": "bob", "payload": {"mode": "to_stake"}, "now": T0 + DAY})
    assert r["result"] == {"claimed": UNIT, "mode": "to_stake"}


def test_batch_payload_shape(ledger: TipLedger) -> None:
    ledger.stake("alice", 100 * UNIT, now=T0)
    r = dispatch_operation(
        ledger,
        {
            "op": "SEND_TIPS_BATCH",
            "actor": "alice",
            "payload": {
                "items": [{"recipient": "bob", "amount": 1}, {"recipient": "carol", "amount": 2}],
                "idempotency_keys": [tip_key(1), tip_key(2)],
            },
            "now": T0 + DAY,
        },
    )
    assert [t["recipient"] for t in r["result"]["tips"]] == ["bob", "carol"]

    # emptiness is reported by the ledger, not the schema
    with pytest.raises(ValidationError) as ei:
        dispatch_operation(
            ledger,
            {"op": "SEND_TIPS_BATCH", "actor": "alice", "payload": {"items": [], "idempotency_keys": []}},
        )
    assert ei.value.reason == "invalid_batch"


def test_unknown_op_and_extra_keys_are_rejected(ledger: TipLedger) -> None:
    with pytest.raises(ValidationError) as ei:
        dispatch_operation(ledger, {"op": "MINT", "actor": "alice", "payload": {}})
    assert ei.value.reason == "unknown_op"

    with pytest.raises(ValidationError) as ei:
        dispatch_operation(ledger, {"op": "STAKE", "actor": "alice", "payload": {"amount": 5, "bonus": 1}})
    assert ei.value.reason == "payload_schema_mismatch"

    with pytest.raises(ValidationError) as ei:
        dispatch_operation(ledger, {"op": "STAKE", "actor": "alice", "payload": {"amount": 5}, "now": "soon"})
    assert ei.value.reason == "invalid_timestamp"


@pytest.mark.parametrize("amount", [True, 1.5, "1e18", "-3", None])
def test_amount_schema_rejects_non_integers(amount) -> None:
    with pytest.raises(ValidationError):
        validate_payload("STAKE", {"amount": amount})


def test_rate_payload_is_strict() -> None:
    with pytest.raises(ValidationError):
        validate_payload("SET_DAILY_RATE", {"rate_bps": "100"})
    assert validate_payload("SET_DAILY_RATE", {"rate_bps": 100}).rate_bps == 100


def test_every_supported_op_has_a_handler() -> None:
    assert sorted(_HANDLERS) == supported_ops()
