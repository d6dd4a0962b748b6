# src/tipledger/runtime/apply/tipping.py
from __future__ import annotations

"""Tip transfer semantics.

A tip moves allowance, never tokens: the sender's allowance_spent and the
recipient's tips_allocated grow by the same amount and a TipRecord is stored
under the caller's idempotency key. Custody is untouched until the recipient
claims.

Checks run in a fixed order and each one has its own rejection reason:

  1. sender != recipient           -> invalid:self_tip_rejected
  2. amount > 0                    -> invalid:invalid_amount
  3. key well-formed and unseen    -> invalid:invalid_idempotency_key / conflict:duplicate_tip
  4. accrue(sender); available >= amount -> insufficient_funds:insufficient_allowance
"""

from typing import Any, Dict, List, Sequence, Set, Tuple

from tipledger.ledger.constants import ROLE_DISTRIBUTOR
from tipledger.ledger.idempotency import normalize_key
from tipledger.ledger.types import TipKind, TipRecord
from tipledger.runtime.apply.accrual import accrue_account
from tipledger.runtime.apply.common import normalize_account, require_amount, require_role
from tipledger.runtime.errors import ConflictError, InsufficientFundsError, ValidationError
from tipledger.runtime.ledger_store import LedgerTxn

Json = Dict[str, Any]


def validate_tip(sender: str, recipient: Any, amount: Any, key: Any) -> Tuple[str, int, str]:
    """Stateless checks 1-3 (format part). Returns normalized (recipient, amount, key)."""
    r = normalize_account(recipient, field="recipient")
    if r == sender:
        raise ValidationError("self_tip_rejected", {"account": sender})
    amt = require_amount(amount)
    k = normalize_key(key)
    return r, amt, k


def _ensure_unseen(txn: LedgerTxn, key: str) -> None:
    if txn.key_seen(key):
        raise ConflictError("duplicate_tip", {"idempotency_key": key})


def _allocate(txn: LedgerTxn, *, sender: str, recipient: str, amount: int, key: str, kind: TipKind) -> TipRecord:
    rec = TipRecord(
        idempotency_key=key,
        sender=sender,
        recipient=recipient,
        amount=int(amount),
        created_at=txn.now,
        kind=kind,
    )
    txn.record_tip(rec)
    ra = txn.account(recipient)
    ra.tips_allocated = int(ra.tips_allocated) + int(amount)
    txn.emit(
        "TIP_ALLOCATED",
        recipient,
        key=key,
        sender=sender,
        recipient=recipient,
        amount=int(amount),
        kind=kind.value,
    )
    return rec


def apply_send_tip(txn: LedgerTxn, sender: str, recipient: Any, amount: Any, key: Any) -> TipRecord:
    r, amt, k = validate_tip(sender, recipient, amount, key)
    _ensure_unseen(txn, k)

    accrue_account(txn, sender)
    sa = txn.account(sender)
    if sa.available_allowance < amt:
        raise InsufficientFundsError(
            "insufficient_allowance", required=amt, available=sa.available_allowance, details={"account": sender}
        )

    sa.allowance_spent = int(sa.allowance_spent) + amt
    return _allocate(txn, sender=sender, recipient=r, amount=amt, key=k, kind=TipKind.TIP)


def validate_batch(
    sender: str,
    items: Sequence[Any],
    keys: Sequence[Any],
) -> List[Tuple[str, int, str]]:
    """Shape checks for a batch, then checks 1-3 per element. No state is read."""
    if not isinstance(items, (list, tuple)) or not isinstance(keys, (list, tuple)):
        raise ValidationError("malformed_batch", {"reason": "items_and_keys_must_be_lists"})
    if len(items) == 0:
        raise ValidationError("invalid_batch", {"reason": "empty"})
    if len(items) != len(keys):
        raise ValidationError("malformed_batch", {"items": len(items), "keys": len(keys)})

    out: List[Tuple[str, int, str]] = []
    seen: Set[str] = set()
    for i, (item, key) in enumerate(zip(items, keys)):
        if not isinstance(item, (list, tuple)) or len(item) != 2:
            raise ValidationError("malformed_batch", {"index": i})
        try:
            r, amt, k = validate_tip(sender, item[0], item[1], key)
        except ValidationError as e:
            details = dict(e.details) if isinstance(e.details, dict) else {}
            details["index"] = i
            raise ValidationError(e.reason, details) from e
        if k in seen:
            raise ConflictError("duplicate_tip", {"idempotency_key": k, "index": i})
        seen.add(k)
        out.append((r, amt, k))
    return out


def apply_send_tips_batch(
    txn: LedgerTxn,
    sender: str,
    items: Sequence[Any],
    keys: Sequence[Any],
) -> List[TipRecord]:
    """All-or-nothing batch. Allowance is checked against the batch total after one accrual."""
    norm = validate_batch(sender, items, keys)
    for i, (_, _, k) in enumerate(norm):
        if txn.key_seen(k):
            raise ConflictError("duplicate_tip", {"idempotency_key": k, "index": i})

    accrue_account(txn, sender)
    sa = txn.account(sender)
    total = sum(amt for _, amt, _ in norm)
    if sa.available_allowance < total:
        raise InsufficientFundsError(
            "insufficient_allowance", required=total, available=sa.available_allowance, details={"account": sender}
        )

    sa.allowance_spent = int(sa.allowance_spent) + total
    return [_allocate(txn, sender=sender, recipient=r, amount=amt, key=k, kind=TipKind.TIP) for r, amt, k in norm]


def apply_allocate_rewards(
    txn: LedgerTxn,
    distributor: str,
    items: Sequence[Any],
    keys: Sequence[Any],
) -> List[TipRecord]:
    """Distributor-only allocation funded by the custody reserve, not by allowance.

    Same batch shape rules as tips. Claims of these allocations are checked
    against free reserve like any other claim.
    """
    require_role(txn, distributor, ROLE_DISTRIBUTOR)
    norm = validate_batch(distributor, items, keys)
    for i, (_, _, k) in enumerate(norm):
        if txn.key_seen(k):
            raise ConflictError("duplicate_tip", {"idempotency_key": k, "index": i})

    g = txn.global_state
    total = sum(amt for _, amt, _ in norm)
    g.rewards_allocated = int(g.rewards_allocated) + total
    return [
        _allocate(txn, sender=distributor, recipient=r, amount=amt, key=k, kind=TipKind.REWARD) for r, amt, k in norm
    ]


__all__ = [
    "validate_tip",
    "validate_batch",
    "apply_send_tip",
    "apply_send_tips_batch",
    "apply_allocate_rewards",
]
