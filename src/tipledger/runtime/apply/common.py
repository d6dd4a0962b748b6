# src/tipledger/runtime/apply/common.py
from __future__ import annotations

import re
from typing import Any

from tipledger.runtime.errors import NotAuthorizedError, ValidationError
from tipledger.runtime.ledger_store import LedgerTxn

_ACCOUNT_RE = re.compile(r"^[a-z0-9_.:@\-]{1,128}$")


def normalize_account(v: Any, *, field: str = "account") -> str:
    """Canonical account id: stripped, lowercase.

    Addresses arrive in mixed checksum case; every comparison (self-tip in
    particular) must see a single spelling.
    """
    if not isinstance(v, str):
        raise ValidationError("invalid_account", {"field": field, "type": type(v).__name__})
    s = v.strip().lower()
    if not _ACCOUNT_RE.match(s):
        raise ValidationError("invalid_account", {"field": field, "account": v[:130]})
    return s


def require_amount(v: Any, *, field: str = "amount") -> int:
    """Positive integer in smallest units. bool and float are rejected outright."""
    if isinstance(v, bool) or not isinstance(v, int):
        raise ValidationError("invalid_amount", {"field": field, "type": type(v).__name__})
    if v <= 0:
        raise ValidationError("invalid_amount", {"field": field, "amount": int(v)})
    return int(v)


def require_non_negative(v: Any, *, field: str) -> int:
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise ValidationError("invalid_amount", {"field": field, "value": str(v)})
    return int(v)


def require_timestamp(v: Any) -> int:
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise ValidationError("invalid_timestamp", {"now": str(v)})
    return int(v)


def require_role(txn: LedgerTxn, actor: str, role: str) -> None:
    if not txn.has_role(actor, role):
        raise NotAuthorizedError("role_required", {"actor": actor, "role": role})
