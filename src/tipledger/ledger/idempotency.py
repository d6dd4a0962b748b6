from __future__ import annotations

import hashlib
import json
import re
import secrets
import time
from typing import Any, Dict, Optional

from tipledger.runtime.errors import ValidationError

Json = Dict[str, Any]

_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def _json_canonical(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def derive_tip_key(
    *,
    sender: str,
    recipient: str,
    amount: int,
    nonce: str,
    salt: str,
    context: str = "",
) -> str:
    """Canonical idempotency key function.

    Contract:
      - includes sender, recipient and amount so a key is bound to one transfer
      - includes a unique nonce (client retry id, message reference, timestamp)
      - includes a salt that third parties cannot guess
      - excludes anything the store assigns (sequence numbers, created_at)

    Returns `0x` + 64 lowercase hex chars (32 bytes).
    """
    if not str(nonce or "").strip():
        raise ValidationError("invalid_idempotency_key", {"missing": "nonce"})
    if not str(salt or "").strip():
        raise ValidationError("invalid_idempotency_key", {"missing": "salt"})

    obj: Json = {
        "sender": str(sender).strip().lower(),
        "recipient": str(recipient).strip().lower(),
        "amount": str(int(amount)),
        "nonce": str(nonce),
        "salt": str(salt),
        "context": str(context or ""),
    }
    return "0x" + _sha256_hex(_json_canonical(obj))


def new_tip_key(
    *,
    sender: str,
    recipient: str,
    amount: int,
    context: str = "",
    nonce: Optional[str] = None,
) -> str:
    """Server-issued key: random salt, nonce defaults to ns clock + random bits.

    Callers that may need to retry an ambiguous request must keep the returned
    key and resubmit it unchanged.
    """
    n = nonce if nonce is not None else f"{time.time_ns()}:{secrets.token_hex(8)}"
    return derive_tip_key(
        sender=sender,
        recipient=recipient,
        amount=amount,
        nonce=n,
        salt=secrets.token_hex(32),
        context=context,
    )


def is_valid_key(key: Any) -> bool:
    return isinstance(key, str) and _KEY_RE.match(key.strip()) is not None


def normalize_key(key: Any) -> str:
    """Return the canonical `0x`-prefixed lowercase form, or raise ValidationError."""
    if not is_valid_key(key):
        raise ValidationError("invalid_idempotency_key", {"key": str(key)[:80]})
    k = str(key).strip().lower()
    return k if k.startswith("0x") else "0x" + k


__all__ = ["derive_tip_key", "new_tip_key", "is_valid_key", "normalize_key"]
