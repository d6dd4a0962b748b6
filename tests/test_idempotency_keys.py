from __future__ import annotations

import pytest

from tipledger.ledger.idempotency import derive_tip_key, is_valid_key, new_tip_key, normalize_key
from tipledger.runtime.errors import ValidationError


def _derive(**over) -> str:
    args = dict(sender="alice", recipient="bob", amount=5, nonce="msg-1", salt="s3cret", context="discord")
    args.update(over)
    return derive_tip_key(**args)


def test_derived_key_is_deterministic_and_well_formed() -> None:
    k = _derive()
    assert k == _derive()
    assert k.startswith("0x") and len(k) == 66
    assert is_valid_key(k)


def test_every_input_changes_the_key() -> None:
    base = _derive()
    for field, value in [
        ("sender", "carol"),
        ("recipient", "dave"),
        ("amount", 6),
        ("nonce", "msg-2"),
        ("salt", "other"),
        ("context", "web"),
    ]:
        assert _derive(**{field: value}) != base, field


def test_account_case_does_not_change_the_key() -> None:
    assert _derive(sender="ALICE ") == _derive()


def test_nonce_and_salt_are_required() -> None:
    with pytest.raises(ValidationError):
        _derive(nonce="")
    with pytest.raises(ValidationError):
        _derive(salt=" ")


def test_new_tip_keys_are_unique() -> None:
    keys = {new_tip_key(sender="alice", recipient="bob", amount=1) for _ in range(50)}
    assert len(keys) == 50
    # same explicit nonce still differs because the salt is random
    assert new_tip_key(sender="a", recipient="b", amount=1, nonce="n") != new_tip_key(
        sender="a", recipient="b", amount=1, nonce="n"
    )


def test_normalize_key() -> None:
    raw = "AB" * 32
    assert normalize_key(raw) == "0x" + "ab" * 32
    assert normalize_key("0x" + raw) == "0x" + "ab" * 32
    for bad in ["", "0x123", "zz" * 32, None, 12]:
        with pytest.raises(ValidationError):
            normalize_key(bad)
