from __future__ import annotations

from decimal import Decimal

import pytest

from tipledger.ledger.constants import UNIT
from tipledger.ledger.units import format_units, parse_units
from tipledger.runtime.errors import ValidationError


@pytest.mark.parametrize(
    "raw,units",
    [
        (5, 5),
        ("1", UNIT),
        ("0.1", UNIT // 10),
        (" 2.5 ", 5 * UNIT // 2),
        ("0.000000000000000001", 1),
        (Decimal("3"), 3 * UNIT),
        ("1000000000000", 10**12 * UNIT),
    ],
)
def test_parse_units(raw, units) -> None:
    assert parse_units(raw) == units


@pytest.mark.parametrize("raw", [True, 1.5, "abc", "", "NaN", "Infinity", "0.0000000000000000001"])
def test_parse_units_rejects(raw) -> None:
    with pytest.raises(ValidationError) as ei:
        parse_units(raw)
    assert ei.value.reason == "invalid_amount"


@pytest.mark.parametrize(
    "units,text",
    [
        (0, "0"),
        (UNIT, "1"),
        (UNIT // 10, "0.1"),
        (5 * UNIT // 2, "2.5"),
        (1, "0.000000000000000001"),
        (-UNIT // 2, "-0.5"),
    ],
)
def test_format_units(units, text) -> None:
    assert format_units(units) == text
