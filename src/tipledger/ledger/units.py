# src/tipledger/ledger/units.py
from __future__ import annotations

"""Token amount conversion at the edges (config, CLI output).

The ledger itself only ever sees int smallest units. Decimal is used here so
"0.1" means exactly 10**17 units and never a binary float.
"""

from decimal import Decimal, InvalidOperation, localcontext
from typing import Any

from tipledger.ledger.constants import TOKEN_DECIMALS, UNIT
from tipledger.runtime.errors import ValidationError


def parse_units(v: Any) -> int:
    """int -> taken as smallest units; str/Decimal -> token amount with up to 18 decimals."""
    if isinstance(v, bool):
        raise ValidationError("invalid_amount", {"value": v})
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        raise ValidationError("invalid_amount", {"value": v, "reason": "float_not_allowed"})
    try:
        d = Decimal(str(v).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError("invalid_amount", {"value": str(v)}) from e
    if not d.is_finite():
        raise ValidationError("invalid_amount", {"value": str(v)})
    with localcontext() as ctx:
        ctx.prec = 96
        scaled = d.scaleb(TOKEN_DECIMALS)
    if scaled != scaled.to_integral_value():
        raise ValidationError("invalid_amount", {"value": str(v), "reason": "too_many_decimals"})
    return int(scaled)


def format_units(amount: int) -> str:
    """Render smallest units as a token amount, trailing zeros stripped ("1.5", "100")."""
    a = int(amount)
    sign = "-" if a < 0 else ""
    whole, frac = divmod(abs(a), UNIT)
    if frac == 0:
        return f"{sign}{whole}"
    frac_s = str(frac).rjust(TOKEN_DECIMALS, "0").rstrip("0")
    return f"{sign}{whole}.{frac_s}"


__all__ = ["parse_units", "format_units"]
