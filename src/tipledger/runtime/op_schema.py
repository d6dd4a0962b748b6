from __future__ import annotations

"""Operation payload schemas.

Shape checks for payloads arriving through an OperationEnvelope (bot, API
or CLI callers). Unknown keys are rejected. These schemas only check types
and required keys; the appliers still enforce every business rule, so batch
emptiness and length mismatches are left for them to report with their own
reasons.
"""

from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic import ValidationError as PydanticValidationError

from tipledger.runtime.errors import ValidationError

Json = Dict[str, Any]


# ---------------------------------------------------------------------------
# Base Models
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Strict model: reject unknown keys."""

    model_config = ConfigDict(extra="forbid")


def _amount_like(v: Any) -> Any:
    # JSON clients lose precision past 2**53, so decimal digit strings are accepted too.
    if isinstance(v, bool):
        raise ValueError("amount_must_be_integer")
    if isinstance(v, int):
        return v
    if isinstance(v, str) and v.strip().isdigit():
        return int(v.strip())
    raise ValueError("amount_must_be_integer")


class _AmountModel(_StrictModel):
    amount: int

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, v: Any) -> Any:
        return _amount_like(v)


# ---------------------------------------------------------------------------
# Staking
# ---------------------------------------------------------------------------


class StakePayload(_AmountModel):
    pass


class UnstakePayload(_AmountModel):
    pass


class AccruePayload(_StrictModel):
    pass


class FundReservePayload(_AmountModel):
    pass


# ---------------------------------------------------------------------------
# Tips / claims
# ---------------------------------------------------------------------------


class SendTipPayload(_AmountModel):
    recipient: str = Field(..., min_length=1)
    idempotency_key: str = Field(..., min_length=1)


class BatchItem(_AmountModel):
    recipient: str = Field(..., min_length=1)


class SendTipsBatchPayload(_StrictModel):
    items: List[BatchItem]
    idempotency_keys: List[str]


class AllocateRewardsPayload(_StrictModel):
    items: List[BatchItem]
    idempotency_keys: List[str]


class ClaimPayload(_StrictModel):
    mode: str = Field(default="to_balance", pattern=r"^(to_balance|to_stake)$")
    idempotency_key: Optional[str] = Field(default=None, min_length=1)


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


class SetDailyRatePayload(_StrictModel):
    rate_bps: StrictInt = Field(..., ge=0)


class SetMinimumStakePayload(_StrictModel):
    minimum_stake: int = Field(..., ge=0)

    @field_validator("minimum_stake", mode="before")
    @classmethod
    def _ms(cls, v: Any) -> Any:
        return _amount_like(v)


class ResetTipStatePayload(_StrictModel):
    account: str = Field(..., min_length=1)
    allowance_granted: int
    allowance_spent: int

    @field_validator("allowance_granted", "allowance_spent", mode="before")
    @classmethod
    def _amounts(cls, v: Any) -> Any:
        return _amount_like(v)


class ResetTipStateBatchPayload(_StrictModel):
    accounts: List[str]
    allowance_granted: List[int]
    allowance_spent: List[int]

    @field_validator("allowance_granted", "allowance_spent", mode="before")
    @classmethod
    def _amounts(cls, v: Any) -> Any:
        if not isinstance(v, list):
            raise ValueError("must_be_list")
        return [_amount_like(x) for x in v]


class RolePayload(_StrictModel):
    account: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1)


class WithdrawReservePayload(_AmountModel):
    pass


Schema = Type[_StrictModel]

_SCHEMA_BY_OP: Dict[str, Schema] = {
    "STAKE": StakePayload,
    "UNSTAKE": UnstakePayload,
    "ACCRUE": AccruePayload,
    "FUND_RESERVE": FundReservePayload,
    "SEND_TIP": SendTipPayload,
    "SEND_TIPS_BATCH": SendTipsBatchPayload,
    "ALLOCATE_REWARDS": AllocateRewardsPayload,
    "CLAIM": ClaimPayload,
    "SET_DAILY_RATE": SetDailyRatePayload,
    "SET_MINIMUM_STAKE": SetMinimumStakePayload,
    "RESET_TIP_STATE": ResetTipStatePayload,
    "RESET_TIP_STATE_BATCH": ResetTipStateBatchPayload,
    "GRANT_ROLE": RolePayload,
    "REVOKE_ROLE": RolePayload,
    "WITHDRAW_RESERVE": WithdrawReservePayload,
}


def supported_ops() -> List[str]:
    return sorted(_SCHEMA_BY_OP.keys())


def schema_for(op: str) -> Optional[Schema]:
    return _SCHEMA_BY_OP.get(str(op or "").strip().upper())


def validate_payload(op: str, payload: Any) -> _StrictModel:
    """Parse `payload` for `op`. Raises tipledger ValidationError on any mismatch."""
    sch = schema_for(op)
    if sch is None:
        raise ValidationError("unknown_op", {"op": str(op)})
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("payload_must_be_object", {"op": str(op)})
    try:
        return sch(**payload)
    except PydanticValidationError as ve:
        errors = [{"loc": list(e.get("loc", ())), "msg": str(e.get("msg", ""))} for e in ve.errors()]
        raise ValidationError("payload_schema_mismatch", {"op": str(op), "errors": errors}) from ve


__all__ = [
    "StakePayload",
    "UnstakePayload",
    "AccruePayload",
    "FundReservePayload",
    "SendTipPayload",
    "BatchItem",
    "SendTipsBatchPayload",
    "AllocateRewardsPayload",
    "ClaimPayload",
    "SetDailyRatePayload",
    "SetMinimumStakePayload",
    "ResetTipStatePayload",
    "ResetTipStateBatchPayload",
    "RolePayload",
    "WithdrawReservePayload",
    "supported_ops",
    "schema_for",
    "validate_payload",
]
