# src/tipledger/ledger/constants.py
from __future__ import annotations

"""Monetary and accrual constants.

- Token precision: 18 decimals (1 token = 10**18 units)
- Daily allowance rate is expressed in basis points of staked balance
- Rate ceiling: 1000 bps (10% per day)
"""

# Monetary precision
TOKEN_DECIMALS: int = 18
UNIT: int = 10**TOKEN_DECIMALS

# Rate math
BPS_DENOMINATOR: int = 10_000
SECONDS_PER_DAY: int = 86_400
ACCRUAL_DENOMINATOR: int = BPS_DENOMINATOR * SECONDS_PER_DAY

DEFAULT_DAILY_RATE_BPS: int = 100  # 1% per day
MAX_DAILY_RATE_BPS: int = 1_000  # 10% per day

DEFAULT_MINIMUM_STAKE: int = 1 * UNIT

# Roles
ROLE_OWNER: str = "owner"
ROLE_DISTRIBUTOR: str = "distributor"
ROLES = (ROLE_OWNER, ROLE_DISTRIBUTOR)

LEDGER_VERSION: str = "1.1.0-tip-allowance"
