# src/tipledger/runtime/apply/__init__.py
"""Ledger state transitions.

Each module applies one family of operations to a LedgerTxn. A rejection
raised anywhere inside an applier rolls back the whole store transaction.
"""

from __future__ import annotations

__all__ = [
    "common",
    "accrual",
    "staking",
    "tipping",
    "claims",
    "admin",
]
