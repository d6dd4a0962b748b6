from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class LedgerError(Exception):
    """Canonical error type for every rejected ledger operation.

    `code` is the taxonomy bucket, `reason` the specific rejected condition.
    """

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class ValidationError(LedgerError):
    """Bad input. Raised before any mutation; safe to retry after fixing input."""

    def __init__(self, reason: str, details: Any | None = None) -> None:
        super().__init__("invalid", reason, details)


class ConflictError(LedgerError):
    """Duplicate idempotency key or writer contention past the retry budget."""

    def __init__(self, reason: str, details: Any | None = None) -> None:
        super().__init__("conflict", reason, details)


class InsufficientFundsError(LedgerError):
    """Allowance, reserve or stake shortfall. `shortfall` is in smallest units."""

    def __init__(self, reason: str, *, required: int, available: int, details: Any | None = None) -> None:
        d = {"required": int(required), "available": int(available), "shortfall": int(required) - int(available)}
        if isinstance(details, dict):
            d.update(details)
        super().__init__("insufficient_funds", reason, d)

    @property
    def shortfall(self) -> int:
        return int(self.details["shortfall"])


class NotAuthorizedError(LedgerError):
    def __init__(self, reason: str, details: Any | None = None) -> None:
        super().__init__("forbidden", reason, details)


class InvariantViolation(LedgerError):
    """A state transition would break a ledger invariant. The transaction is aborted."""

    def __init__(self, reason: str, details: Any | None = None) -> None:
        super().__init__("invariant", reason, details)


class StorageError(LedgerError):
    """I/O or database failure. Not a business rejection; retry with backoff."""

    def __init__(self, reason: str, details: Any | None = None) -> None:
        super().__init__("storage", reason, details)


__all__ = [
    "LedgerError",
    "ValidationError",
    "ConflictError",
    "InsufficientFundsError",
    "NotAuthorizedError",
    "InvariantViolation",
    "StorageError",
]
