from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure local "src/" takes precedence over any globally-installed "tipledger" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from tipledger.ledger.constants import UNIT  # noqa: E402
from tipledger.runtime.executor import TipLedger  # noqa: E402

T0 = 1_700_000_000
DAY = 86_400


def tip_key(n: int) -> str:
    """Deterministic well-formed idempotency key for tests."""
    return "0x" + format(int(n), "064x")


@pytest.fixture
def ledger(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> TipLedger:
    monkeypatch.setenv("TIPLEDGER_MODE", "test")
    return TipLedger(db_path=str(tmp_path / "ledger.db"), owner="owner", daily_rate_bps=100, minimum_stake=UNIT)
