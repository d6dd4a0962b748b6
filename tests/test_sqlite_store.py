from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from conftest import DAY, T0
from tipledger.ledger.constants import UNIT
from tipledger.runtime.errors import ConflictError, InvariantViolation
from tipledger.runtime.executor import TipLedger
from tipledger.runtime.sqlite_db import SqliteDB


def _pragma(con: sqlite3.Connection, name: str) -> int | str:
    row = con.execute(f"PRAGMA {name};").fetchone()
    if row is None:
        raise AssertionError(f"missing pragma: {name}")
    return row[0]


def test_sqlite_operational_pragmas_are_applied(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TIPLEDGER_MODE", "prod")
    monkeypatch.delenv("TIPLEDGER_SQLITE_SYNCHRONOUS", raising=False)
    monkeypatch.setenv("TIPLEDGER_SQLITE_BUSY_TIMEOUT_MS", "1234")
    monkeypatch.setenv("TIPLEDGER_SQLITE_WAL_AUTOCHECKPOINT", "777")
    monkeypatch.setenv("TIPLEDGER_SQLITE_CACHE_SIZE_KIB", str(4096))

    db = SqliteDB(path=str(tmp_path / "ledger.db"))
    db.init_schema()

    with db.connection() as con:
        assert str(_pragma(con, "journal_mode")).lower() == "wal"
        # FULL is the prod default.
        assert int(_pragma(con, "synchronous")) == 2
        assert int(_pragma(con, "foreign_keys")) == 1
        assert int(_pragma(con, "busy_timeout")) == 1234
        assert int(_pragma(con, "wal_autocheckpoint")) == 777
        assert int(_pragma(con, "cache_size")) == -4096


def test_writer_contention_past_deadline_raises_conflict(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TIPLEDGER_SQLITE_BUSY_TIMEOUT_MS", "0")
    monkeypatch.setenv("TIPLEDGER_SQLITE_CONNECT_TIMEOUT_MS", "0")
    monkeypatch.setenv("TIPLEDGER_SQLITE_WRITE_DEADLINE_MS", "250")

    lg = TipLedger(db_path=str(tmp_path / "ledger.db"), minimum_stake=0)
    with lg.store.db.write_tx():
        with pytest.raises(ConflictError) as ei:
            lg.stake("alice", 10, now=T0)
    assert ei.value.reason == "store_contention"

    # once the lock is gone the same request goes through
    assert lg.stake("alice", 10, now=T0).staked_balance == 10


def test_amounts_beyond_int64_round_trip(ledger: TipLedger) -> None:
    big = 10**12 * UNIT  # 1e30 units
    ledger.stake("whale", big, now=T0)
    assert ledger.get_account_view("whale").staked_balance == big
    assert ledger.get_global_view().total_staked == big


def test_event_log_is_append_only(ledger: TipLedger) -> None:
    ledger.stake("alice", UNIT, now=T0)
    with ledger.store.db.connection() as con:
        with pytest.raises(sqlite3.DatabaseError):
            con.execute("UPDATE events SET kind='X';")
        with pytest.raises(sqlite3.DatabaseError):
            con.execute("DELETE FROM events;")


def test_invariant_failure_rolls_back_whole_transaction(ledger: TipLedger) -> None:
    ledger.stake("alice", UNIT, now=T0)

    def _break(txn) -> None:
        txn.account("bob").tips_allocated = 5
        txn.account("alice").allowance_spent = 1  # spent > granted
        txn.emit("BOGUS", "alice")

    with pytest.raises(InvariantViolation) as ei:
        ledger.store.atomic_update(["alice", "bob"], _break, now=T0 + 1)
    assert ei.value.reason == "allowance_overspent"

    assert ledger.get_account_view("bob").tips_allocated == 0
    assert all(e.kind != "BOGUS" for e in ledger.events(limit=1000))


def test_granted_allowance_cannot_shrink_outside_reset(ledger: TipLedger) -> None:
    ledger.stake("alice", 100 * UNIT, now=T0)
    assert ledger.accrue("alice", now=T0 + DAY) == UNIT
    before = ledger.get_account_view("alice")
    n_events = len(ledger.events(limit=1000))

    def _shrink(txn) -> None:
        txn.account("alice").allowance_granted = UNIT - 1
        txn.emit("BOGUS", "alice")

    with pytest.raises(InvariantViolation) as ei:
        ledger.store.atomic_update(["alice"], _shrink, now=T0 + DAY)
    assert ei.value.reason == "allowance_decreased"
    assert ei.value.details == {"account": "alice", "before": UNIT, "after": UNIT - 1}

    assert ledger.get_account_view("alice") == before
    assert len(ledger.events(limit=1000)) == n_events


def test_total_staked_cannot_exceed_custody(ledger: TipLedger) -> None:
    ledger.stake("alice", 10 * UNIT, now=T0)
    before = ledger.get_global_view()
    n_events = len(ledger.events(limit=1000))

    def _overstake(txn) -> None:
        g = txn.global_state
        g.total_staked = g.custody_reserve + 1
        txn.emit("BOGUS", "alice")

    with pytest.raises(InvariantViolation) as ei:
        ledger.store.atomic_update([], _overstake, now=T0 + 1)
    assert ei.value.reason == "custody_below_total_staked"

    assert ledger.get_global_view() == before
    assert len(ledger.events(limit=1000)) == n_events


def test_zero_stake_with_start_time_is_rejected(ledger: TipLedger) -> None:
    ledger.stake("alice", 10 * UNIT, now=T0)
    before = ledger.get_account_view("alice")
    n_events = len(ledger.events(limit=1000))

    def _drain(txn) -> None:
        txn.account("alice").staked_balance = 0
        txn.global_state.total_staked = 0
        txn.emit("BOGUS", "alice")

    with pytest.raises(InvariantViolation) as ei:
        ledger.store.atomic_update(["alice"], _drain, now=T0 + 1)
    assert ei.value.reason == "stake_start_stale"

    assert ledger.get_account_view("alice") == before
    assert ledger.get_global_view().total_staked == 10 * UNIT
    assert len(ledger.events(limit=1000)) == n_events


def test_genesis_is_written_once(tmp_path: Path) -> None:
    path = str(tmp_path / "ledger.db")
    TipLedger(db_path=path, owner="owner", daily_rate_bps=250)
    again = TipLedger(db_path=path, owner="someone_else", daily_rate_bps=5)

    g = again.get_global_view()
    assert g.daily_rate_bps == 250
    assert g.rate_version == 1
    assert g.version == "1.1.0-tip-allowance"
    assert again.has_role("owner", "owner")
    assert not again.has_role("someone_else", "owner")
    assert [e.kind for e in again.events()] == ["RATE_SET", "MIN_STAKE_SET", "ROLE_GRANTED"]
