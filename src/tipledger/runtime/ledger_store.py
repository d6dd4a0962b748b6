# src/tipledger/runtime/ledger_store.py
from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple, TypeVar

from tipledger.ledger.constants import DEFAULT_DAILY_RATE_BPS, DEFAULT_MINIMUM_STAKE, ROLE_OWNER
from tipledger.ledger.invariants import check_account_state, check_global_state
from tipledger.ledger.types import (
    AccountState,
    AccountView,
    GlobalState,
    GlobalView,
    LedgerEvent,
    RateSegment,
    TipKind,
    TipRecord,
    TipStatus,
)
from tipledger.runtime.errors import ConflictError, InvariantViolation, LedgerError, StorageError
from tipledger.runtime.sqlite_db import SqliteDB, canon_json, now_ms

Json = Dict[str, Any]
T = TypeVar("T")

log = logging.getLogger("tipledger.store")


def _account_from_row(row: sqlite3.Row) -> AccountState:
    return AccountState(
        account=str(row["account"]),
        staked_balance=int(row["staked_balance"]),
        stake_start_time=None if row["stake_start_time"] is None else int(row["stake_start_time"]),
        last_accrual_time=None if row["last_accrual_time"] is None else int(row["last_accrual_time"]),
        allowance_granted=int(row["allowance_granted"]),
        allowance_spent=int(row["allowance_spent"]),
        tips_allocated=int(row["tips_allocated"]),
        tips_claimed=int(row["tips_claimed"]),
    )


def _tip_from_row(row: sqlite3.Row) -> TipRecord:
    return TipRecord(
        idempotency_key=str(row["key"]),
        sender=str(row["sender"]),
        recipient=str(row["recipient"]),
        amount=int(row["amount"]),
        created_at=int(row["created_at"]),
        status=TipStatus(str(row["status"])),
        kind=TipKind(str(row["kind"])),
        claimed_at=None if row["claimed_at"] is None else int(row["claimed_at"]),
    )


def _global_from_json(raw: Any) -> GlobalState:
    d = raw if isinstance(raw, dict) else {}
    g = GlobalState()
    for k in g.to_json().keys():
        if k in d:
            setattr(g, k, int(d[k]))
    return g


def _read_global(con: sqlite3.Connection) -> GlobalState:
    row = con.execute("SELECT state_json FROM global_state WHERE id=1;").fetchone()
    if row is None:
        raise StorageError("global_state_missing", {})
    return _global_from_json(json.loads(str(row["state_json"])))


def _read_schedule(con: sqlite3.Connection) -> List[RateSegment]:
    rows = con.execute("SELECT version, rate_bps, effective_ts FROM rate_history ORDER BY version ASC;").fetchall()
    return [RateSegment(int(r["version"]), int(r["rate_bps"]), int(r["effective_ts"])) for r in rows]


class LedgerTxn:
    """Working set for one atomic ledger update.

    Accounts and global state are copied out of the database, mutated in
    memory, checked, and written back by flush(). Tip, key, role, rate and
    event rows are written straight through the open transaction; a rollback
    discards them together with everything else.
    """

    def __init__(self, con: sqlite3.Connection, *, now: int) -> None:
        self._con = con
        self.now = int(now)
        self._accounts: Dict[str, AccountState] = {}
        self._orig: Dict[str, AccountState] = {}
        self._global: Optional[GlobalState] = None
        self._global_orig: Optional[GlobalState] = None
        self._schedule: Optional[List[RateSegment]] = None
        self._allowance_resets: Set[str] = set()
        self.events: List[Tuple[str, str, Json]] = []

    # ---- accounts ----

    def account(self, account_id: str) -> AccountState:
        aid = str(account_id)
        acct = self._accounts.get(aid)
        if acct is not None:
            return acct
        row = self._con.execute("SELECT * FROM accounts WHERE account=?;", (aid,)).fetchone()
        acct = _account_from_row(row) if row is not None else AccountState(account=aid)
        self._orig[aid] = acct.copy()
        self._accounts[aid] = acct
        return acct

    def allow_allowance_reset(self, account_id: str) -> None:
        """Permit allowance_granted to decrease for this account (operator correction)."""
        self._allowance_resets.add(str(account_id))

    # ---- global ----

    @property
    def global_state(self) -> GlobalState:
        if self._global is None:
            self._global = _read_global(self._con)
            self._global_orig = self._global.copy()
        return self._global

    def rate_schedule(self) -> List[RateSegment]:
        if self._schedule is None:
            self._schedule = _read_schedule(self._con)
        return list(self._schedule)

    def append_rate(self, rate_bps: int, effective_ts: int) -> RateSegment:
        g = self.global_state
        seg = RateSegment(version=int(g.rate_version) + 1, rate_bps=int(rate_bps), effective_ts=int(effective_ts))
        self._con.execute(
            "INSERT INTO rate_history(version, rate_bps, effective_ts) VALUES(?, ?, ?);",
            (seg.version, seg.rate_bps, seg.effective_ts),
        )
        g.rate_version = seg.version
        g.daily_rate_bps = seg.rate_bps
        self._schedule = None
        return seg

    # ---- idempotency keys + tips ----

    def key_seen(self, key: str) -> bool:
        return self._con.execute("SELECT 1 FROM idempotency_keys WHERE key=?;", (str(key),)).fetchone() is not None

    def mark_key(self, key: str, kind: str) -> None:
        if self.key_seen(key):
            raise ConflictError("duplicate_tip", {"idempotency_key": key})
        self._con.execute(
            "INSERT INTO idempotency_keys(key, kind, created_ts) VALUES(?, ?, ?);",
            (str(key), str(kind), self.now),
        )

    def record_tip(self, rec: TipRecord) -> TipRecord:
        """Insert-or-reject. A key can be recorded exactly once."""
        self.mark_key(rec.idempotency_key, rec.kind.value)
        self._con.execute(
            """
            INSERT INTO tips(key, sender, recipient, amount, kind, status, created_at, claimed_at)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                rec.idempotency_key,
                rec.sender,
                rec.recipient,
                str(int(rec.amount)),
                rec.kind.value,
                rec.status.value,
                int(rec.created_at),
                rec.claimed_at,
            ),
        )
        return rec

    def claim_allocated_tips(self, recipient: str) -> List[str]:
        """Flip every allocated tip of `recipient` to claimed. Returns the keys, oldest first."""
        rows = self._con.execute(
            "SELECT key FROM tips WHERE recipient=? AND status=? ORDER BY created_at ASC, key ASC;",
            (str(recipient), TipStatus.ALLOCATED.value),
        ).fetchall()
        keys = [str(r["key"]) for r in rows]
        if keys:
            self._con.execute(
                "UPDATE tips SET status=?, claimed_at=? WHERE recipient=? AND status=?;",
                (TipStatus.CLAIMED.value, self.now, str(recipient), TipStatus.ALLOCATED.value),
            )
        return keys

    # ---- roles ----

    def has_role(self, account_id: str, role: str) -> bool:
        row = self._con.execute(
            "SELECT 1 FROM roles WHERE account=? AND role=?;", (str(account_id), str(role))
        ).fetchone()
        return row is not None

    def role_members(self, role: str) -> List[str]:
        rows = self._con.execute("SELECT account FROM roles WHERE role=? ORDER BY account;", (str(role),)).fetchall()
        return [str(r["account"]) for r in rows]

    def grant_role(self, account_id: str, role: str) -> bool:
        cur = self._con.execute(
            "INSERT OR IGNORE INTO roles(account, role, granted_ts) VALUES(?, ?, ?);",
            (str(account_id), str(role), self.now),
        )
        return int(cur.rowcount or 0) > 0

    def revoke_role(self, account_id: str, role: str) -> bool:
        cur = self._con.execute("DELETE FROM roles WHERE account=? AND role=?;", (str(account_id), str(role)))
        return int(cur.rowcount or 0) > 0

    # ---- events ----

    def emit(self, event_kind: str, account: str, **payload: Any) -> None:
        """Append to the event log. Payload values must be JSON-native; amounts go in as int."""
        body = canon_json(payload)
        self._con.execute(
            "INSERT INTO events(ts, kind, account, payload_json, created_ts_ms) VALUES(?, ?, ?, ?, ?);",
            (self.now, str(event_kind), str(account), body, now_ms()),
        )
        self.events.append((str(event_kind), str(account), dict(payload)))

    # ---- commit ----

    def flush(self) -> None:
        ts_ms = now_ms()
        for aid, acct in self._accounts.items():
            orig = self._orig.get(aid)
            if orig is not None and orig == acct:
                continue
            check_account_state(acct)
            if orig is not None and aid not in self._allowance_resets:
                if acct.allowance_granted < orig.allowance_granted:
                    raise InvariantViolation(
                        "allowance_decreased",
                        {"account": aid, "before": orig.allowance_granted, "after": acct.allowance_granted},
                    )
            self._con.execute(
                """
                INSERT INTO accounts(
                  account, staked_balance, stake_start_time, last_accrual_time,
                  allowance_granted, allowance_spent, tips_allocated, tips_claimed, updated_ts_ms
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account) DO UPDATE SET
                  staked_balance=excluded.staked_balance,
                  stake_start_time=excluded.stake_start_time,
                  last_accrual_time=excluded.last_accrual_time,
                  allowance_granted=excluded.allowance_granted,
                  allowance_spent=excluded.allowance_spent,
                  tips_allocated=excluded.tips_allocated,
                  tips_claimed=excluded.tips_claimed,
                  updated_ts_ms=excluded.updated_ts_ms;
                """,
                (
                    aid,
                    str(int(acct.staked_balance)),
                    acct.stake_start_time,
                    acct.last_accrual_time,
                    str(int(acct.allowance_granted)),
                    str(int(acct.allowance_spent)),
                    str(int(acct.tips_allocated)),
                    str(int(acct.tips_claimed)),
                    ts_ms,
                ),
            )

        if self._global is not None and self._global != self._global_orig:
            check_global_state(self._global)
            self._con.execute(
                "UPDATE global_state SET state_json=?, updated_ts_ms=? WHERE id=1;",
                (canon_json(self._global.to_json()), ts_ms),
            )


class SqliteLedgerStore:
    """Ledger store persisted in SQLite. Single source of truth.

    This provides:
      - get(account): read-only account view (absent -> all zero)
      - atomic_update(accounts, mutator, now=...): read-modify-write inside one write transaction
      - record_tip(rec): insert-or-reject on duplicate key
      - events(...): append-only event log for audit and replay

    Every write holds SQLite's single writer lock for its whole duration, so
    two transactions touching the same account are serialized.
    """

    def __init__(
        self,
        *,
        db: SqliteDB,
        owner: Optional[str] = None,
        daily_rate_bps: int = DEFAULT_DAILY_RATE_BPS,
        minimum_stake: int = DEFAULT_MINIMUM_STAKE,
    ) -> None:
        self._db = db
        self._db.init_schema()
        self._bootstrap(owner=owner, daily_rate_bps=daily_rate_bps, minimum_stake=minimum_stake)

    @property
    def db(self) -> SqliteDB:
        return self._db

    def _bootstrap(self, *, owner: Optional[str], daily_rate_bps: int, minimum_stake: int) -> None:
        """Create the global state row and genesis events on a fresh database.

        Genesis events carry ts=0 so the initial rate applies from the epoch.
        """
        with self._db.write_tx() as con:
            if con.execute("SELECT 1 FROM global_state WHERE id=1;").fetchone() is not None:
                return
            g = GlobalState(daily_rate_bps=0, rate_version=0, minimum_stake=int(minimum_stake))
            con.execute(
                "INSERT INTO global_state(id, state_json, updated_ts_ms) VALUES(1, ?, ?);",
                (canon_json(g.to_json()), now_ms()),
            )
            txn = LedgerTxn(con, now=0)
            seg = txn.append_rate(int(daily_rate_bps), 0)
            txn.emit("RATE_SET", "", rate_bps=seg.rate_bps, version=seg.version, effective_ts=seg.effective_ts)
            txn.emit("MIN_STAKE_SET", "", minimum_stake=int(minimum_stake))
            if owner:
                txn.grant_role(str(owner), ROLE_OWNER)
                txn.emit("ROLE_GRANTED", str(owner), role=ROLE_OWNER)
            txn.flush()
        log.info("ledger store initialized at %s", self._db.path)

    # ---- writes ----

    def atomic_update(self, accounts: Iterable[str], mutator: Callable[[LedgerTxn], T], *, now: int) -> T:
        """Apply `mutator` all-or-nothing.

        `accounts` are loaded up front in sorted order; the mutator may load
        more. Any exception (business rejection or invariant failure) rolls
        the whole transaction back.
        """
        ids = sorted({str(a) for a in accounts})
        try:
            with self._db.write_tx() as con:
                txn = LedgerTxn(con, now=now)
                for aid in ids:
                    txn.account(aid)
                result = mutator(txn)
                txn.flush()
            return result
        except LedgerError:
            raise
        except sqlite3.Error as e:
            raise StorageError("write_failed", {"err": str(e)}) from e

    def record_tip(self, rec: TipRecord) -> TipRecord:
        return self.atomic_update([], lambda txn: txn.record_tip(rec), now=int(rec.created_at))

    # ---- reads ----

    def _read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        try:
            with self._db.connection() as con:
                return fn(con)
        except LedgerError:
            raise
        except sqlite3.Error as e:
            raise StorageError("read_failed", {"err": str(e)}) from e

    def get(self, account_id: str) -> AccountView:
        aid = str(account_id)

        def _q(con: sqlite3.Connection) -> AccountView:
            row = con.execute("SELECT * FROM accounts WHERE account=?;", (aid,)).fetchone()
            return AccountView.from_state(_account_from_row(row) if row is not None else AccountState(account=aid))

        return self._read(_q)

    def get_state(self, account_id: str) -> AccountState:
        """Mutable copy of an account; for previews only, never written back."""
        aid = str(account_id)

        def _q(con: sqlite3.Connection) -> AccountState:
            row = con.execute("SELECT * FROM accounts WHERE account=?;", (aid,)).fetchone()
            return _account_from_row(row) if row is not None else AccountState(account=aid)

        return self._read(_q)

    def get_global(self) -> GlobalView:
        return self._read(lambda con: GlobalView.from_state(_read_global(con)))

    def global_state(self) -> GlobalState:
        return self._read(_read_global)

    def rate_schedule(self) -> List[RateSegment]:
        return self._read(_read_schedule)

    def accounts(self) -> List[AccountState]:
        return self._read(
            lambda con: [_account_from_row(r) for r in con.execute("SELECT * FROM accounts ORDER BY account;")]
        )

    def get_tip(self, key: str) -> Optional[TipRecord]:
        def _q(con: sqlite3.Connection) -> Optional[TipRecord]:
            row = con.execute("SELECT * FROM tips WHERE key=?;", (str(key),)).fetchone()
            return _tip_from_row(row) if row is not None else None

        return self._read(_q)

    def list_tips(
        self,
        *,
        recipient: Optional[str] = None,
        sender: Optional[str] = None,
        status: Optional[TipStatus] = None,
        limit: int = 100,
    ) -> List[TipRecord]:
        where: List[str] = []
        args: List[Any] = []
        if recipient is not None:
            where.append("recipient=?")
            args.append(str(recipient))
        if sender is not None:
            where.append("sender=?")
            args.append(str(sender))
        if status is not None:
            where.append("status=?")
            args.append(TipStatus(status).value)
        sql = "SELECT * FROM tips"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at ASC, key ASC LIMIT ?;"
        args.append(max(1, int(limit)))
        return self._read(lambda con: [_tip_from_row(r) for r in con.execute(sql, tuple(args))])

    def all_tips(self) -> List[TipRecord]:
        """Every tip record, in creation order. Audit tooling only."""
        return self._read(
            lambda con: [_tip_from_row(r) for r in con.execute("SELECT * FROM tips ORDER BY created_at ASC, key ASC;")]
        )

    def all_roles(self) -> List[Tuple[str, str]]:
        return self._read(
            lambda con: [
                (str(r["account"]), str(r["role"]))
                for r in con.execute("SELECT account, role FROM roles ORDER BY account, role;")
            ]
        )

    def key_seen(self, key: str) -> bool:
        return self._read(
            lambda con: con.execute("SELECT 1 FROM idempotency_keys WHERE key=?;", (str(key),)).fetchone() is not None
        )

    def has_role(self, account_id: str, role: str) -> bool:
        return self._read(
            lambda con: con.execute(
                "SELECT 1 FROM roles WHERE account=? AND role=?;", (str(account_id), str(role))
            ).fetchone()
            is not None
        )

    def iter_events(self, *, since_seq: int = 0, account: Optional[str] = None, batch: int = 500) -> Iterator[LedgerEvent]:
        """Yield events in seq order, paging through the log."""
        cursor = int(since_seq)
        while True:
            if account is None:
                sql = "SELECT * FROM events WHERE seq>? ORDER BY seq ASC LIMIT ?;"
                args: Tuple[Any, ...] = (cursor, int(batch))
            else:
                sql = "SELECT * FROM events WHERE seq>? AND account=? ORDER BY seq ASC LIMIT ?;"
                args = (cursor, str(account), int(batch))
            rows = self._read(lambda con: con.execute(sql, args).fetchall())
            if not rows:
                return
            for r in rows:
                ev = LedgerEvent(
                    seq=int(r["seq"]),
                    ts=int(r["ts"]),
                    kind=str(r["kind"]),
                    account=str(r["account"]),
                    payload=json.loads(str(r["payload_json"])),
                )
                cursor = ev.seq
                yield ev

    def events(self, *, since_seq: int = 0, account: Optional[str] = None, limit: int = 100) -> List[LedgerEvent]:
        out: List[LedgerEvent] = []
        for ev in self.iter_events(since_seq=since_seq, account=account):
            out.append(ev)
            if len(out) >= int(limit):
                break
        return out


__all__ = ["LedgerTxn", "SqliteLedgerStore"]
