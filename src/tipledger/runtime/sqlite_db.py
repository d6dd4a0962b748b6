# src/tipledger/runtime/sqlite_db.py
from __future__ import annotations

import json
import logging
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, List, Tuple

from tipledger.runtime.errors import ConflictError, StorageError

log = logging.getLogger("tipledger.sqlite")

SCHEMA_VERSION = 1

# Amounts are decimal TEXT: 18-decimal token balances overflow INTEGER.
_SCHEMA: Tuple[str, ...] = (
    "CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL);",
    """
    CREATE TABLE IF NOT EXISTS accounts (
      account TEXT PRIMARY KEY,
      staked_balance TEXT NOT NULL,
      stake_start_time INTEGER,
      last_accrual_time INTEGER,
      allowance_granted TEXT NOT NULL,
      allowance_spent TEXT NOT NULL,
      tips_allocated TEXT NOT NULL,
      tips_claimed TEXT NOT NULL,
      updated_ts_ms INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS global_state (
      id INTEGER PRIMARY KEY CHECK (id = 1),
      state_json TEXT NOT NULL,
      updated_ts_ms INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_history (
      version INTEGER PRIMARY KEY,
      rate_bps INTEGER NOT NULL,
      effective_ts INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS roles (
      account TEXT NOT NULL,
      role TEXT NOT NULL,
      granted_ts INTEGER NOT NULL,
      PRIMARY KEY (account, role)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_keys (
      key TEXT PRIMARY KEY,
      kind TEXT NOT NULL,
      created_ts INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS tips (
      key TEXT PRIMARY KEY REFERENCES idempotency_keys(key),
      sender TEXT NOT NULL,
      recipient TEXT NOT NULL,
      amount TEXT NOT NULL,
      kind TEXT NOT NULL,
      status TEXT NOT NULL,
      created_at INTEGER NOT NULL,
      claimed_at INTEGER
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_tips_recipient_status ON tips(recipient, status);",
    "CREATE INDEX IF NOT EXISTS idx_tips_sender ON tips(sender);",
    """
    CREATE TABLE IF NOT EXISTS events (
      seq INTEGER PRIMARY KEY AUTOINCREMENT,
      ts INTEGER NOT NULL,
      kind TEXT NOT NULL,
      account TEXT NOT NULL,
      payload_json TEXT NOT NULL,
      created_ts_ms INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_account ON events(account);",
    # The event log is the replay source: no UPDATE, no DELETE.
    """
    CREATE TRIGGER IF NOT EXISTS events_no_update BEFORE UPDATE ON events
    BEGIN SELECT RAISE(ABORT, 'events are append-only'); END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS events_no_delete BEFORE DELETE ON events
    BEGIN SELECT RAISE(ABORT, 'events are append-only'); END;
    """,
)


def now_ms() -> int:
    return int(time.time() * 1000)


def canon_json(obj: Any) -> str:
    """Stable JSON for event payloads and global state.

    No `default=`: a non-JSON value in a payload fails the transaction.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    raw = str(os.environ.get(name, "")).strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        log.warning("ignoring non-integer %s=%r", name, raw)
        return int(default)


_SYNC_LEVELS = {"OFF", "NORMAL", "FULL", "EXTRA"}


@dataclass(frozen=True)
class SqliteTuning:
    """Connection pragmas and write-retry policy, read from TIPLEDGER_SQLITE_* env vars.

    Read per connection so tests (and operators) can change knobs at runtime.
    """

    connect_timeout_ms: int
    busy_timeout_ms: int
    synchronous: str
    wal_autocheckpoint: int
    journal_size_limit: int
    cache_size_kib: int
    allow_non_wal: bool
    write_deadline_ms: int
    backoff_base_ms: int
    backoff_max_ms: int

    @classmethod
    def from_env(cls) -> "SqliteTuning":
        # prod gets FULL durability; dev/test trade it for speed.
        mode = (os.environ.get("TIPLEDGER_MODE") or "prod").strip().lower()
        sync_default = "FULL" if mode == "prod" else "NORMAL"
        sync = (os.environ.get("TIPLEDGER_SQLITE_SYNCHRONOUS") or sync_default).strip().upper()

        connect_ms = max(0, _env_int("TIPLEDGER_SQLITE_CONNECT_TIMEOUT_MS", 5_000))
        base_ms = max(1, _env_int("TIPLEDGER_SQLITE_WRITE_BACKOFF_BASE_MS", 5))
        return cls(
            connect_timeout_ms=connect_ms,
            busy_timeout_ms=max(0, _env_int("TIPLEDGER_SQLITE_BUSY_TIMEOUT_MS", connect_ms)),
            synchronous=sync if sync in _SYNC_LEVELS else sync_default,
            wal_autocheckpoint=max(1, _env_int("TIPLEDGER_SQLITE_WAL_AUTOCHECKPOINT", 1000)),
            journal_size_limit=max(0, _env_int("TIPLEDGER_SQLITE_JOURNAL_SIZE_LIMIT", 64 * 1024 * 1024)),
            cache_size_kib=max(0, _env_int("TIPLEDGER_SQLITE_CACHE_SIZE_KIB", 16 * 1024)),
            allow_non_wal=(os.environ.get("TIPLEDGER_SQLITE_ALLOW_NON_WAL") or "").strip().lower() in {"1", "true"},
            write_deadline_ms=max(250, _env_int("TIPLEDGER_SQLITE_WRITE_DEADLINE_MS", 30_000)),
            backoff_base_ms=base_ms,
            backoff_max_ms=max(base_ms, _env_int("TIPLEDGER_SQLITE_WRITE_BACKOFF_MAX_MS", 250)),
        )

    def pragmas(self) -> List[str]:
        return [
            f"PRAGMA synchronous={self.synchronous};",
            "PRAGMA foreign_keys=ON;",
            "PRAGMA temp_store=MEMORY;",
            f"PRAGMA wal_autocheckpoint={self.wal_autocheckpoint};",
            f"PRAGMA journal_size_limit={self.journal_size_limit};",
            # negative cache_size is KiB
            f"PRAGMA cache_size={-self.cache_size_kib};",
            f"PRAGMA busy_timeout={self.busy_timeout_ms};",
        ]

    def backoff_s(self, attempt: int) -> float:
        """Exponential backoff capped at backoff_max_ms, jittered to [0.5x, 1.5x]."""
        ms = min(float(self.backoff_max_ms), self.backoff_base_ms * (2.0 ** min(attempt, 8)))
        return (ms / 1000.0) * (0.5 + random.random())


def _is_locked(e: sqlite3.OperationalError) -> bool:
    msg = str(e).lower()
    return "database is locked" in msg or "database is busy" in msg or ("locked" in msg and "database" in msg)


class SqliteDB:
    """One SQLite file holding accounts, tips, idempotency keys and the event log.

    Connections are never shared between threads; every read or write opens
    its own. SQLite admits one writer at a time, so each write_tx() is
    serializable over the whole ledger. Under contention BEGIN IMMEDIATE
    fails with "database is locked"; write_tx() retries with bounded backoff
    and then raises ConflictError("store_contention").
    """

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    def _connect(self, tuning: SqliteTuning) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            con = sqlite3.connect(
                self.path,
                timeout=tuning.connect_timeout_ms / 1000.0,
                isolation_level=None,  # BEGIN/COMMIT issued explicitly
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StorageError("connect_failed", {"path": self.path, "err": str(e)}) from e
        con.row_factory = sqlite3.Row

        try:
            self._require_wal(con, tuning)
            for stmt in tuning.pragmas():
                con.execute(stmt)
        except BaseException:
            con.close()
            raise
        return con

    @staticmethod
    def _require_wal(con: sqlite3.Connection, tuning: SqliteTuning) -> None:
        # Readers must not block behind the writer.
        try:
            row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
        except sqlite3.Error as e:
            if tuning.allow_non_wal:
                return
            raise StorageError("journal_mode_failed", {"err": str(e)}) from e
        mode = str(row[0]).strip().lower() if row is not None else ""
        if mode and mode != "wal" and not tuning.allow_non_wal:
            raise StorageError("journal_mode_not_wal", {"journal_mode": mode})

    def init_schema(self) -> None:
        with self.write_tx() as con:
            for ddl in _SCHEMA:
                con.execute(ddl)

            row = con.execute("SELECT value FROM meta WHERE key='schema_version';").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(SCHEMA_VERSION),))
                return
            have = str(row["value"])
            if have != str(SCHEMA_VERSION):
                raise StorageError("schema_version_mismatch", {"have": have, "want": SCHEMA_VERSION})

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect(SqliteTuning.from_env())
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _execute_with_retry(
        con: sqlite3.Connection, stmt: str, tuning: SqliteTuning, deadline_ms: int, phase: str
    ) -> None:
        attempt = 0
        while True:
            try:
                con.execute(stmt)
                return
            except sqlite3.OperationalError as e:
                if not _is_locked(e):
                    raise StorageError(f"{phase}_failed", {"err": str(e)}) from e
                if now_ms() >= deadline_ms:
                    raise ConflictError(
                        "store_contention",
                        {"phase": phase, "attempts": attempt + 1, "deadline_ms": tuning.write_deadline_ms},
                    ) from e
                time.sleep(tuning.backoff_s(attempt))
                attempt += 1

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT with bounded retry on writer-lock contention.

        BEGIN and COMMIT share one deadline (COMMIT can hit a lock while another
        connection checkpoints). Any exception inside the block rolls back.
        """
        tuning = SqliteTuning.from_env()
        deadline = now_ms() + tuning.write_deadline_ms

        with self.connection() as con:
            self._execute_with_retry(con, "BEGIN IMMEDIATE;", tuning, deadline, "begin")
            try:
                yield con
                self._execute_with_retry(con, "COMMIT;", tuning, deadline, "commit")
            except BaseException:
                try:
                    con.execute("ROLLBACK;")
                except sqlite3.Error as rb:
                    # the in-flight error is re-raised below; the connection closes right after
                    log.warning("rollback failed: %s", rb)
                raise


__all__ = ["SCHEMA_VERSION", "SqliteDB", "SqliteTuning", "canon_json", "now_ms"]
