from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from tipledger.config import LedgerConfig, load_ledger_config
from tipledger.ledger import accrual as accrual_engine
from tipledger.ledger.constants import DEFAULT_DAILY_RATE_BPS, DEFAULT_MINIMUM_STAKE, MAX_DAILY_RATE_BPS
from tipledger.ledger.idempotency import normalize_key
from tipledger.ledger.replay import audit_store
from tipledger.ledger.types import AccountView, ClaimMode, GlobalState, GlobalView, LedgerEvent, TipRecord, TipStatus
from tipledger.runtime.apply import admin, claims, staking, tipping
from tipledger.runtime.apply.accrual import accrue_account
from tipledger.runtime.apply.common import normalize_account, require_amount, require_timestamp
from tipledger.runtime.errors import LedgerError, StorageError, ValidationError
from tipledger.runtime.ledger_store import LedgerTxn, SqliteLedgerStore
from tipledger.runtime.metrics import inc_counter, observe_seconds, set_gauge
from tipledger.runtime.sqlite_db import SqliteDB
from tipledger.runtime.structured_logging import log_event

Json = Dict[str, Any]
T = TypeVar("T")

log = logging.getLogger("tipledger.ledger")


def _wall_clock() -> int:
    return int(time.time())


def _publish_gauges(g: GlobalState) -> None:
    set_gauge("total_staked", int(g.total_staked))
    set_gauge("custody_reserve", int(g.custody_reserve))
    set_gauge("free_reserve", int(g.free_reserve))
    set_gauge("daily_rate_bps", int(g.daily_rate_bps))
    set_gauge("rate_version", int(g.rate_version))


class TipLedger:
    """Staking / tip-allowance / claim ledger backed by one SQLite file.

    Every mutating method runs as a single store transaction: accrual, the
    operation's checks and its effects commit together or not at all. Any
    rejection raises a LedgerError subclass and leaves state unchanged.

    Timestamps are integer seconds. `now` defaults to the wall clock (or the
    injected `clock`); passing it explicitly makes behaviour reproducible.
    """

    def __init__(
        self,
        *,
        db_path: str,
        owner: Optional[str] = None,
        daily_rate_bps: int = DEFAULT_DAILY_RATE_BPS,
        minimum_stake: int = DEFAULT_MINIMUM_STAKE,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if not (0 <= int(daily_rate_bps) <= MAX_DAILY_RATE_BPS):
            raise ValidationError("rate_too_high", {"rate_bps": daily_rate_bps, "max_rate_bps": MAX_DAILY_RATE_BPS})

        self.db_path = str(db_path)
        self._clock = clock or _wall_clock

        self._db = SqliteDB(path=self.db_path)
        self._store = SqliteLedgerStore(
            db=self._db,
            owner=normalize_account(owner, field="owner") if owner else None,
            daily_rate_bps=int(daily_rate_bps),
            minimum_stake=int(minimum_stake),
        )

    @classmethod
    def from_config(cls, cfg: Optional[LedgerConfig] = None, **kw: Any) -> "TipLedger":
        c = cfg or load_ledger_config()
        return cls(
            db_path=c.db_path,
            owner=c.owner,
            daily_rate_bps=c.daily_rate_bps,
            minimum_stake=c.minimum_stake,
            **kw,
        )

    @property
    def store(self) -> SqliteLedgerStore:
        return self._store

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _now(self, now: Optional[int]) -> int:
        return require_timestamp(self._clock() if now is None else now)

    def _write(self, op: str, accounts: Iterable[str], fn: Callable[[LedgerTxn], T], *, now: int, **fields: Any) -> T:
        final: Dict[str, GlobalState] = {}

        def _mut(txn: LedgerTxn) -> T:
            out = fn(txn)
            final["g"] = txn.global_state.copy()
            return out

        started = time.monotonic()
        try:
            result = self._store.atomic_update(accounts, _mut, now=now)
        except LedgerError as e:
            inc_counter("ops_total", op=op, outcome="rejected", code=e.code)
            lvl = logging.ERROR if isinstance(e, StorageError) else logging.INFO
            log_event(log, "op_rejected", level=lvl, op=op, now=now, code=e.code, reason=e.reason, **fields)
            raise

        observe_seconds("op_duration_seconds", time.monotonic() - started, op=op)
        inc_counter("ops_total", op=op, outcome="ok")
        if "g" in final:
            _publish_gauges(final["g"])
        log_event(log, "op_applied", op=op, now=now, **fields)
        return result

    # ------------------------------------------------------------------
    # staking
    # ------------------------------------------------------------------

    def stake(self, account: str, amount: int, *, now: Optional[int] = None) -> AccountView:
        a = normalize_account(account)
        amt = require_amount(amount)
        ts = self._now(now)
        st = self._write("stake", [a], lambda txn: staking.apply_stake(txn, a, amt), now=ts, account=a, amount=amt)
        return AccountView.from_state(st)

    def unstake(self, account: str, amount: int, *, now: Optional[int] = None) -> AccountView:
        a = normalize_account(account)
        amt = require_amount(amount)
        ts = self._now(now)
        st = self._write("unstake", [a], lambda txn: staking.apply_unstake(txn, a, amt), now=ts, account=a, amount=amt)
        return AccountView.from_state(st)

    def accrue(self, account: str, *, now: Optional[int] = None) -> int:
        """Persist accrual for `account` up to `now`. Returns the newly granted allowance."""
        a = normalize_account(account)
        ts = self._now(now)
        return self._write("accrue", [a], lambda txn: accrue_account(txn, a), now=ts, account=a)

    def fund_reserve(self, funder: str, amount: int, *, now: Optional[int] = None) -> Json:
        f = normalize_account(funder, field="funder")
        amt = require_amount(amount)
        ts = self._now(now)
        return self._write(
            "fund_reserve", [], lambda txn: staking.apply_fund_reserve(txn, f, amt), now=ts, account=f, amount=amt
        )

    # ------------------------------------------------------------------
    # tips
    # ------------------------------------------------------------------

    def send_tip(
        self,
        sender: str,
        recipient: str,
        amount: int,
        idempotency_key: str,
        *,
        now: Optional[int] = None,
    ) -> TipRecord:
        s = normalize_account(sender, field="sender")
        # Stateless checks run before any store access so their order is fixed.
        r, amt, key = tipping.validate_tip(s, recipient, amount, idempotency_key)
        ts = self._now(now)
        return self._write(
            "send_tip",
            [s, r],
            lambda txn: tipping.apply_send_tip(txn, s, r, amt, key),
            now=ts,
            sender=s,
            recipient=r,
            amount=amt,
            key=key,
        )

    def send_tips_batch(
        self,
        sender: str,
        items: Sequence[Any],
        idempotency_keys: Sequence[Any],
        *,
        now: Optional[int] = None,
    ) -> List[TipRecord]:
        s = normalize_account(sender, field="sender")
        norm = tipping.validate_batch(s, items, idempotency_keys)
        ts = self._now(now)
        accounts = [s] + [r for r, _, _ in norm]
        return self._write(
            "send_tips_batch",
            accounts,
            lambda txn: tipping.apply_send_tips_batch(txn, s, items, idempotency_keys),
            now=ts,
            sender=s,
            count=len(norm),
            total=sum(amt for _, amt, _ in norm),
        )

    def allocate_rewards(
        self,
        distributor: str,
        items: Sequence[Any],
        idempotency_keys: Sequence[Any],
        *,
        now: Optional[int] = None,
    ) -> List[TipRecord]:
        d = normalize_account(distributor, field="distributor")
        norm = tipping.validate_batch(d, items, idempotency_keys)
        ts = self._now(now)

        return self._write(
            "allocate_rewards",
            [r for r, _, _ in norm],
            lambda txn: tipping.apply_allocate_rewards(txn, d, items, idempotency_keys),
            now=ts,
            distributor=d,
            count=len(norm),
            total=sum(amt for _, amt, _ in norm),
        )

    # ------------------------------------------------------------------
    # claims
    # ------------------------------------------------------------------

    def claim(
        self,
        recipient: str,
        *,
        mode: Any = ClaimMode.TO_BALANCE,
        idempotency_key: Optional[str] = None,
        now: Optional[int] = None,
    ) -> int:
        r = normalize_account(recipient, field="recipient")
        try:
            m = ClaimMode.parse(mode)
        except ValueError as e:
            raise ValidationError("invalid_claim_mode", {"mode": str(mode)}) from e
        ts = self._now(now)
        return self._write(
            "claim",
            [r],
            lambda txn: claims.apply_claim(txn, r, m, idempotency_key),
            now=ts,
            recipient=r,
            mode=m.value,
        )

    # ------------------------------------------------------------------
    # administration
    # ------------------------------------------------------------------

    def set_daily_allowance_rate_bps(self, actor: str, rate_bps: int, *, now: Optional[int] = None) -> Json:
        a = normalize_account(actor, field="actor")
        ts = self._now(now)
        return self._write(
            "set_daily_rate", [], lambda txn: admin.apply_set_daily_rate(txn, a, rate_bps), now=ts, actor=a, rate_bps=rate_bps
        )

    def set_minimum_stake(self, actor: str, minimum_stake: int, *, now: Optional[int] = None) -> Json:
        a = normalize_account(actor, field="actor")
        ts = self._now(now)
        return self._write(
            "set_minimum_stake",
            [],
            lambda txn: admin.apply_set_minimum_stake(txn, a, minimum_stake),
            now=ts,
            actor=a,
            minimum_stake=minimum_stake,
        )

    def reset_account_tip_state(
        self,
        actor: str,
        account: str,
        allowance_granted: int,
        allowance_spent: int,
        *,
        now: Optional[int] = None,
    ) -> Json:
        a = normalize_account(actor, field="actor")
        acct = normalize_account(account)
        ts = self._now(now)
        return self._write(
            "reset_tip_state",
            [acct],
            lambda txn: admin.apply_reset_tip_state(txn, a, acct, allowance_granted, allowance_spent),
            now=ts,
            actor=a,
            account=acct,
        )

    def reset_accounts_tip_state_batch(
        self,
        actor: str,
        accounts: Sequence[str],
        allowance_granted: Sequence[int],
        allowance_spent: Sequence[int],
        *,
        now: Optional[int] = None,
    ) -> List[Json]:
        a = normalize_account(actor, field="actor")
        rows = admin.validate_reset_batch(accounts, allowance_granted, allowance_spent)
        ts = self._now(now)
        return self._write(
            "reset_tip_state_batch",
            [acct for acct, _, _ in rows],
            lambda txn: admin.apply_reset_tip_state_batch(txn, a, accounts, allowance_granted, allowance_spent),
            now=ts,
            actor=a,
            count=len(rows),
        )

    def grant_role(self, actor: str, account: str, role: str, *, now: Optional[int] = None) -> Json:
        a = normalize_account(actor, field="actor")
        acct = normalize_account(account)
        ts = self._now(now)
        return self._write(
            "grant_role", [], lambda txn: admin.apply_grant_role(txn, a, acct, role), now=ts, actor=a, account=acct, role=role
        )

    def revoke_role(self, actor: str, account: str, role: str, *, now: Optional[int] = None) -> Json:
        a = normalize_account(actor, field="actor")
        acct = normalize_account(account)
        ts = self._now(now)
        return self._write(
            "revoke_role", [], lambda txn: admin.apply_revoke_role(txn, a, acct, role), now=ts, actor=a, account=acct, role=role
        )

    def withdraw_reserve(self, actor: str, amount: int, *, now: Optional[int] = None) -> Json:
        a = normalize_account(actor, field="actor")
        amt = require_amount(amount)
        ts = self._now(now)
        return self._write(
            "withdraw_reserve", [], lambda txn: admin.apply_withdraw_reserve(txn, a, amt), now=ts, actor=a, amount=amt
        )

    # ------------------------------------------------------------------
    # reads (never write, never accrue)
    # ------------------------------------------------------------------

    def get_account_view(self, account: str) -> AccountView:
        return self._store.get(normalize_account(account))

    def preview_allowance(self, account: str, *, now: Optional[int] = None) -> int:
        """Available allowance as of `now`, including accrual not yet persisted."""
        st = self._store.get_state(normalize_account(account))
        pending = accrual_engine.preview(st, self._now(now), self._store.rate_schedule())
        return int(st.available_allowance) + int(pending)

    def get_global_view(self) -> GlobalView:
        return self._store.get_global()

    def publish_gauges(self) -> None:
        """Refresh the global gauges from stored state (fresh processes have none yet)."""
        _publish_gauges(self._store.global_state())

    def get_tip(self, idempotency_key: str) -> Optional[TipRecord]:
        return self._store.get_tip(normalize_key(idempotency_key))

    def list_tips(
        self,
        *,
        recipient: Optional[str] = None,
        sender: Optional[str] = None,
        status: Optional[Any] = None,
        limit: int = 100,
    ) -> List[TipRecord]:
        try:
            st = TipStatus(status) if status is not None else None
        except ValueError as e:
            raise ValidationError("invalid_status", {"status": str(status)}) from e
        return self._store.list_tips(
            recipient=normalize_account(recipient, field="recipient") if recipient is not None else None,
            sender=normalize_account(sender, field="sender") if sender is not None else None,
            status=st,
            limit=limit,
        )

    def has_role(self, account: str, role: str) -> bool:
        return self._store.has_role(normalize_account(account), role)

    def events(self, *, since_seq: int = 0, account: Optional[str] = None, limit: int = 100) -> List[LedgerEvent]:
        acct = normalize_account(account) if account is not None else None
        return self._store.events(since_seq=since_seq, account=acct, limit=limit)

    def audit(self) -> Json:
        """Replay the event log and compare it with stored state. See tipledger.ledger.replay."""
        report = audit_store(self._store)
        if not report["ok"]:
            inc_counter("audit_failed_total", 1)
            log_event(log, "audit_failed", level=logging.WARNING, problems=len(report["problems"]))
        return report


__all__ = ["TipLedger"]
