#!/usr/bin/env python3
"""
Operator CLI for a tipledger database.

  tipledger status                  global totals, rate, version
  tipledger account <id> [--now T]  account view (+ preview of pending accrual)
  tipledger audit                   replay the event log and check invariants
  tipledger events [--since N]      dump events as JSON lines
  tipledger op <envelope.json|->    apply one operation envelope
  tipledger metrics                 Prometheus text for this process

The database comes from --db, else the loaded config (TIPLEDGER_CONFIG_PATH).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

import yaml

from tipledger.config import LedgerConfig, apply_ledger_config_to_env, load_ledger_config
from tipledger.env import dotenv_keys_applied, load_dotenv_if_present
from tipledger.ledger.units import format_units
from tipledger.runtime.errors import LedgerError
from tipledger.runtime.executor import TipLedger
from tipledger.runtime.metrics import format_prometheus, metrics_enabled
from tipledger.runtime.op_dispatch import dispatch_operation
from tipledger.runtime.structured_logging import configure_structured_logging, log_event

log = logging.getLogger("tipledger.cli")


def _print(obj: Any) -> None:
    print(json.dumps(obj, sort_keys=True, indent=2, default=str))


def _open(args: argparse.Namespace, cfg: LedgerConfig) -> TipLedger:
    if args.db:
        return TipLedger(
            db_path=args.db,
            owner=cfg.owner,
            daily_rate_bps=cfg.daily_rate_bps,
            minimum_stake=cfg.minimum_stake,
        )
    return TipLedger.from_config(cfg)


def _cmd_status(ledger: TipLedger, args: argparse.Namespace) -> int:
    g = ledger.get_global_view().to_json()
    if args.human:
        for k in ("total_staked", "custody_reserve", "free_reserve", "minimum_stake", "rewards_allocated"):
            g[k] = format_units(g[k])
    _print(g)
    return 0


def _cmd_account(ledger: TipLedger, args: argparse.Namespace) -> int:
    v = ledger.get_account_view(args.account).to_json()
    v["preview_available_allowance"] = ledger.preview_allowance(args.account, now=args.now)
    if args.human:
        for k in ("staked_balance", "available_allowance", "claimable", "total_received", "preview_available_allowance"):
            v[k] = format_units(v[k])
    _print(v)
    return 0


def _cmd_audit(ledger: TipLedger, args: argparse.Namespace) -> int:
    report = ledger.audit()
    _print(report)
    return 0 if report["ok"] else 1


def _cmd_events(ledger: TipLedger, args: argparse.Namespace) -> int:
    for ev in ledger.events(since_seq=args.since, account=args.account, limit=args.limit):
        print(json.dumps(ev.to_json(), sort_keys=True, separators=(",", ":")))
    return 0


def _cmd_op(ledger: TipLedger, args: argparse.Namespace) -> int:
    raw = sys.stdin.read() if args.envelope == "-" else Path(args.envelope).read_text(encoding="utf-8")
    try:
        env = json.loads(raw)
    except json.JSONDecodeError as e:
        print(f"invalid envelope JSON: {e}", file=sys.stderr)
        return 2
    try:
        _print(dispatch_operation(ledger, env))
    except LedgerError as e:
        _print({"ok": False, "code": e.code, "reason": e.reason, "details": e.details})
        return 1
    return 0


def _cmd_metrics(ledger: TipLedger, args: argparse.Namespace) -> int:
    if not metrics_enabled():
        print("metrics disabled (set TIPLEDGER_METRICS_ENABLED=1)", file=sys.stderr)
        return 1
    ledger.publish_gauges()
    sys.stdout.write(format_prometheus())
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="tipledger", description="Staking / tip-allowance ledger operator tool")
    ap.add_argument("--db", default=None, help="SQLite database path (overrides config)")
    ap.add_argument("--config", default=None, help="JSON or YAML config file")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("status", help="global totals")
    p.add_argument("--human", action="store_true", help="render amounts as token decimals")
    p.set_defaults(fn=_cmd_status)

    p = sub.add_parser("account", help="account view")
    p.add_argument("account")
    p.add_argument("--now", type=int, default=None, help="preview accrual as of this unix time")
    p.add_argument("--human", action="store_true")
    p.set_defaults(fn=_cmd_account)

    p = sub.add_parser("audit", help="replay events and check invariants")
    p.set_defaults(fn=_cmd_audit)

    p = sub.add_parser("events", help="dump event log")
    p.add_argument("--since", type=int, default=0)
    p.add_argument("--account", default=None)
    p.add_argument("--limit", type=int, default=1000)
    p.set_defaults(fn=_cmd_events)

    p = sub.add_parser("op", help="apply one operation envelope")
    p.add_argument("envelope", help="path to a JSON envelope, or - for stdin")
    p.set_defaults(fn=_cmd_op)

    p = sub.add_parser("metrics", help="Prometheus text")
    p.set_defaults(fn=_cmd_metrics)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    dotenv_loaded = load_dotenv_if_present()
    args = build_parser().parse_args(argv)

    try:
        cfg = load_ledger_config(config_path=args.config)
    except (OSError, ValueError, yaml.YAMLError, LedgerError) as e:
        print(f"config error: {e}", file=sys.stderr)
        return 2
    apply_ledger_config_to_env(cfg)
    configure_structured_logging(cfg.log_level)
    if dotenv_loaded:
        log_event(log, "dotenv_loaded", keys=dotenv_keys_applied())

    try:
        ledger = _open(args, cfg)
        return int(args.fn(ledger, args))
    except LedgerError as e:
        print(f"{e.code}:{e.reason} {json.dumps(e.details, default=str)}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
