from __future__ import annotations

import json
import logging

import pytest

from conftest import T0
from tipledger.ledger.constants import UNIT
from tipledger.runtime import metrics
from tipledger.runtime.errors import InsufficientFundsError
from tipledger.runtime.executor import TipLedger
from tipledger.runtime.structured_logging import log_event


@pytest.fixture(autouse=True)
def _fresh_metrics() -> None:
    metrics.reset()


def _events(caplog: pytest.LogCaptureFixture) -> list[dict]:
    out = []
    for rec in caplog.records:
        if rec.name == "tipledger.ledger":
            out.append(json.loads(rec.getMessage()))
    return out


def test_log_event_renders_json_line(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    lg = logging.getLogger("tipledger.test")
    log_event(lg, "hello", amount=10**30, small=5, nested={"x": 2**60})

    rec = json.loads(caplog.records[-1].getMessage())
    assert rec["event"] == "hello"
    assert rec["amount"] == str(10**30)
    assert rec["small"] == 5
    assert rec["nested"] == {"x": str(2**60)}
    assert isinstance(rec["ts_ms"], int)


def test_ops_are_logged_and_counted(ledger: TipLedger, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="tipledger.ledger")
    ledger.stake("alice", 2 * UNIT, now=T0)
    with pytest.raises(InsufficientFundsError):
        ledger.unstake("alice", 5 * UNIT, now=T0)

    evs = _events(caplog)
    applied = [e for e in evs if e["event"] == "op_applied"]
    rejected = [e for e in evs if e["event"] == "op_rejected"]
    assert applied and applied[-1]["op"] == "stake"
    assert applied[-1]["account"] == "alice"
    assert rejected[-1]["op"] == "unstake"
    assert rejected[-1]["code"] == "insufficient_funds"
    assert rejected[-1]["reason"] == "insufficient_stake"

    assert metrics.counter_value("ops_total", op="stake", outcome="ok") == 1
    assert metrics.counter_value("ops_total", op="unstake", outcome="rejected", code="insufficient_funds") == 1
    snap = metrics.snapshot()
    assert snap["gauges"]["total_staked"] == 2 * UNIT
    assert snap["timings"]['op_duration_seconds{op="stake"}']["count"] == 1


def test_prometheus_text(ledger: TipLedger) -> None:
    ledger.fund_reserve("treasury", 3, now=T0)
    text = metrics.format_prometheus()
    lines = text.splitlines()
    assert lines[0].startswith("tipledger_uptime_ms ")
    assert "# TYPE tipledger_ops_total counter" in lines
    assert 'tipledger_ops_total{op="fund_reserve",outcome="ok"} 1' in lines
    assert "tipledger_custody_reserve 3" in lines
    assert 'tipledger_op_duration_seconds_count{op="fund_reserve"} 1' in lines
    assert text.endswith("\n")


def test_metrics_enabled_flag(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TIPLEDGER_METRICS_ENABLED", raising=False)
    assert metrics.metrics_enabled() is False
    monkeypatch.setenv("TIPLEDGER_METRICS_ENABLED", "yes")
    assert metrics.metrics_enabled() is True
    monkeypatch.setenv("TIPLEDGER_METRICS_ENABLED", "0")
    assert metrics.metrics_enabled() is False
