from __future__ import annotations

"""In-process ledger metrics with Prometheus text exposition.

Counters carry labels (`ops_total{op="stake",outcome="ok"}`); gauges mirror
global ledger totals. Values live in this process only: the CLI refreshes
gauges from the store before rendering.
"""

import os
import threading
import time
from typing import Dict, List, Tuple

Labels = Tuple[Tuple[str, str], ...]
_Key = Tuple[str, Labels]

_lock = threading.Lock()
_counters: Dict[_Key, int] = {}
_gauges: Dict[str, int] = {}
_timings: Dict[_Key, Tuple[int, float]] = {}
_started_ms = int(time.time() * 1000)


def metrics_enabled() -> bool:
    v = (os.environ.get("TIPLEDGER_METRICS_ENABLED") or "").strip().lower()
    return v in {"1", "true", "yes", "y", "on"}


def _key(name: str, labels: Dict[str, object]) -> _Key:
    return str(name).strip(), tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _render(key: _Key, suffix: str = "") -> str:
    name, labels = key
    if not labels:
        return f"{name}{suffix}"
    body = ",".join(f'{k}="{v}"' for k, v in labels)
    return f"{name}{suffix}{{{body}}}"


def inc_counter(name: str, value: int = 1, **labels: object) -> None:
    k = _key(name, labels)
    if not k[0]:
        return
    with _lock:
        _counters[k] = _counters.get(k, 0) + int(value)


def set_gauge(name: str, value: int) -> None:
    n = str(name or "").strip()
    if not n:
        return
    with _lock:
        _gauges[n] = int(value)


def observe_seconds(name: str, seconds: float, **labels: object) -> None:
    """Add one observation to a count/sum summary."""
    k = _key(name, labels)
    with _lock:
        count, total = _timings.get(k, (0, 0.0))
        _timings[k] = (count + 1, total + float(seconds))


def counter_value(name: str, **labels: object) -> int:
    with _lock:
        return _counters.get(_key(name, labels), 0)


def reset() -> None:
    """Drop every metric (tests, CLI one-shots)."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _timings.clear()


def snapshot() -> dict:
    now = int(time.time() * 1000)
    with _lock:
        return {
            "uptime_ms": now - _started_ms,
            "counters": {_render(k): v for k, v in _counters.items()},
            "gauges": dict(_gauges),
            "timings": {_render(k): {"count": c, "sum_s": s} for k, (c, s) in _timings.items()},
        }


def format_prometheus(prefix: str = "tipledger_") -> str:
    pre = str(prefix or "").strip() or "tipledger_"
    with _lock:
        counters = sorted(_counters.items())
        gauges = sorted(_gauges.items())
        timings = sorted(_timings.items())

    lines: List[str] = [f"{pre}uptime_ms {int(time.time() * 1000) - _started_ms}"]

    typed: set = set()
    for k, v in counters:
        if k[0] not in typed:
            lines.append(f"# TYPE {pre}{k[0]} counter")
            typed.add(k[0])
        lines.append(f"{pre}{_render(k)} {v}")

    for name, v in gauges:
        lines.append(f"# TYPE {pre}{name} gauge")
        lines.append(f"{pre}{name} {v}")

    for k, (count, total) in timings:
        if k[0] not in typed:
            lines.append(f"# TYPE {pre}{k[0]} summary")
            typed.add(k[0])
        lines.append(f"{pre}{_render(k, '_count')} {count}")
        lines.append(f"{pre}{_render(k, '_sum')} {total:.6f}")

    return "\n".join(lines) + "\n"


__all__ = [
    "metrics_enabled",
    "inc_counter",
    "set_gauge",
    "observe_seconds",
    "counter_value",
    "reset",
    "snapshot",
    "format_prometheus",
]
