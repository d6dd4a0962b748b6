# src/tipledger/runtime/structured_logging.py
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def configure_structured_logging(level: str | None = None) -> None:
    """Configure stdlib logging for JSONL output (stdout).

    - Level from the argument, else TIPLEDGER_LOG_LEVEL (default INFO).
    - Safe to call multiple times.
    """
    level_name = (level or os.environ.get("TIPLEDGER_LOG_LEVEL") or "INFO").strip().upper()
    lvl = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    if getattr(root, "_tipledger_configured", False):  # type: ignore[attr-defined]
        root.setLevel(lvl)
        return

    handler = logging.StreamHandler()
    handler.setLevel(lvl)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root.handlers = [handler]
    root.setLevel(lvl)
    setattr(root, "_tipledger_configured", True)  # type: ignore[attr-defined]


def _jsonable(v: Any) -> Any:
    # Amounts can exceed 2**53; render them as strings so log consumers keep precision.
    if isinstance(v, bool) or v is None:
        return v
    if isinstance(v, int) and abs(v) >= 2**53:
        return str(v)
    if isinstance(v, dict):
        return {str(k): _jsonable(x) for k, x in v.items()}
    if isinstance(v, (list, tuple)):
        return [_jsonable(x) for x in v]
    return v


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    payload: Json = {"ts_ms": _now_ms(), "event": event}
    payload.update(_jsonable(fields))
    try:
        msg = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        parts = [f"event={event}"] + [f"{k}={fields.get(k)!r}" for k in sorted(fields.keys())]
        msg = " ".join(parts)
    logger.log(level, msg)


__all__ = ["configure_structured_logging", "log_event"]
