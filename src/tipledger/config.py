# src/tipledger/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from tipledger.ledger.constants import DEFAULT_DAILY_RATE_BPS, DEFAULT_MINIMUM_STAKE, MAX_DAILY_RATE_BPS
from tipledger.ledger.units import parse_units

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    if v is None:
        return int(default)
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_opt_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


@dataclass(frozen=True)
class LedgerConfig:
    mode: str  # "dev" | "test" | "prod"

    # Single SQLite DB file for the whole ledger.
    db_path: str

    # Account granted the owner role when the database is first created.
    owner: Optional[str]

    daily_rate_bps: int
    minimum_stake: int  # smallest units

    log_level: str
    metrics_enabled: bool


_ALLOWED_MODES = {"dev", "test", "prod"}


def validate_ledger_config(cfg: LedgerConfig) -> None:
    """Fail-fast validation for operator config."""

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {sorted(_ALLOWED_MODES)}; got: {cfg.mode!r}")

    if not isinstance(cfg.db_path, str) or not cfg.db_path.strip():
        raise ValueError("db_path must be a non-empty string")

    if not (0 <= int(cfg.daily_rate_bps) <= MAX_DAILY_RATE_BPS):
        raise ValueError(f"daily_rate_bps must be 0..{MAX_DAILY_RATE_BPS}; got: {cfg.daily_rate_bps}")

    if int(cfg.minimum_stake) < 0:
        raise ValueError(f"minimum_stake must be >= 0; got: {cfg.minimum_stake}")

    if mode == "prod" and not cfg.owner:
        # A prod ledger without an owner can never change its rate or recover reserve.
        raise ValueError("owner is required in prod mode")


def default_ledger_config() -> LedgerConfig:
    return LedgerConfig(
        mode="dev",
        db_path="./data/tipledger.db",
        owner=None,
        daily_rate_bps=DEFAULT_DAILY_RATE_BPS,
        minimum_stake=DEFAULT_MINIMUM_STAKE,
        log_level=_as_str(os.environ.get("TIPLEDGER_LOG_LEVEL"), "INFO"),
        metrics_enabled=_as_bool(os.environ.get("TIPLEDGER_METRICS_ENABLED"), False),
    )


def _read_raw(p: Path) -> Json:
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = yaml.safe_load(text)
    else:
        raw = json.loads(text)
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("ledger config must be a mapping")
    return raw


def read_ledger_config_file(path: str) -> LedgerConfig:
    raw = _read_raw(Path(path))
    d = default_ledger_config()

    # minimum_stake accepts smallest units (int) or a token amount string ("1.5").
    ms_raw = raw.get("minimum_stake")
    minimum_stake = d.minimum_stake if ms_raw is None else parse_units(ms_raw)

    cfg = LedgerConfig(
        mode=_as_str(raw.get("mode"), d.mode).strip().lower(),
        db_path=_as_str(raw.get("db_path"), d.db_path),
        owner=_as_opt_str(raw.get("owner")),
        daily_rate_bps=_as_int(raw.get("daily_rate_bps"), d.daily_rate_bps),
        minimum_stake=minimum_stake,
        log_level=_as_str(raw.get("log_level"), d.log_level),
        metrics_enabled=_as_bool(raw.get("metrics_enabled"), d.metrics_enabled),
    )

    validate_ledger_config(cfg)
    return cfg


def load_ledger_config(*, config_path: Optional[str] = None) -> LedgerConfig:
    p = config_path or os.environ.get("TIPLEDGER_CONFIG_PATH")
    if p:
        return read_ledger_config_file(p)

    cfg = default_ledger_config()
    env_db = os.environ.get("TIPLEDGER_DB_PATH")
    env_owner = os.environ.get("TIPLEDGER_OWNER")
    if env_db or env_owner:
        cfg = LedgerConfig(
            mode=cfg.mode,
            db_path=_as_str(env_db, cfg.db_path),
            owner=_as_opt_str(env_owner),
            daily_rate_bps=cfg.daily_rate_bps,
            minimum_stake=cfg.minimum_stake,
            log_level=cfg.log_level,
            metrics_enabled=cfg.metrics_enabled,
        )
    validate_ledger_config(cfg)
    return cfg


def apply_ledger_config_to_env(cfg: LedgerConfig) -> None:
    validate_ledger_config(cfg)
    os.environ["TIPLEDGER_MODE"] = cfg.mode
    os.environ["TIPLEDGER_DB_PATH"] = cfg.db_path
    os.environ["TIPLEDGER_LOG_LEVEL"] = cfg.log_level
    os.environ["TIPLEDGER_METRICS_ENABLED"] = "1" if cfg.metrics_enabled else "0"


__all__ = [
    "LedgerConfig",
    "validate_ledger_config",
    "default_ledger_config",
    "read_ledger_config_file",
    "load_ledger_config",
    "apply_ledger_config_to_env",
]
