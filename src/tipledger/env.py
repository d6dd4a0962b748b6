# src/tipledger/env.py
from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import dotenv_values

_state: dict = {"loaded": False, "path": None, "keys": []}


def resolve_dotenv_path(dotenv_path: Optional[str] = None) -> Path:
    """Explicit argument, else TIPLEDGER_DOTENV_PATH, else ./.env."""
    raw = dotenv_path or os.environ.get("TIPLEDGER_DOTENV_PATH") or ".env"
    return Path(raw).expanduser()


def load_dotenv_if_present(dotenv_path: Optional[str] = None) -> bool:
    """Apply a .env file to os.environ, once per process.

    Keys already set in the environment are left alone. Returns True only on
    the call that actually read a file.
    """
    if _state["loaded"]:
        return False
    _state["loaded"] = True

    path = resolve_dotenv_path(dotenv_path)
    if not path.is_file():
        return False

    applied: List[str] = []
    for key, value in dotenv_values(path).items():
        if value is None or key in os.environ:
            continue
        os.environ[key] = value
        applied.append(key)

    _state["path"] = str(path)
    _state["keys"] = sorted(applied)
    return True


def dotenv_keys_applied() -> List[str]:
    """Names (never values) of variables the loaded .env file contributed."""
    return list(_state["keys"])


def _reset_for_tests() -> None:
    _state.update(loaded=False, path=None, keys=[])
