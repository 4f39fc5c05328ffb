"""
Runtime configuration for the Mini-Rialo workflow engine.

Everything has a sensible demo default and can be overridden through
environment variables (RIALO_* and PORT) or an explicit overrides dict.
"""

import os
from typing import Optional, Dict, Any


DEFAULT_CONFIG: Dict[str, Any] = {
    "db_path": "data/rialo.db",
    "audit_path": None,                 # None = audit file disabled
    "eval_interval_seconds": 30,        # periodic evaluation tick
    "demo_balance": 5000,               # mock balance the dashboard passes in
    "default_token": "RLO",
    "time_interval_mode": "random",     # "random" or "elapsed"
    "time_interval_probability": 0.3,
    "recent_executions_limit": 20,
    "port": 8000,
}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Build the effective config.

    Precedence: overrides > environment > DEFAULT_CONFIG.
    """
    config = dict(DEFAULT_CONFIG)

    config["db_path"] = os.environ.get("RIALO_DB_PATH", config["db_path"])
    config["audit_path"] = os.environ.get("RIALO_AUDIT_PATH", config["audit_path"])
    config["eval_interval_seconds"] = _env_float("RIALO_EVAL_INTERVAL_SECONDS", config["eval_interval_seconds"])
    config["demo_balance"] = _env_float("RIALO_DEMO_BALANCE", config["demo_balance"])
    config["time_interval_mode"] = os.environ.get("RIALO_TIME_INTERVAL_MODE", config["time_interval_mode"])
    config["port"] = _env_int("PORT", config["port"])

    if overrides:
        config.update({k: v for k, v in overrides.items() if v is not None})

    if config["time_interval_mode"] not in ("random", "elapsed"):
        raise ValueError(f"time_interval_mode must be 'random' or 'elapsed', got {config['time_interval_mode']!r}")
    if config["eval_interval_seconds"] <= 0:
        raise ValueError("eval_interval_seconds must be positive")

    return config
