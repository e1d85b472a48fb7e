# backend/stockflow/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockflow.sqlite3 unless overridden
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockflow.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Optimistic stock writes: attempts before ConcurrentModification surfaces
    STOCK_CAS_MAX_ATTEMPTS = _env_int("STOCK_CAS_MAX_ATTEMPTS", 3)
    STOCK_CAS_BACKOFF_BASE = _env_float("STOCK_CAS_BACKOFF_BASE", 0.02)

    # Notifications are best-effort; a failed write is retried this many times in total
    NOTIFICATION_WRITE_ATTEMPTS = _env_int("NOTIFICATION_WRITE_ATTEMPTS", 2)
    ALERTS_ENABLED = _env_bool("ALERTS_ENABLED", True)

    DEFAULT_MIN_STOCK_LEVEL = _env_int("DEFAULT_MIN_STOCK_LEVEL", 5)
