# backend/cashdesk/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/cashdesk.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///cashdesk.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # |counted - expected| above this needs an explicit override to close
    CASH_DIFFERENCE_THRESHOLD_CENTS = _int_env("CASH_DIFFERENCE_THRESHOLD_CENTS", 1000)

    # Z reports group sessions by the local calendar day of closed_at
    CASH_REPORT_TIMEZONE = os.environ.get("CASH_REPORT_TIMEZONE", "UTC")

    CASH_PAYMENT_METHODS = tuple(
        m.strip()
        for m in os.environ.get("CASH_PAYMENT_METHODS", "cash,card,check,other").split(",")
        if m.strip()
    )
    CASH_PAYMENT_METHOD = os.environ.get("CASH_PAYMENT_METHOD", "cash")

    CASH_RETRY_ATTEMPTS = _int_env("CASH_RETRY_ATTEMPTS", 5)
    CASH_RETRY_BACKOFF = float(os.environ.get("CASH_RETRY_BACKOFF", "0.05"))
