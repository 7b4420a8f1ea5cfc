# backend/apos_overrides/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/apos_overrides.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///apos_overrides.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Manager PIN verification
    PIN_MAX_FAILED_ATTEMPTS = _int_env("PIN_MAX_FAILED_ATTEMPTS", 3)
    PIN_LOCKOUT_MINUTES = _int_env("PIN_LOCKOUT_MINUTES", 15)

    # Single-use approval tokens
    APPROVAL_TOKEN_TTL_MINUTES = _int_env("APPROVAL_TOKEN_TTL_MINUTES", 10)

    # Threshold rule cache owned by the policy evaluator
    RULE_CACHE_TTL_SECONDS = _int_env("RULE_CACHE_TTL_SECONDS", 60)

    # Background workers (timeout sweeper + notification dispatcher)
    BACKGROUND_WORKERS_ENABLED = os.environ.get("BACKGROUND_WORKERS_ENABLED", "1") == "1"
    TIMEOUT_SWEEP_INTERVAL_SECONDS = _int_env("TIMEOUT_SWEEP_INTERVAL_SECONDS", 30)
    EVENT_KEEPALIVE_SECONDS = _int_env("EVENT_KEEPALIVE_SECONDS", 30)

    # Rule time-of-day / day-of-week scopes are evaluated in store-local time
    STORE_TIMEZONE = os.environ.get("STORE_TIMEZONE", "UTC")

    # Session tokens
    SESSION_ABSOLUTE_TIMEOUT_HOURS = _int_env("SESSION_ABSOLUTE_TIMEOUT_HOURS", 24)
    SESSION_IDLE_TIMEOUT_HOURS = _int_env("SESSION_IDLE_TIMEOUT_HOURS", 2)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    BACKGROUND_WORKERS_ENABLED = False
    EVENT_KEEPALIVE_SECONDS = 1
    RULE_CACHE_TTL_SECONDS = 0
