# backend/market/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/market.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///market.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Payment gateway (Midtrans Core API)
    MIDTRANS_SERVER_KEY = os.environ.get("MIDTRANS_SERVER_KEY", "")
    MIDTRANS_IS_PRODUCTION = _env_bool("MIDTRANS_IS_PRODUCTION")
    # Overrides the sandbox/production host when set (staging proxies, tests)
    MIDTRANS_API_BASE_URL = os.environ.get("MIDTRANS_API_BASE_URL") or None
    PAYMENT_GATEWAY_TIMEOUT = float(os.environ.get("PAYMENT_GATEWAY_TIMEOUT", "10"))

    # auto | atomic | sequential
    SETTLEMENT_TRANSACTION_MODE = os.environ.get("SETTLEMENT_TRANSACTION_MODE", "auto")
    SETTLEMENT_RETRY_ATTEMPTS = int(os.environ.get("SETTLEMENT_RETRY_ATTEMPTS", "3"))

    # Admin console dev servers allowed to call the API from the browser
    ADMIN_CONSOLE_ORIGINS = {
        origin.strip()
        for origin in os.environ.get(
            "ADMIN_CONSOLE_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173,http://localhost:4173,http://127.0.0.1:4173",
        ).split(",")
        if origin.strip()
    }
