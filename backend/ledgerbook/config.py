# backend/ledgerbook/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/ledgerbook.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///ledgerbook.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Contention handling for per-customer write units
    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "3"))
    LEDGER_RETRY_BACKOFF_BASE = float(os.environ.get("LEDGER_RETRY_BACKOFF_BASE", "0.1"))

    # Upper bound for list endpoints
    LEDGER_MAX_PAGE_SIZE = 500
