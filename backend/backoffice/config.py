# backend/backoffice/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/backoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///backoffice.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Single settlement currency per deployment
    STORE_CURRENCY = os.environ.get("STORE_CURRENCY", "USD")

    # Seed values for the persisted commission invoice configuration row
    COMMISSION_INVOICE_TAX_BPS = int(os.environ.get("COMMISSION_INVOICE_TAX_BPS", "0"))
    COMMISSION_INVOICE_DUE_DAYS = int(os.environ.get("COMMISSION_INVOICE_DUE_DAYS", "30"))
    COMMISSION_INVOICE_COMPANY_NAME = os.environ.get("COMMISSION_INVOICE_COMPANY_NAME", "Marketplace Platform")

    ESCROW_PAYOUT_HOLD_DAYS = int(os.environ.get("ESCROW_PAYOUT_HOLD_DAYS", "7"))

    # Optimistic-lock / deadlock retries
    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))
