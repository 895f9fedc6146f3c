# backend/pellet_ledger/config.py
from __future__ import annotations
import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/pellet_ledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///pellet_ledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # IVA applied to supplier invoices
    TAX_RATE = os.environ.get("TAX_RATE", "0.21")

    # Remaining balances at or below this are treated as settled
    SETTLEMENT_TOLERANCE_CENTS = int(os.environ.get("SETTLEMENT_TOLERANCE_CENTS", "1"))

    # Stored tax may drift this far from the recomputed value before repair kicks in
    TAX_REPAIR_THRESHOLD_CENTS = int(os.environ.get("TAX_REPAIR_THRESHOLD_CENTS", "100"))

    CHECK_DUE_SOON_DAYS = int(os.environ.get("CHECK_DUE_SOON_DAYS", "7"))
    VELOCITY_WINDOW_DAYS = int(os.environ.get("VELOCITY_WINDOW_DAYS", "30"))
