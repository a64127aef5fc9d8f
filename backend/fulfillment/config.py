# backend/fulfillment/config.py
from __future__ import annotations
import os


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/fulfillment.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///fulfillment.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Cancelling an order does not touch stock unless this is switched on
    RESTOCK_ON_CANCEL = _env_flag("RESTOCK_ON_CANCEL", False)

    # Prefix for generated product barcodes
    BARCODE_PREFIX = os.environ.get("BARCODE_PREFIX", "KK")

    # Comma-separated browser origins allowed to call the API
    CORS_ALLOWED_ORIGINS = frozenset(
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if origin.strip()
    )
