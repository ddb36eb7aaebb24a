# backend/stockaudit/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # SQLite DB stored next to the instance by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockaudit.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Archived daily snapshots: {SNAPSHOT_ARCHIVE_DIR}/{YYYY}/{MM}/{YYYY-MM-DD}.json
    SNAPSHOT_ARCHIVE_DIR = os.environ.get("SNAPSHOT_ARCHIVE_DIR", "archive")
    SCAN_FETCH_WORKERS = int(os.environ.get("SCAN_FETCH_WORKERS", "4"))
    SCAN_FETCH_TIMEOUT_SECONDS = float(os.environ.get("SCAN_FETCH_TIMEOUT_SECONDS", "30"))

    # Point-of-sale reconciliation (cross-offset analysis). Empty credentials
    # leave the analyzer reporting "not configured".
    POS_TOKEN_URL = os.environ.get("POS_TOKEN_URL", "https://id.kiotviet.vn/connect/token")
    POS_API_URL = os.environ.get("POS_API_URL", "https://public.kiotapi.com")
    POS_RETAILER = os.environ.get("POS_RETAILER", "")
    POS_CLIENT_ID = os.environ.get("POS_CLIENT_ID", "")
    POS_CLIENT_SECRET = os.environ.get("POS_CLIENT_SECRET", "")
    POS_TIMEOUT_SECONDS = float(os.environ.get("POS_TIMEOUT_SECONDS", "15"))

    # Deliver ticket notifications on a background worker after commit
    NOTIFICATIONS_ASYNC = _env_bool("NOTIFICATIONS_ASYNC", True)
