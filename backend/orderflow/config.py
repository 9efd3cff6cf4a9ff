# backend/orderflow/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the backend by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///orderflow.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Platform cut of fulfilled-order revenue, in basis points (300 = 3%)
    PLATFORM_COMMISSION_BPS = _int_env("PLATFORM_COMMISSION_BPS", 300)

    # Staff workload
    STAFF_DEFAULT_MAX_CAPACITY = _int_env("STAFF_DEFAULT_MAX_CAPACITY", 5)

    # Notifications
    NOTIFICATION_RETENTION_HOURS = _int_env("NOTIFICATION_RETENTION_HOURS", 24)

    # Queue wait estimates (advisory only)
    QUEUE_DEFAULT_FULFILLMENT_MINUTES = _int_env("QUEUE_DEFAULT_FULFILLMENT_MINUTES", 20)
    QUEUE_FULFILLMENT_SAMPLE_SIZE = _int_env("QUEUE_FULFILLMENT_SAMPLE_SIZE", 20)

    # Kitchen estimate: base + per_item * total quantity
    ORDER_BASE_PREP_MINUTES = _int_env("ORDER_BASE_PREP_MINUTES", 10)
    ORDER_PREP_MINUTES_PER_ITEM = _int_env("ORDER_PREP_MINUTES_PER_ITEM", 3)

    # Report threshold only; assigned orders are never released automatically
    STALE_ASSIGNMENT_MINUTES = _int_env("STALE_ASSIGNMENT_MINUTES", 30)

    # Browser origins allowed to call the API (comma-separated)
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip()
        for o in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if o.strip()
    )
