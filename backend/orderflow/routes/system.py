# backend/orderflow/routes/system.py
"""
System health endpoint.

Checks the datastore and the realtime broker so a deployment health check can tell
"database down" apart from "listeners never registered".
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Order, OrderQueueEntry, StaffAvailability
from ..models.orders import ACTIVE_STATUSES
from ..realtime import EXTENSION_KEY, StaffAvailabilityEvent
from ..time_utils import business_date, utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """Database connectivity plus a few cheap operational counts."""
    start_time = time.time()
    try:
        active_orders = db.session.query(Order).filter(Order.status.in_(ACTIVE_STATUSES)).count()
        queued_orders = db.session.query(OrderQueueEntry).count()
        online_staff = db.session.query(StaffAvailability).filter(
            StaffAvailability.business_date == business_date(),
            StaffAvailability.is_online.is_(True),
        ).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "active_orders": active_orders,
                "queued_orders": queued_orders,
                "online_staff": online_staff,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_realtime_health() -> dict:
    """Queue re-evaluation depends on an availability subscriber being present."""
    registry = current_app.extensions.get(EXTENSION_KEY)
    if registry is None:
        return {"status": "unhealthy", "error": "Realtime broker not initialized"}

    availability_handlers = len(registry.get(StaffAvailabilityEvent.kind, []))
    subscriptions = sum(len(handlers) for handlers in registry.values())
    if availability_handlers == 0:
        return {
            "status": "degraded",
            "warning": "No availability subscriber; queued orders will not be re-evaluated",
            "details": {"subscriptions": subscriptions},
        }
    return {"status": "healthy", "details": {"subscriptions": subscriptions}}


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: datastore or broker unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    realtime_health = check_realtime_health()

    all_checks = [database_health, realtime_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "realtime": realtime_health,
        }
    }

    return response, http_status
