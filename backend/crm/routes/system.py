# backend/crm/routes/system.py
"""
System health endpoint.

Checks database connectivity and reports which notification channels have
credentials, for deployment debugging.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Store, NotificationOutbox
from ..responses import ok, fail
from ..services.notification_service import get_channels
from crm.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        store_count = db.session.query(Store).count()
        pending = db.session.query(NotificationOutbox).filter_by(status="PENDING").count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "stores": store_count,
                "pending_notifications": pending,
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


@system_bp.get("/health")
def health():
    database = check_database_health()
    channels = {
        name: bool(getattr(channel, "configured", True))
        for name, channel in get_channels().items()
    }
    payload = {
        "status": database["status"],
        "timestamp": to_utc_z(utcnow()),
        "database": database,
        "notification_channels": channels,
    }
    if database["status"] != "healthy":
        return fail("Service unhealthy", 503, details=payload)
    return ok(payload)
